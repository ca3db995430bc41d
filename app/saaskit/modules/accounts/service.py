from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from werkzeug.security import check_password_hash, generate_password_hash

from app.saaskit.audit import record_event
from app.saaskit.errors import NotFoundError, ValidationError
from app.saaskit.modules.accounts.models import ApiKey, UserSettings

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saaskit.models import User


THEMES = ("light", "dark", "system")
LANGUAGES = ("fr", "en", "es")
NOTIFICATION_CHANNELS = ("email", "push", "both", "none")
VISIBILITIES = ("public", "private")

MIN_PASSWORD_LENGTH = 8
API_KEY_PREFIX = "sk_"


def _flag(raw) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in ("1", "true", "on", "yes")


# ---------- Profile ----------
def validate_profile_payload(payload: dict) -> list[str]:
    errors = []
    name = (payload.get("name") or "").strip()
    if name and len(name) > 255:
        errors.append("Name must be at most 255 characters.")
    visibility = (payload.get("visibility") or "").strip()
    if visibility and visibility not in VISIBILITIES:
        errors.append(f"Invalid visibility. Must be one of: {', '.join(VISIBILITIES)}")
    return errors


def update_profile(s: "Session", user: "User", payload: dict) -> "User":
    errors = validate_profile_payload(payload)
    if errors:
        raise ValidationError(errors)
    changes = {}
    for field in ("name", "image", "visibility"):
        if field not in payload:
            continue
        new = (payload.get(field) or "").strip() or None
        if field == "visibility" and new is None:
            continue
        if new != getattr(user, field):
            changes[field] = {"old": getattr(user, field), "new": new}
            setattr(user, field, new)
    user.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="user.profile_update", entity_type="User", entity_id=user.id, metadata={"changes": changes})
    return user


def validate_password(password: str, confirm: str | None = None) -> list[str]:
    errors = []
    if len(password or "") < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if confirm is not None and password != confirm:
        errors.append("Passwords do not match.")
    return errors


def set_password(s: "Session", user: "User", new_password: str, *, reason: str) -> None:
    from app.saaskit.modules.notifications.service import create_notification

    user.password_hash = generate_password_hash(new_password)
    user.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="user.password_change", entity_type="User", entity_id=user.id, reason=reason)
    create_notification(s, type="password_changed", user_id=user.id)


def change_password(s: "Session", user: "User", current: str, new: str, confirm: str) -> None:
    errors = []
    if not check_password_hash(user.password_hash, current or ""):
        errors.append("Current password is incorrect.")
    errors.extend(validate_password(new, confirm))
    if errors:
        raise ValidationError(errors)
    set_password(s, user, new, reason="User changed password")


# ---------- Settings ----------
def get_user_settings(s: "Session", user_id: int) -> UserSettings | None:
    return s.query(UserSettings).filter(UserSettings.user_id == user_id).one_or_none()


def create_user_settings(s: "Session", user: "User", language: str = "fr") -> UserSettings:
    settings = get_user_settings(s, user.id)
    if settings:
        return settings
    settings = UserSettings(user_id=user.id, language=language if language in LANGUAGES else "fr")
    s.add(settings)
    s.flush()
    return settings


def validate_settings_payload(payload: dict) -> list[str]:
    errors = []
    checks = (
        ("theme", THEMES),
        ("language", LANGUAGES),
        ("notification_channel", NOTIFICATION_CHANNELS),
    )
    for field, allowed in checks:
        value = (payload.get(field) or "").strip()
        if value and value not in allowed:
            errors.append(f"Invalid {field.replace('_', ' ')}. Must be one of: {', '.join(allowed)}")
    tz = (payload.get("timezone") or "").strip()
    if tz and len(tz) > 64:
        errors.append("Timezone is too long.")
    return errors


def upsert_user_settings(s: "Session", user: "User", payload: dict) -> UserSettings:
    errors = validate_settings_payload(payload)
    if errors:
        raise ValidationError(errors)
    settings = create_user_settings(s, user)
    for field in ("theme", "language", "timezone", "notification_channel"):
        value = (payload.get(field) or "").strip()
        if value:
            setattr(settings, field, value)
    settings.enable_email_notifications = _flag(payload.get("enable_email_notifications"))
    settings.marketing_emails = _flag(payload.get("marketing_emails"))
    settings.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="user.settings_update", entity_type="UserSettings", entity_id=settings.id)
    return settings


# ---------- API keys ----------
def hash_api_key(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def create_api_key(s: "Session", user: "User", name: str, expires_in_days: int | None = None) -> tuple[ApiKey, str]:
    """Returns the stored key and the raw secret; the raw value is never persisted."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Name is required.")
    if len(name) > 128:
        raise ValidationError("Name must be at most 128 characters.")
    if expires_in_days is not None and expires_in_days < 1:
        raise ValidationError("Expiry must be at least one day.")

    raw = API_KEY_PREFIX + secrets.token_urlsafe(32)
    key = ApiKey(
        user_id=user.id,
        name=name,
        prefix=raw[:8],
        key_hash=hash_api_key(raw),
        enabled=True,
        expires_at=datetime.utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    s.add(key)
    s.flush()
    record_event(s, actor=user, action="api_key.create", entity_type="ApiKey", entity_id=key.id, metadata={"name": name, "prefix": key.prefix})
    return key, raw


def list_api_keys(s: "Session", user: "User") -> list[ApiKey]:
    return s.query(ApiKey).filter(ApiKey.user_id == user.id).order_by(ApiKey.created_at.desc()).all()


def revoke_api_key(s: "Session", user: "User", key_id: int) -> ApiKey:
    key = s.get(ApiKey, key_id)
    if not key or key.user_id != user.id:
        raise NotFoundError("API key not found")
    key.enabled = False
    record_event(s, actor=user, action="api_key.revoke", entity_type="ApiKey", entity_id=key.id, metadata={"prefix": key.prefix})
    return key


def authenticate_api_key(s: "Session", raw: str) -> "User | None":
    raw = (raw or "").strip()
    if not raw:
        return None
    key = s.query(ApiKey).filter(ApiKey.key_hash == hash_api_key(raw)).one_or_none()
    if not key or not key.is_usable():
        return None
    user = key.user
    if not user or not user.is_active or user.is_banned():
        return None
    key.last_used_at = datetime.utcnow()
    return user
