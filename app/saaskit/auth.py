from __future__ import annotations

import uuid

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from app.saaskit.audit import record_event
from app.saaskit.db import db_session
from app.saaskit.extensions import LOGIN_LIMIT, limiter
from app.saaskit.models import Role, User
from app.saaskit.rbac import ROLE_USER
from app.saaskit.security import make_password_reset_token, read_password_reset_token

bp = Blueprint("auth", __name__)

FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a reset link has been sent."


def _safe_next(nxt: str) -> str | None:
    # Only allow local paths to avoid open redirects.
    nxt = (nxt or "").strip()
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def _ban_message(user: User) -> str:
    msg = "Your account is suspended."
    if user.ban_reason:
        msg += f" Reason: {user.ban_reason}"
    if user.ban_expires:
        msg += f" (until {user.ban_expires:%Y-%m-%d %H:%M} UTC)"
    return msg


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    if user.banned and not user.is_banned():
        # Expired ban.
        user.banned = False
        user.ban_reason = None
        user.ban_expires = None
        record_event(s, actor=None, action="user.ban_expired", entity_type="User", entity_id=user.id)
        s.commit()
    elif user.is_banned():
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def initialize_registered_user(s, user: User, language: str = "fr") -> None:
    """Defaults every new account needs: settings, a personal team, the welcome follow-up."""
    from app.saaskit.jobs import schedule_welcome_follow_up
    from app.saaskit.modules.accounts.service import create_user_settings
    from app.saaskit.modules.organizations.service import create_personal_organization, list_user_organizations

    create_user_settings(s, user, language)
    if not list_user_organizations(s, user.id):
        create_personal_organization(s, user)
    schedule_welcome_follow_up(current_app, user, language)


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
@limiter.limit(LOGIN_LIMIT)
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get", next=nxt or None))

    if user.is_banned():
        record_event(s, actor=user, action="auth.login_failed", entity_type="User", entity_id=user.id, reason="Banned")
        s.commit()
        flash(_ban_message(user), "danger")
        return redirect(url_for("auth.login_get"))

    session["user_id"] = user.id
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=user.id)
    s.commit()
    return redirect(_safe_next(nxt) or url_for("routes.dashboard"))


@bp.get("/register")
def register_get():
    if getattr(g, "current_user", None):
        return redirect(url_for("routes.dashboard"))
    return render_template("auth/register.html")


@bp.post("/register")
def register_post():
    from app.saaskit.modules.accounts.service import LANGUAGES, validate_password

    name = (request.form.get("name") or "").strip()
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    confirm = request.form.get("confirm") or ""
    language = (request.form.get("language") or "fr").strip()
    if language not in LANGUAGES:
        language = "fr"

    errors = []
    if not name:
        errors.append("Name is required.")
    if "@" not in email or len(email) > 320:
        errors.append("A valid email is required.")
    errors.extend(validate_password(password, confirm))

    s = db_session()
    if not errors and s.query(User.id).filter(User.email == email).first() is not None:
        errors.append("An account with this email already exists.")
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("auth/register.html", name=name, email=email), 400

    user = User(email=email, name=name, password_hash=generate_password_hash(password), is_active=True)
    role = s.query(Role).filter(Role.key == ROLE_USER).one_or_none()
    if role:
        user.roles.append(role)
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=user.id)
    initialize_registered_user(s, user, language)
    s.commit()

    session["user_id"] = user.id
    flash("Welcome! Your account is ready.", "success")
    return redirect(url_for("routes.dashboard"))


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=user.id)
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))


@bp.get("/forgot-password")
def forgot_password_get():
    return render_template("auth/forgot_password.html")


@bp.post("/forgot-password")
def forgot_password_post():
    from app.saaskit.modules.notifications.service import create_notification

    email = (request.form.get("email") or "").strip().lower()
    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none() if email else None
    if user and user.is_active:
        token = make_password_reset_token(user.id, user.password_hash)
        reset_url = current_app.config.get("APP_URL", "").rstrip("/") + url_for("auth.reset_password_get", token=token)
        create_notification(s, type="reset_password", user_id=user.id, metadata={"reset_url": reset_url})
        record_event(s, actor=None, action="auth.password_reset_requested", entity_type="User", entity_id=user.id)
        s.commit()
    flash(FORGOT_PASSWORD_MESSAGE, "info")
    return redirect(url_for("auth.login_get"))


def _user_for_token(s, token: str) -> User | None:
    data = read_password_reset_token(token)
    if not data:
        return None
    user = s.get(User, int(data["uid"]))
    if not user or not user.is_active or user.password_hash[-12:] != data.get("ph"):
        return None
    return user


@bp.get("/reset-password/<token>")
def reset_password_get(token: str):
    if _user_for_token(db_session(), token) is None:
        flash("This reset link is invalid or has expired.", "danger")
        return redirect(url_for("auth.forgot_password_get"))
    return render_template("auth/reset_password.html", token=token)


@bp.post("/reset-password/<token>")
def reset_password_post(token: str):
    from app.saaskit.modules.accounts.service import set_password, validate_password

    s = db_session()
    user = _user_for_token(s, token)
    if user is None:
        flash("This reset link is invalid or has expired.", "danger")
        return redirect(url_for("auth.forgot_password_get"))
    password = request.form.get("password") or ""
    errors = validate_password(password, request.form.get("confirm") or "")
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("auth/reset_password.html", token=token), 400
    set_password(s, user, password, reason="Password reset by email")
    s.commit()
    flash("Your password has been reset. You can now sign in.", "success")
    return redirect(url_for("auth.login_get"))
