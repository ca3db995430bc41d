"""
Request-memoized reads used by pages and templates.

Each decorated function runs at most once per request for a given set of
arguments; results live on `g` and disappear with the request.
"""
from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from flask import abort, g

from app.saaskit.db import db_session

F = TypeVar("F", bound=Callable[..., Any])

_MISSING = object()


def request_cached(fn: F) -> F:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        cache: dict = g.setdefault("_dal_cache", {})
        key = (fn.__qualname__, args, tuple(sorted(kwargs.items())))
        hit = cache.get(key, _MISSING)
        if hit is not _MISSING:
            return hit
        value = fn(*args, **kwargs)
        cache[key] = value
        return value

    return wrapped  # type: ignore[return-value]


def get_current_user():
    user = getattr(g, "current_user", None)
    if not user or not user.is_active or user.is_banned():
        return None
    return user


@request_cached
def get_user_organizations(user_id: int):
    from app.saaskit.modules.organizations.service import list_user_organizations

    return list_user_organizations(db_session(), user_id)


@request_cached
def get_organization_by_slug(slug: str):
    from app.saaskit.modules.organizations.service import get_organization_by_slug as _by_slug

    return _by_slug(db_session(), slug)


@request_cached
def get_membership(user_id: int, organization_id: int):
    from app.saaskit.modules.organizations.models import Member

    return (
        db_session()
        .query(Member)
        .filter(Member.user_id == user_id, Member.organization_id == organization_id)
        .one_or_none()
    )


@request_cached
def get_unread_notification_count(user_id: int) -> int:
    from app.saaskit.modules.notifications.service import count_unread

    return count_unread(db_session(), user_id)


@request_cached
def get_active_subscription(reference_id: str):
    from app.saaskit.modules.billing.service import get_active_subscription as _active

    return _active(db_session(), reference_id)


@request_cached
def get_user_settings(user_id: int):
    from app.saaskit.modules.accounts.service import get_user_settings as _settings

    return _settings(db_session(), user_id)


def require_auth_user():
    user = get_current_user()
    if user is None:
        abort(401)
    return user


def require_organization_member(slug: str):
    """Returns (user, organization, membership); platform admins pass without a membership row."""
    from app.saaskit.rbac import is_admin

    user = require_auth_user()
    org = get_organization_by_slug(slug)
    if org is None:
        abort(404)
    member = get_membership(user.id, org.id)
    if member is None and not is_admin(user):
        g.missing_permission = f"member:{slug}"
        abort(403)
    return user, org, member
