from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for

from app.saaskit.models import User

ROLE_USER = "user"
ROLE_REDACTOR = "redactor"
ROLE_ADMIN = "admin"

# Lowest to highest.
ROLE_HIERARCHY = (ROLE_USER, ROLE_REDACTOR, ROLE_ADMIN)


def _is_usable(user: User | None) -> bool:
    return bool(user and user.is_active and not user.is_banned())


def global_role(user: User | None) -> str | None:
    if not user:
        return None
    best = 0
    for role in user.roles:
        if role.key in ROLE_HIERARCHY:
            best = max(best, ROLE_HIERARCHY.index(role.key))
    return ROLE_HIERARCHY[best]


def has_required_role(user: User | None, required_role: str) -> bool:
    role = global_role(user)
    if role is None or required_role not in ROLE_HIERARCHY:
        return False
    return ROLE_HIERARCHY.index(role) >= ROLE_HIERARCHY.index(required_role)


def is_admin(user: User | None) -> bool:
    return global_role(user) == ROLE_ADMIN


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not _is_usable(user):
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def _redirect_to_login():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if not _is_usable(getattr(g, "current_user", None)):
            return _redirect_to_login()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → login page.
            if not _is_usable(user):
                return _redirect_to_login()
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_role(required_role: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not _is_usable(user):
                return _redirect_to_login()
            if not has_required_role(user, required_role):
                g.missing_permission = f"role:{required_role}"
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
