from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, g, jsonify, request

from app.saaskit.db import db_session
from app.saaskit.rbac import ROLE_USER, _is_usable, has_required_role


def api_error(message: str, status: int):
    return jsonify({"error": message}), status


def api_auth(required_role: str = ROLE_USER) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Session-authenticated JSON endpoint."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            try:
                user = getattr(g, "current_user", None)
                if not _is_usable(user):
                    return api_error("Not authenticated", 401)
                if not has_required_role(user, required_role):
                    return api_error("Not authorized", 403)
            except Exception:
                current_app.logger.exception("API auth failed (request_id=%s)", getattr(g, "request_id", None))
                return api_error("Authentication error", 500)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def bearer_token() -> str | None:
    header = (request.headers.get("Authorization") or "").strip()
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return (request.headers.get("x-api-key") or "").strip() or None


def api_token_auth(required_role: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """API-key endpoint; the key's owner becomes `g.api_user`."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            from app.saaskit.modules.accounts.service import authenticate_api_key

            raw = bearer_token()
            if not raw:
                return api_error("Missing token", 401)
            s = db_session()
            user = authenticate_api_key(s, raw)
            if user is None:
                return api_error("Invalid token", 401)
            if required_role and not has_required_role(user, required_role):
                return api_error("Not authorized", 403)
            s.commit()  # last_used_at
            g.api_user = user
            return fn(*args, **kwargs)

        return wrapped

    return decorator
