"""
Logging interceptors for service functions.

Every public service call is logged on entry and exit. Authorization denials
are logged with their message only; anything else gets a traceback. Errors are
always re-raised so routes decide how to answer.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from flask import g, has_app_context

from app.saaskit.errors import AuthorizationError, NotFoundError, ValidationError

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger("saaskit.services")


def _request_id() -> str | None:
    if not has_app_context():
        return None
    return getattr(g, "request_id", None)


def logged_service(service: str) -> Callable[[F], F]:
    def decorator(fn: F) -> F:
        op = f"{service}.{fn.__name__}"

        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            rid = _request_id()
            logger.debug("-> %s (request_id=%s)", op, rid)
            try:
                result = fn(*args, **kwargs)
            except AuthorizationError as e:
                logger.error("%s denied: %s (request_id=%s)", op, e.message, rid)
                raise
            except (ValidationError, NotFoundError) as e:
                logger.warning("%s rejected: %s (request_id=%s)", op, e.message, rid)
                raise
            except Exception:
                logger.exception("%s failed (request_id=%s)", op, rid)
                raise
            logger.debug("<- %s ok (request_id=%s)", op, rid)
            return result

        return wrapped  # type: ignore[return-value]

    return decorator
