from __future__ import annotations

from collections.abc import Callable

from flask import flash, g, request, url_for

from app.saaskit.errors import ServiceError, ValidationError
from app.saaskit.models import User


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def form_payload(*fields: str) -> dict:
    return {f: request.form.get(f) for f in fields if f in request.form}


def flash_service_error(err: ServiceError) -> None:
    if isinstance(err, ValidationError):
        for e in err.errors:
            flash(e, "danger")
    else:
        flash(err.message, "danger")


def page_url_builder(endpoint: str, **values) -> Callable[[int], str]:
    """Keeps the current query string (filters) while changing the page."""

    def build_url(p: int) -> str:
        args = dict(request.args)
        args.update(values)
        args["page"] = p
        return url_for(endpoint, **args)

    return build_url
