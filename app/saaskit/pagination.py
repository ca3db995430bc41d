from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Query

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def _to_int(raw: Any, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def parse_page_args(args: Mapping[str, Any], default_limit: int = DEFAULT_LIMIT, max_limit: int = MAX_LIMIT) -> tuple[int, int]:
    page = max(1, _to_int(args.get("page"), 1))
    limit = _to_int(args.get("limit"), default_limit)
    limit = min(max(1, limit), max_limit)
    return page, limit


def page_from_offset(offset: int, limit: int) -> int:
    return offset // limit + 1


@dataclass
class Page:
    data: list[Any]
    total: int
    page: int
    limit: int
    total_pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.total_pages = math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    def pagination(self) -> dict[str, int]:
        return {
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
        }

    def to_dict(self, serializer: Callable[[Any], Any] | None = None) -> dict[str, Any]:
        items = [serializer(x) for x in self.data] if serializer else list(self.data)
        return {"data": items, "pagination": self.pagination()}


def paginate(query: Query, page: int, limit: int) -> Page:
    """Count, then fetch one page of an ORM query (the caller owns ordering)."""
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return Page(data=rows, total=total, page=page, limit=limit)


# ---------- Server action envelopes ----------
def action_result(success: bool, message: str | None = None, data: Any = None) -> dict[str, Any]:
    out: dict[str, Any] = {"success": success}
    if message is not None:
        out["message"] = message
    if data is not None:
        out["data"] = data
    return out


def action_ok(data: Any = None, message: str | None = None) -> dict[str, Any]:
    return action_result(True, message=message, data=data)


def action_error(message: str) -> dict[str, Any]:
    return action_result(False, message=message)
