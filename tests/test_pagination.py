import pytest
from werkzeug.datastructures import MultiDict

from app.saaskit.db import session_scope
from app.saaskit.modules.billing.models import SubscriptionPlan
from app.saaskit.pagination import Page, action_error, action_ok, page_from_offset, paginate, parse_page_args


@pytest.mark.parametrize(
    "args, expected",
    [
        ({}, (1, 20)),
        ({"page": "3", "limit": "5"}, (3, 5)),
        ({"page": "0", "limit": "0"}, (1, 1)),
        ({"page": "-4", "limit": "1000"}, (1, 100)),
        ({"page": "abc", "limit": "xyz"}, (1, 20)),
    ],
)
def test_parse_page_args(args, expected):
    assert parse_page_args(MultiDict(args)) == expected


def test_page_math():
    p = Page(data=[1, 2], total=12, page=2, limit=5)
    assert p.total_pages == 3
    assert p.offset == 5
    assert p.has_prev and p.has_next
    assert Page(data=[], total=0, page=1, limit=5).total_pages == 0
    assert page_from_offset(10, 5) == 3


def test_page_envelope():
    p = Page(data=[1, 2, 3], total=3, page=1, limit=10)
    assert p.to_dict(lambda x: x * 10) == {
        "data": [10, 20, 30],
        "pagination": {"total": 3, "page": 1, "limit": 10, "total_pages": 1},
    }


def test_action_envelopes():
    assert action_ok() == {"success": True}
    assert action_ok({"id": 1}, message="Done") == {"success": True, "message": "Done", "data": {"id": 1}}
    assert action_error("Nope") == {"success": False, "message": "Nope"}


def test_paginate_query(app):
    with session_scope(app) as s:
        q = s.query(SubscriptionPlan).order_by(SubscriptionPlan.display_order.asc())
        first = paginate(q, 1, 2)
        second = paginate(q, 2, 2)
        assert first.total == 3
        assert first.total_pages == 2
        assert [p.code for p in first.data] == ["free", "pro"]
        assert [p.code for p in second.data] == ["enterprise"]
        assert not second.has_next
