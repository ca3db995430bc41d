from __future__ import annotations

from collections import Counter
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.saaskit.audit import record_event
from app.saaskit.errors import ValidationError
from app.saaskit.facades import logged_service
from app.saaskit.models import Role, User
from app.saaskit.rbac import ROLE_HIERARCHY

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


GROWTH_MONTHS = 6


def _month_starts(today: date, months: int) -> list[date]:
    out = []
    y, m = today.year, today.month
    for _ in range(months):
        out.append(date(y, m, 1))
        m -= 1
        if m == 0:
            y, m = y - 1, 12
    return list(reversed(out))


def monthly_growth(s: "Session", today: date | None = None, months: int = GROWTH_MONTHS) -> list[dict[str, Any]]:
    """New users and organizations per calendar month, oldest first."""
    from app.saaskit.modules.organizations.models import Organization

    starts = _month_starts(today or datetime.utcnow().date(), months)
    since = datetime.combine(starts[0], datetime.min.time())
    users = Counter(d.strftime("%Y-%m") for (d,) in s.query(User.created_at).filter(User.created_at >= since).all())
    orgs = Counter(d.strftime("%Y-%m") for (d,) in s.query(Organization.created_at).filter(Organization.created_at >= since).all())
    return [
        {"month": m.strftime("%Y-%m"), "users": users.get(m.strftime("%Y-%m"), 0), "organizations": orgs.get(m.strftime("%Y-%m"), 0)}
        for m in starts
    ]


def dashboard_stats(s: "Session", today: date | None = None) -> dict[str, Any]:
    from app.saaskit.modules.billing.models import Subscription
    from app.saaskit.modules.organizations.models import Organization
    from app.saaskit.modules.projects.models import Project

    return {
        "total_users": s.query(User).count(),
        "total_organizations": s.query(Organization).count(),
        "total_projects": s.query(Project).count(),
        "active_subscriptions": s.query(Subscription).filter(Subscription.status.in_(("active", "trialing"))).count(),
        "growth": monthly_growth(s, today),
    }


@logged_service("admin")
def set_user_role(s: "Session", target: User, role_key: str, actor: User) -> User:
    """Global role is exclusive: the user ends up with exactly `role_key`."""
    if role_key not in ROLE_HIERARCHY:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(ROLE_HIERARCHY)}")
    role = s.query(Role).filter(Role.key == role_key).one_or_none()
    if not role:
        raise ValidationError(f"Role '{role_key}' is not seeded.")
    if target.id == actor.id and role_key != "admin":
        raise ValidationError("You cannot remove your own admin role.")
    before = sorted(r.key for r in target.roles)
    target.roles = [role]
    target.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="user.role_change", entity_type="User", entity_id=target.id, metadata={"old": before, "new": [role_key]})
    return target


@logged_service("admin")
def ban_user(s: "Session", target: User, reason: str, actor: User, expires: datetime | None = None) -> User:
    from app.saaskit.modules.notifications.service import create_notification

    if target.id == actor.id:
        raise ValidationError("You cannot ban yourself.")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A ban reason is required.")
    if expires is not None and expires <= datetime.utcnow():
        raise ValidationError("Ban expiry must be in the future.")
    target.banned = True
    target.ban_reason = reason[:512]
    target.ban_expires = expires
    target.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="user.ban", entity_type="User", entity_id=target.id, reason=reason, metadata={"expires": expires})
    create_notification(s, type="user_banned", user_id=target.id, metadata={"reason": reason})
    return target


@logged_service("admin")
def unban_user(s: "Session", target: User, actor: User) -> User:
    from app.saaskit.modules.notifications.service import create_notification

    target.banned = False
    target.ban_reason = None
    target.ban_expires = None
    target.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="user.unban", entity_type="User", entity_id=target.id)
    create_notification(s, type="user_unbanned", user_id=target.id)
    return target


@logged_service("admin")
def delete_user(s: "Session", target: User, actor: User) -> None:
    if target.id == actor.id:
        raise ValidationError("You cannot delete your own account from the back-office.")
    record_event(s, actor=actor, action="user.delete", entity_type="User", entity_id=target.id, metadata={"email": target.email})
    s.delete(target)
