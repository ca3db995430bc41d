"""
Attribute-based abilities for tenant resources.

A rule grants (or, when inverted, denies) an action on a subject, optionally
restricted by conditions matched against the resource's attributes. Rules are
built per caller from their global role and their role in the organization
being acted on; the last matching rule wins.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from app.saaskit.errors import AuthorizationError
from app.saaskit.rbac import is_admin

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saaskit.models import User

CREATE = "create"
READ = "read"
UPDATE = "update"
DELETE = "delete"
MANAGE = "manage"

ALL = "all"

ORG_OWNER = "owner"
ORG_ADMIN = "admin"
ORG_MEMBER = "member"
ORG_ROLES = (ORG_OWNER, ORG_ADMIN, ORG_MEMBER)


@dataclass(frozen=True)
class Rule:
    action: str
    subject: str
    conditions: dict[str, Any] = field(default_factory=dict)
    inverted: bool = False

    def matches(self, action: str, subject: str) -> bool:
        action_ok = self.action == MANAGE or self.action == action
        subject_ok = self.subject == ALL or self.subject == subject
        return action_ok and subject_ok

    def satisfied_by(self, resource: dict[str, Any] | None) -> bool:
        if not self.conditions or resource is None:
            return True
        return all(resource.get(k) == v for k, v in self.conditions.items())


def _guest_rules() -> list[Rule]:
    return [
        Rule(READ, "Post", {"status": "published"}),
        Rule(READ, "Category"),
        Rule(READ, "Hashtag"),
        Rule(READ, "User", {"visibility": "public"}),
    ]


def _user_rules(user_id: int) -> list[Rule]:
    return [
        Rule(READ, "User", {"id": user_id}),
        Rule(UPDATE, "User", {"id": user_id}),
        Rule(DELETE, "User", inverted=True),
        Rule(READ, "Subscription", {"user_id": user_id}),
        Rule(UPDATE, "Subscription", {"user_id": user_id}),
        Rule(CREATE, "Subscription"),
        Rule(READ, "Organization"),
        Rule(CREATE, "Organization"),
        Rule(READ, "Notification", {"user_id": user_id}),
        Rule(UPDATE, "Notification", {"user_id": user_id}),
        Rule(DELETE, "Notification", {"user_id": user_id}),
        Rule(MANAGE, "File", {"user_id": user_id}),
        Rule(READ, "Post", {"status": "published"}),
        Rule(CREATE, "Post"),
        Rule(MANAGE, "Post", {"author_id": user_id}),
        Rule(READ, "Category"),
        Rule(READ, "Hashtag"),
    ]


def _org_rules(org_role: str, organization_id: int) -> list[Rule]:
    org = {"organization_id": organization_id}
    own_org = {"id": organization_id}
    if org_role == ORG_OWNER:
        return [
            Rule(MANAGE, "Organization", own_org),
            *(Rule(MANAGE, subject, org) for subject in ("Member", "User", "Subscription", "Project", "Task", "File")),
        ]
    if org_role == ORG_ADMIN:
        return [
            Rule(READ, "Organization", own_org),
            Rule(UPDATE, "Organization", own_org),
            Rule(READ, "User", org),
            Rule(UPDATE, "User", org),
            *(Rule(MANAGE, subject, org) for subject in ("Member", "Subscription", "Project", "Task", "File")),
        ]
    if org_role == ORG_MEMBER:
        return [
            Rule(READ, "Organization", own_org),
            *(Rule(READ, subject, org) for subject in ("User", "Member", "Subscription", "Project", "File")),
            Rule(READ, "Task", org),
            Rule(CREATE, "Task", org),
            Rule(UPDATE, "Task", org),
        ]
    return []


def build_rules(user: "User | None", org_role: str | None = None, organization_id: int | None = None) -> list[Rule]:
    if user is None:
        return _guest_rules()
    if is_admin(user):
        return [Rule(MANAGE, ALL)]
    rules = _user_rules(user.id)
    if org_role and organization_id is not None:
        rules.extend(_org_rules(org_role, organization_id))
    return rules


def can(
    user: "User | None",
    action: str,
    subject: str,
    resource: dict[str, Any] | None = None,
    *,
    org_role: str | None = None,
    organization_id: int | None = None,
) -> bool:
    rules = build_rules(user, org_role, organization_id)
    # Later rules take precedence over earlier ones.
    for rule in reversed(rules):
        if not rule.matches(action, subject):
            continue
        if rule.inverted and rule.conditions and resource is None:
            continue
        if rule.satisfied_by(resource):
            return not rule.inverted
    return False


def org_role_for(s: "Session", user_id: int | None, organization_id: int | None) -> str | None:
    if user_id is None or organization_id is None:
        return None
    from app.saaskit.modules.organizations.models import Member

    m = (
        s.query(Member)
        .filter(Member.user_id == user_id, Member.organization_id == organization_id)
        .one_or_none()
    )
    return m.role if m else None


def user_can(
    s: "Session",
    user: "User | None",
    action: str,
    subject: str,
    resource: dict[str, Any] | None = None,
    organization_id: int | None = None,
) -> bool:
    """`can()` with the caller's membership role looked up for the organization."""
    role = org_role_for(s, user.id if user else None, organization_id)
    return can(user, action, subject, resource, org_role=role, organization_id=organization_id)


def ensure_can(
    s: "Session",
    user: "User | None",
    action: str,
    subject: str,
    resource: dict[str, Any] | None = None,
    organization_id: int | None = None,
) -> None:
    if not user_can(s, user, action, subject, resource, organization_id):
        raise AuthorizationError()
