from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.saaskit.abilities import CREATE, DELETE, ORG_OWNER, ORG_ROLES, READ, UPDATE, ensure_can, org_role_for
from app.saaskit.audit import record_event
from app.saaskit.errors import AuthorizationError, NotFoundError, ValidationError
from app.saaskit.facades import logged_service
from app.saaskit.modules.organizations.models import Invitation, Member, Organization
from app.saaskit.rbac import is_admin

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saaskit.models import User


SLUG_RE = re.compile(r"^[a-z0-9-]+$")
INVITATION_TTL = timedelta(days=7)


def validate_organization_payload(payload: dict) -> list[str]:
    """Validate organization creation/update payload. Returns list of errors."""
    errors = []
    name = (payload.get("name") or "").strip()
    if len(name) < 2:
        errors.append("Name must be at least 2 characters.")
    elif len(name) > 100:
        errors.append("Name must be at most 100 characters.")
    slug = (payload.get("slug") or "").strip()
    if len(slug) < 2:
        errors.append("Slug must be at least 2 characters.")
    elif len(slug) > 100:
        errors.append("Slug must be at most 100 characters.")
    elif not SLUG_RE.match(slug):
        errors.append("Slug may only contain lowercase letters, digits and dashes.")
    return errors


def _slug_taken(s: "Session", slug: str, exclude_id: int | None = None) -> bool:
    q = s.query(Organization.id).filter(Organization.slug == slug)
    if exclude_id is not None:
        q = q.filter(Organization.id != exclude_id)
    return q.first() is not None


def unique_slug(s: "Session", base: str) -> str:
    from app.saaskit.modules.blog.service import generate_slug

    root = (generate_slug(base) or "team")[:90]
    if len(root) < 2:
        root = f"{root}-team"
    slug = root
    n = 2
    while _slug_taken(s, slug):
        slug = f"{root}-{n}"
        n += 1
    return slug


@logged_service("organization")
def create_organization(s: "Session", payload: dict, user: "User") -> Organization:
    """Create an organization; the creator becomes its owner."""
    ensure_can(s, user, CREATE, "Organization")
    errors = validate_organization_payload(payload)
    slug = (payload.get("slug") or "").strip()
    if not errors and _slug_taken(s, slug):
        errors.append("Slug is already in use.")
    if errors:
        raise ValidationError(errors)

    now = datetime.utcnow()
    org = Organization(
        name=(payload.get("name") or "").strip(),
        slug=slug,
        logo=(payload.get("logo") or "").strip() or None,
        description=(payload.get("description") or "").strip() or None,
        created_at=now,
        updated_at=now,
    )
    s.add(org)
    s.flush()
    s.add(Member(organization_id=org.id, user_id=user.id, role=ORG_OWNER))
    s.flush()

    record_event(s, actor=user, action="organization.create", entity_type="Organization", entity_id=org.id, metadata={"name": org.name, "slug": org.slug})
    return org


def create_personal_organization(s: "Session", user: "User") -> Organization:
    base = user.name or user.email.split("@")[0]
    return create_organization(s, {"name": f"{base}'s team"[:100], "slug": unique_slug(s, base)}, user)


def get_organization(s: "Session", organization_id: int) -> Organization:
    org = s.get(Organization, organization_id)
    if not org:
        raise NotFoundError("Organization not found")
    return org


def get_organization_by_slug(s: "Session", slug: str) -> Organization | None:
    return s.query(Organization).filter(Organization.slug == slug).one_or_none()


@logged_service("organization")
def update_organization(s: "Session", org: Organization, payload: dict, user: "User") -> Organization:
    ensure_can(s, user, UPDATE, "Organization", {"id": org.id}, organization_id=org.id)
    merged = {"name": payload.get("name", org.name), "slug": payload.get("slug", org.slug)}
    errors = validate_organization_payload(merged)
    slug = (merged["slug"] or "").strip()
    if not errors and _slug_taken(s, slug, exclude_id=org.id):
        errors.append("Slug is already in use.")
    if errors:
        raise ValidationError(errors)

    changes = {}
    values = {**payload, **merged}
    for field in ("name", "slug", "logo", "description"):
        if field not in values:
            continue
        new = (values.get(field) or "").strip() or None
        if new != getattr(org, field):
            changes[field] = {"old": getattr(org, field), "new": new}
            setattr(org, field, new)
    org.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="organization.edit", entity_type="Organization", entity_id=org.id, metadata={"changes": changes})
    return org


@logged_service("organization")
def delete_organization(s: "Session", org: Organization, user: "User") -> None:
    ensure_can(s, user, DELETE, "Organization", {"id": org.id}, organization_id=org.id)
    record_event(s, actor=user, action="organization.delete", entity_type="Organization", entity_id=org.id, metadata={"name": org.name, "slug": org.slug})
    s.delete(org)


def list_user_organizations(s: "Session", user_id: int) -> list[tuple[Organization, str]]:
    rows = (
        s.query(Organization, Member.role)
        .join(Member, Member.organization_id == Organization.id)
        .filter(Member.user_id == user_id)
        .order_by(Organization.name.asc())
        .all()
    )
    return [(org, role) for org, role in rows]


def count_members(s: "Session", organization_id: int) -> int:
    return s.query(func.count(Member.id)).filter(Member.organization_id == organization_id).scalar() or 0


def count_pending_invitations(s: "Session", organization_id: int) -> int:
    return (
        s.query(func.count(Invitation.id))
        .filter(Invitation.organization_id == organization_id, Invitation.status == "pending")
        .filter(Invitation.expires_at > datetime.utcnow())
        .scalar()
        or 0
    )


# ---------- Members ----------
def _ensure_owner_remains(s: "Session", member: Member) -> None:
    if member.role != ORG_OWNER:
        return
    owners = (
        s.query(func.count(Member.id))
        .filter(Member.organization_id == member.organization_id, Member.role == ORG_OWNER)
        .scalar()
    )
    if (owners or 0) <= 1:
        raise ValidationError("An organization must keep at least one owner.")


@logged_service("organization")
def update_member_role(s: "Session", member: Member, role: str, user: "User") -> Member:
    if role not in ORG_ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(ORG_ROLES)}")
    ensure_can(s, user, UPDATE, "Member", {"organization_id": member.organization_id}, organization_id=member.organization_id)
    # Only owners (or platform admins) may grant or take away ownership.
    caller_role = org_role_for(s, user.id, member.organization_id)
    if ORG_OWNER in (role, member.role) and caller_role != ORG_OWNER and not is_admin(user):
        raise AuthorizationError("Only an owner can change ownership.")
    if member.role == ORG_OWNER and role != ORG_OWNER:
        _ensure_owner_remains(s, member)
    old = member.role
    member.role = role
    record_event(s, actor=user, action="organization.member_role", entity_type="Member", entity_id=member.id, metadata={"old": old, "new": role, "organization_id": member.organization_id})
    return member


@logged_service("organization")
def remove_member(s: "Session", member: Member, user: "User") -> None:
    if member.user_id != user.id:
        ensure_can(s, user, DELETE, "Member", {"organization_id": member.organization_id}, organization_id=member.organization_id)
    _ensure_owner_remains(s, member)
    record_event(s, actor=user, action="organization.member_remove", entity_type="Member", entity_id=member.id, metadata={"user_id": member.user_id, "organization_id": member.organization_id})
    s.delete(member)


# ---------- Invitations ----------
@logged_service("organization")
def invite_member(s: "Session", org: Organization, email: str, role: str, user: "User", invite_url_base: str = "") -> Invitation:
    from app.saaskit.models import User as UserModel
    from app.saaskit.modules.billing.service import check_subscription_limit
    from app.saaskit.modules.notifications.service import create_notification

    email = (email or "").strip().lower()
    errors = []
    if not email or "@" not in email:
        errors.append("A valid email is required.")
    if role not in ORG_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(ORG_ROLES)}")
    if errors:
        raise ValidationError(errors)

    ensure_can(s, user, CREATE, "Member", {"organization_id": org.id}, organization_id=org.id)
    if role == ORG_OWNER and org_role_for(s, user.id, org.id) != ORG_OWNER and not is_admin(user):
        raise AuthorizationError("Only an owner can invite another owner.")

    existing_user = s.query(UserModel).filter(UserModel.email == email).one_or_none()
    if existing_user and org_role_for(s, existing_user.id, org.id):
        raise ValidationError("This user is already a member.")
    pending = (
        s.query(Invitation)
        .filter(Invitation.organization_id == org.id, Invitation.email == email, Invitation.status == "pending")
        .filter(Invitation.expires_at > datetime.utcnow())
        .first()
    )
    if pending:
        raise ValidationError("An invitation is already pending for this email.")

    limit = check_subscription_limit(s, user, "users", 1, organization_id=org.id)
    if not limit["allowed"]:
        raise ValidationError(f"Seat limit reached ({limit['usage']}/{limit['limit']}). Upgrade your plan to invite more members.")

    inv = Invitation(
        organization_id=org.id,
        email=email,
        role=role,
        status="pending",
        inviter_id=user.id,
        expires_at=datetime.utcnow() + INVITATION_TTL,
    )
    s.add(inv)
    s.flush()
    record_event(s, actor=user, action="organization.invite", entity_type="Invitation", entity_id=inv.id, metadata={"email": email, "role": role, "organization_id": org.id})

    create_notification(
        s,
        type="organization_invitation",
        user_id=existing_user.id if existing_user else None,
        email=email,
        metadata={
            "organization_id": org.id,
            "organization_name": org.name,
            "invitation_id": inv.id,
            "inviter": user.display_name,
            "invite_url": f"{invite_url_base}/account/invitations/{inv.id}",
        },
    )
    return inv


def _get_invitation_for(s: "Session", invitation_id: int, user: "User") -> Invitation:
    inv = s.get(Invitation, invitation_id)
    if not inv or inv.email != user.email.lower():
        raise NotFoundError("Invitation not found")
    if not inv.is_open():
        raise ValidationError("This invitation is no longer valid.")
    return inv


@logged_service("organization")
def accept_invitation(s: "Session", invitation_id: int, user: "User") -> Member:
    inv = _get_invitation_for(s, invitation_id, user)
    if org_role_for(s, user.id, inv.organization_id):
        raise ValidationError("You are already a member of this organization.")
    member = Member(organization_id=inv.organization_id, user_id=user.id, role=inv.role)
    s.add(member)
    inv.status = "accepted"
    s.flush()
    record_event(s, actor=user, action="organization.invitation_accept", entity_type="Invitation", entity_id=inv.id, metadata={"organization_id": inv.organization_id})
    return member


@logged_service("organization")
def reject_invitation(s: "Session", invitation_id: int, user: "User") -> Invitation:
    inv = _get_invitation_for(s, invitation_id, user)
    inv.status = "rejected"
    record_event(s, actor=user, action="organization.invitation_reject", entity_type="Invitation", entity_id=inv.id)
    return inv


@logged_service("organization")
def cancel_invitation(s: "Session", invitation: Invitation, user: "User") -> Invitation:
    ensure_can(s, user, DELETE, "Member", {"organization_id": invitation.organization_id}, organization_id=invitation.organization_id)
    if invitation.status != "pending":
        raise ValidationError("Only pending invitations can be canceled.")
    invitation.status = "canceled"
    record_event(s, actor=user, action="organization.invitation_cancel", entity_type="Invitation", entity_id=invitation.id)
    return invitation


def list_user_invitations(s: "Session", user: "User") -> list[Invitation]:
    return (
        s.query(Invitation)
        .filter(Invitation.email == user.email.lower(), Invitation.status == "pending")
        .filter(Invitation.expires_at > datetime.utcnow())
        .order_by(Invitation.created_at.desc())
        .all()
    )


def list_members(s: "Session", org: Organization, user: "User") -> list[Member]:
    ensure_can(s, user, READ, "Member", {"organization_id": org.id}, organization_id=org.id)
    return (
        s.query(Member)
        .filter(Member.organization_id == org.id)
        .order_by(Member.created_at.asc())
        .all()
    )
