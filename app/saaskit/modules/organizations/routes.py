from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, url_for

from app.saaskit import dal
from app.saaskit.abilities import DELETE, UPDATE, user_can
from app.saaskit.db import db_session
from app.saaskit.errors import ServiceError, ValidationError
from app.saaskit.modules.organizations.models import Invitation, Member
from app.saaskit.modules.organizations.service import (
    cancel_invitation,
    count_members,
    delete_organization,
    invite_member,
    list_members,
    remove_member,
    update_member_role,
    update_organization,
)
from app.saaskit.rbac import login_required
from app.saaskit.utils import flash_service_error, form_payload

bp = Blueprint("team", __name__)


def _member_of(org, member_id: int) -> Member:
    m = db_session().get(Member, member_id)
    if not m or m.organization_id != org.id:
        abort(404)
    return m


@bp.get("/team/<slug>")
@login_required
def team_home(slug: str):
    from app.saaskit.modules.billing.service import get_billing_reference_id
    from app.saaskit.modules.projects.service import list_projects

    user, org, member = dal.require_organization_member(slug)
    s = db_session()
    projects = list_projects(s, user, {"organization_id": org.id}, page=1, limit=5)
    return render_template(
        "team/home.html",
        org=org,
        membership=member,
        member_count=count_members(s, org.id),
        projects=projects,
        subscription=dal.get_active_subscription(get_billing_reference_id(user, org.id)),
        can_edit=user_can(s, user, UPDATE, "Organization", {"id": org.id}, org.id),
    )


@bp.get("/team/<slug>/settings")
@login_required
def team_settings(slug: str):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    if not user_can(s, user, UPDATE, "Organization", {"id": org.id}, org.id):
        abort(403)
    return render_template(
        "team/settings.html",
        org=org,
        can_delete=user_can(s, user, DELETE, "Organization", {"id": org.id}, org.id),
    )


@bp.post("/team/<slug>/settings")
@login_required
def team_settings_post(slug: str):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    try:
        update_organization(s, org, form_payload("name", "slug", "logo", "description"), user)
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("team.team_settings", slug=slug))
    s.commit()
    flash("Organization updated.", "success")
    return redirect(url_for("team.team_settings", slug=org.slug))


@bp.post("/team/<slug>/delete")
@login_required
def team_delete(slug: str):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    if (request.form.get("confirm") or "").strip() != org.slug:
        flash("Type the organization slug to confirm deletion.", "danger")
        return redirect(url_for("team.team_settings", slug=slug))
    delete_organization(s, org, user)
    s.commit()
    flash("Organization deleted.", "success")
    return redirect(url_for("accounts.organizations"))


# ---------- Members ----------
@bp.get("/team/<slug>/members")
@login_required
def members(slug: str):
    from app.saaskit.abilities import ORG_ROLES

    user, org, membership = dal.require_organization_member(slug)
    s = db_session()
    pending = (
        s.query(Invitation)
        .filter(Invitation.organization_id == org.id, Invitation.status == "pending")
        .order_by(Invitation.created_at.desc())
        .all()
    )
    return render_template(
        "team/members.html",
        org=org,
        members=list_members(s, org, user),
        invitations=[i for i in pending if i.is_open()],
        roles=ORG_ROLES,
        membership=membership,
        can_manage=user_can(s, user, UPDATE, "Member", {"organization_id": org.id}, org.id),
    )


@bp.post("/team/<slug>/members/invite")
@login_required
def members_invite(slug: str):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    try:
        invite_member(
            s,
            org,
            request.form.get("email") or "",
            (request.form.get("role") or "member").strip(),
            user,
            invite_url_base=(current_app.config.get("APP_URL") or "").rstrip("/"),
        )
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("team.members", slug=slug))
    s.commit()
    flash("Invitation sent.", "success")
    return redirect(url_for("team.members", slug=slug))


@bp.post("/team/<slug>/members/<int:member_id>/role")
@login_required
def member_role(slug: str, member_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    try:
        update_member_role(s, _member_of(org, member_id), (request.form.get("role") or "").strip(), user)
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("team.members", slug=slug))
    s.commit()
    flash("Member role updated.", "success")
    return redirect(url_for("team.members", slug=slug))


@bp.post("/team/<slug>/members/<int:member_id>/remove")
@login_required
def member_remove(slug: str, member_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    target = _member_of(org, member_id)
    leaving = target.user_id == user.id
    try:
        remove_member(s, target, user)
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("team.members", slug=slug))
    s.commit()
    if leaving:
        flash(f"You left {org.name}.", "success")
        return redirect(url_for("accounts.organizations"))
    flash("Member removed.", "success")
    return redirect(url_for("team.members", slug=slug))


@bp.post("/team/<slug>/invitations/<int:invitation_id>/cancel")
@login_required
def invitation_cancel(slug: str, invitation_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    inv = s.get(Invitation, invitation_id)
    if not inv or inv.organization_id != org.id:
        abort(404)
    try:
        cancel_invitation(s, inv, user)
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("team.members", slug=slug))
    s.commit()
    flash("Invitation canceled.", "success")
    return redirect(url_for("team.members", slug=slug))
