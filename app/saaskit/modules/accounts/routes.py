from __future__ import annotations

from flask import Blueprint, abort, flash, jsonify, redirect, render_template, request, url_for

from app.saaskit import dal
from app.saaskit.db import db_session
from app.saaskit.errors import NotFoundError, ServiceError
from app.saaskit.modules.accounts.service import (
    LANGUAGES,
    NOTIFICATION_CHANNELS,
    THEMES,
    VISIBILITIES,
    change_password,
    create_api_key,
    create_user_settings,
    list_api_keys,
    revoke_api_key,
    update_profile,
    upsert_user_settings,
)
from app.saaskit.pagination import action_error, action_ok, parse_page_args
from app.saaskit.rbac import login_required
from app.saaskit.utils import current_user, flash_service_error, form_payload, page_url_builder

bp = Blueprint("accounts", __name__)


# ---------- Profile ----------
@bp.get("/account")
@login_required
def profile():
    return render_template("account/profile.html", user=current_user(), visibilities=VISIBILITIES)


@bp.post("/account")
@login_required
def profile_post():
    s = db_session()
    try:
        update_profile(s, current_user(), form_payload("name", "image", "visibility"))
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("accounts.profile"))
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("accounts.profile"))


@bp.post("/account/password")
@login_required
def password_post():
    s = db_session()
    try:
        change_password(
            s,
            current_user(),
            request.form.get("current_password") or "",
            request.form.get("password") or "",
            request.form.get("confirm") or "",
        )
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("accounts.profile"))
    s.commit()
    flash("Password changed.", "success")
    return redirect(url_for("accounts.profile"))


# ---------- Settings ----------
@bp.get("/account/settings")
@login_required
def settings_get():
    s = db_session()
    u = current_user()
    settings = dal.get_user_settings(u.id) or create_user_settings(s, u)
    s.commit()
    return render_template(
        "account/settings.html",
        settings=settings,
        themes=THEMES,
        languages=LANGUAGES,
        channels=NOTIFICATION_CHANNELS,
    )


@bp.post("/account/settings")
@login_required
def settings_post():
    s = db_session()
    payload = form_payload("theme", "language", "timezone", "notification_channel", "enable_email_notifications", "marketing_emails")
    try:
        upsert_user_settings(s, current_user(), payload)
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("accounts.settings_get"))
    s.commit()
    flash("Settings saved.", "success")
    return redirect(url_for("accounts.settings_get"))


# ---------- API keys ----------
@bp.get("/account/api-keys")
@login_required
def api_keys():
    return render_template("account/api_keys.html", keys=list_api_keys(db_session(), current_user()), new_key=None)


@bp.post("/account/api-keys")
@login_required
def api_keys_create():
    s = db_session()
    u = current_user()
    expires = request.form.get("expires_in_days", type=int)
    try:
        _key, raw = create_api_key(s, u, request.form.get("name") or "", expires)
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("accounts.api_keys"))
    s.commit()
    flash("API key created. Copy it now, it will not be shown again.", "success")
    return render_template("account/api_keys.html", keys=list_api_keys(s, u), new_key=raw), 201


@bp.post("/account/api-keys/<int:key_id>/revoke")
@login_required
def api_keys_revoke(key_id: int):
    s = db_session()
    try:
        revoke_api_key(s, current_user(), key_id)
    except NotFoundError:
        abort(404)
    s.commit()
    flash("API key revoked.", "success")
    return redirect(url_for("accounts.api_keys"))


# ---------- Notifications ----------
@bp.get("/account/notifications")
@login_required
def notifications():
    from app.saaskit.modules.notifications.service import list_notifications

    page, limit = parse_page_args(request.args)
    unread_only = request.args.get("unread") == "1"
    result = list_notifications(db_session(), current_user(), page, limit, unread_only)
    return render_template(
        "account/notifications.html",
        page_obj=result,
        unread_only=unread_only,
        build_url=page_url_builder("accounts.notifications"),
    )


@bp.get("/account/notifications/unread-count")
@login_required
def notifications_unread_count():
    return jsonify(action_ok({"count": dal.get_unread_notification_count(current_user().id)}))


@bp.post("/account/notifications/<int:notification_id>/read")
@login_required
def notification_read(notification_id: int):
    from app.saaskit.modules.notifications.service import mark_as_read

    s = db_session()
    try:
        n = mark_as_read(s, notification_id, current_user())
    except ServiceError as e:
        return jsonify(action_error(e.message)), e.status_code
    s.commit()
    return jsonify(action_ok(n.to_dict()))


@bp.post("/account/notifications/read-all")
@login_required
def notifications_read_all():
    from app.saaskit.modules.notifications.service import mark_all_as_read

    s = db_session()
    count = mark_all_as_read(s, current_user())
    s.commit()
    if request.is_json:
        return jsonify(action_ok({"updated": count}))
    flash(f"{count} notification(s) marked as read.", "success")
    return redirect(url_for("accounts.notifications"))


@bp.post("/account/notifications/<int:notification_id>/delete")
@login_required
def notification_delete(notification_id: int):
    from app.saaskit.modules.notifications.service import delete_notification

    s = db_session()
    try:
        delete_notification(s, notification_id, current_user())
    except ServiceError as e:
        return jsonify(action_error(e.message)), e.status_code
    s.commit()
    return jsonify(action_ok(message="Notification deleted"))


@bp.post("/account/notifications/delete-read")
@login_required
def notifications_delete_read():
    from app.saaskit.modules.notifications.service import delete_read_notifications

    s = db_session()
    count = delete_read_notifications(s, current_user())
    s.commit()
    flash(f"{count} notification(s) deleted.", "success")
    return redirect(url_for("accounts.notifications"))


# ---------- Organizations / invitations ----------
@bp.get("/account/organizations")
@login_required
def organizations():
    u = current_user()
    return render_template("account/organizations.html", organizations=dal.get_user_organizations(u.id))


@bp.post("/account/organizations")
@login_required
def organizations_create():
    from app.saaskit.modules.organizations.service import create_organization, unique_slug

    s = db_session()
    payload = form_payload("name", "slug", "description", "logo")
    if not (payload.get("slug") or "").strip() and (payload.get("name") or "").strip():
        payload["slug"] = unique_slug(s, payload["name"])
    try:
        org = create_organization(s, payload, current_user())
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("accounts.organizations"))
    s.commit()
    flash("Organization created.", "success")
    return redirect(url_for("team.team_home", slug=org.slug))


@bp.get("/account/invitations")
@login_required
def invitations():
    from app.saaskit.modules.organizations.service import list_user_invitations

    return render_template("account/invitations.html", invitations=list_user_invitations(db_session(), current_user()))


@bp.get("/account/invitations/<int:invitation_id>")
@login_required
def invitation_detail(invitation_id: int):
    from app.saaskit.modules.organizations.models import Invitation

    inv = db_session().get(Invitation, invitation_id)
    if not inv or inv.email != current_user().email.lower():
        abort(404)
    return render_template("account/invitation_detail.html", invitation=inv)


@bp.post("/account/invitations/<int:invitation_id>/accept")
@login_required
def invitation_accept(invitation_id: int):
    from app.saaskit.modules.organizations.service import accept_invitation

    s = db_session()
    try:
        member = accept_invitation(s, invitation_id, current_user())
    except NotFoundError:
        abort(404)
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("accounts.invitations"))
    s.commit()
    flash("Invitation accepted.", "success")
    return redirect(url_for("team.team_home", slug=member.organization.slug))


@bp.post("/account/invitations/<int:invitation_id>/reject")
@login_required
def invitation_reject(invitation_id: int):
    from app.saaskit.modules.organizations.service import reject_invitation

    s = db_session()
    try:
        reject_invitation(s, invitation_id, current_user())
    except NotFoundError:
        abort(404)
    except ServiceError as e:
        flash_service_error(e)
        return redirect(url_for("accounts.invitations"))
    s.commit()
    flash("Invitation declined.", "info")
    return redirect(url_for("accounts.invitations"))
