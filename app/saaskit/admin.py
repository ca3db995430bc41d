from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, current_app, flash, jsonify, redirect, render_template, request, url_for
from sqlalchemy import or_
from werkzeug.utils import secure_filename

from app.saaskit.admin_service import ban_user, dashboard_stats, delete_user, set_user_role, unban_user
from app.saaskit.db import db_session
from app.saaskit.errors import FileError, ValidationError
from app.saaskit.models import AuditEvent, Role, User
from app.saaskit.modules.billing.models import Subscription, SubscriptionPlan
from app.saaskit.modules.billing.service import PLAN_STATUSES, create_plan, set_plan_status, update_plan
from app.saaskit.modules.files.service import list_storage_keys
from app.saaskit.modules.organizations.models import Organization
from app.saaskit.modules.organizations.service import delete_organization, update_organization
from app.saaskit.pagination import action_error, action_ok, paginate, parse_page_args
from app.saaskit.rbac import ROLE_ADMIN, ROLE_HIERARCHY, global_role, require_permission, require_role
from app.saaskit.utils import current_user, flash_service_error, form_payload, page_url_builder

bp = Blueprint("admin", __name__)

SUBSCRIPTION_STATUSES = ("incomplete", "trialing", "active", "past_due", "canceled", "unpaid")
PLAN_FIELDS = (
    "code",
    "plan_name",
    "price",
    "yearly_price",
    "price_id",
    "annual_discount_price_id",
    "limits",
    "features",
    "free_trial",
    "currency",
    "status",
    "display_order",
    "is_recurring",
)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _user_or_404(user_id: int) -> User:
    user = db_session().get(User, user_id)
    if not user:
        abort(404)
    return user


def _org_or_404(org_id: int) -> Organization:
    org = db_session().get(Organization, org_id)
    if not org:
        abort(404)
    return org


def _plan_or_404(plan_id: int) -> SubscriptionPlan:
    plan = db_session().get(SubscriptionPlan, plan_id)
    if not plan:
        abort(404)
    return plan


@bp.get("/")
@require_permission("admin.view")
def index():
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    s = db_session()
    cfg = current_app.config
    status = {
        "env": (cfg.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "storage_backend": cfg.get("STORAGE_BACKEND") or "local",
        "storage_configured": True,
        "storage_error": None,
        "stripe_ready": bool(cfg.get("STRIPE_SECRET_KEY")),
        "stripe_webhook_ready": bool(cfg.get("STRIPE_WEBHOOK_ENABLED") and cfg.get("STRIPE_WEBHOOK_SECRET")),
        "jobs_enabled": bool(cfg.get("BACKGROUND_JOBS_ENABLED") and cfg.get("REDIS_URL")),
    }

    # DB connectivity (lightweight)
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except SQLAlchemyError as e:
        s.rollback()
        status["db_error"] = str(e)

    # Storage config (no network calls)
    if status["storage_backend"] == "s3":
        missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not cfg.get(k)]
        status["storage_configured"] = not missing
        if missing:
            status["storage_error"] = f"Missing: {', '.join(missing)}"

    stats = dashboard_stats(s) if status["db_connected"] else None
    return render_template("admin/index.html", stats=stats, system_status=status)


# ---------- Users ----------
@bp.get("/users")
@require_permission("admin.users")
def user_list():
    s = db_session()
    page, limit = parse_page_args(request.args, default_limit=25)
    search = (request.args.get("q") or "").strip()
    q = s.query(User)
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(User.email.ilike(like), User.name.ilike(like)))
    if request.args.get("banned") == "1":
        q = q.filter(User.banned.is_(True))
    result = paginate(q.order_by(User.created_at.desc(), User.id.desc()), page, limit)
    return render_template(
        "admin/users/list.html",
        page_obj=result,
        search=search,
        role_of=global_role,
        build_url=page_url_builder("admin.user_list"),
    )


@bp.get("/users/<int:user_id>")
@require_permission("admin.users")
def user_detail(user_id: int):
    from app.saaskit.modules.organizations.service import list_user_organizations

    s = db_session()
    user = _user_or_404(user_id)
    events = (
        s.query(AuditEvent)
        .filter(AuditEvent.entity_type == "User", AuditEvent.entity_id == str(user.id))
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .limit(50)
        .all()
    )
    return render_template(
        "admin/users/detail.html",
        account=user,
        role=global_role(user),
        roles=ROLE_HIERARCHY,
        organizations=list_user_organizations(s, user.id),
        events=events,
    )


@bp.post("/users/<int:user_id>/role")
@require_permission("admin.users")
def user_role(user_id: int):
    s = db_session()
    user = _user_or_404(user_id)
    try:
        set_user_role(s, user, (request.form.get("role") or "").strip(), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("admin.user_detail", user_id=user_id))
    s.commit()
    flash(f"Role updated for {user.email}.", "success")
    return redirect(url_for("admin.user_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/ban")
@require_permission("admin.users")
def user_ban(user_id: int):
    s = db_session()
    user = _user_or_404(user_id)
    raw_expires = (request.form.get("expires") or "").strip()
    expires = None
    if raw_expires:
        d = _parse_date(raw_expires)
        if not d:
            flash("Expiry must be YYYY-MM-DD.", "danger")
            return redirect(url_for("admin.user_detail", user_id=user_id))
        expires = datetime.combine(d, time.min)
    try:
        ban_user(s, user, request.form.get("reason") or "", current_user(), expires=expires)
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("admin.user_detail", user_id=user_id))
    s.commit()
    flash(f"{user.email} has been banned.", "success")
    return redirect(url_for("admin.user_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/unban")
@require_permission("admin.users")
def user_unban(user_id: int):
    s = db_session()
    user = _user_or_404(user_id)
    unban_user(s, user, current_user())
    s.commit()
    flash(f"{user.email} has been unbanned.", "success")
    return redirect(url_for("admin.user_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/delete")
@require_permission("admin.users")
def user_delete(user_id: int):
    s = db_session()
    user = _user_or_404(user_id)
    email = user.email
    try:
        delete_user(s, user, current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("admin.user_detail", user_id=user_id))
    s.commit()
    flash(f"Account {email} deleted.", "success")
    return redirect(url_for("admin.user_list"))


# ---------- Organizations ----------
@bp.get("/organizations")
@require_permission("admin.organizations")
def organization_list():
    s = db_session()
    page, limit = parse_page_args(request.args, default_limit=25)
    search = (request.args.get("q") or "").strip()
    q = s.query(Organization)
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(Organization.name.ilike(like), Organization.slug.ilike(like)))
    result = paginate(q.order_by(Organization.created_at.desc(), Organization.id.desc()), page, limit)
    return render_template(
        "admin/organizations/list.html",
        page_obj=result,
        search=search,
        build_url=page_url_builder("admin.organization_list"),
    )


@bp.get("/organizations/<int:org_id>")
@require_permission("admin.organizations")
def organization_detail(org_id: int):
    s = db_session()
    org = _org_or_404(org_id)
    subscriptions = (
        s.query(Subscription)
        .filter(Subscription.organization_id == org.id)
        .order_by(Subscription.created_at.desc())
        .all()
    )
    return render_template("admin/organizations/detail.html", org=org, subscriptions=subscriptions)


@bp.post("/organizations/<int:org_id>/edit")
@require_permission("admin.organizations")
def organization_edit(org_id: int):
    s = db_session()
    org = _org_or_404(org_id)
    try:
        update_organization(s, org, form_payload("name", "slug", "logo", "description"), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("admin.organization_detail", org_id=org_id))
    s.commit()
    flash("Organization updated.", "success")
    return redirect(url_for("admin.organization_detail", org_id=org_id))


@bp.post("/organizations/<int:org_id>/delete")
@require_permission("admin.organizations")
def organization_delete(org_id: int):
    s = db_session()
    org = _org_or_404(org_id)
    name = org.name
    delete_organization(s, org, current_user())
    s.commit()
    flash(f"Organization {name} deleted.", "success")
    return redirect(url_for("admin.organization_list"))


# ---------- Plans / subscriptions ----------
@bp.get("/plans")
@require_permission("admin.billing")
def plan_list():
    s = db_session()
    plans = s.query(SubscriptionPlan).order_by(SubscriptionPlan.display_order.asc(), SubscriptionPlan.id.asc()).all()
    return render_template("admin/plans/list.html", plans=plans, statuses=PLAN_STATUSES)


@bp.get("/plans/new")
@require_permission("admin.billing")
def plan_new_get():
    return render_template("admin/plans/form.html", plan=None, statuses=PLAN_STATUSES)


@bp.post("/plans/new")
@require_permission("admin.billing")
def plan_new_post():
    s = db_session()
    try:
        plan = create_plan(s, form_payload(*PLAN_FIELDS), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("admin.plan_new_get"))
    s.commit()
    flash(f"Plan {plan.code} created.", "success")
    return redirect(url_for("admin.plan_list"))


@bp.get("/plans/<int:plan_id>/edit")
@require_permission("admin.billing")
def plan_edit_get(plan_id: int):
    return render_template("admin/plans/form.html", plan=_plan_or_404(plan_id), statuses=PLAN_STATUSES)


@bp.post("/plans/<int:plan_id>/edit")
@require_permission("admin.billing")
def plan_edit_post(plan_id: int):
    s = db_session()
    plan = _plan_or_404(plan_id)
    try:
        update_plan(s, plan, form_payload(*PLAN_FIELDS), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("admin.plan_edit_get", plan_id=plan_id))
    s.commit()
    flash(f"Plan {plan.code} updated.", "success")
    return redirect(url_for("admin.plan_list"))


@bp.post("/plans/<int:plan_id>/status")
@require_permission("admin.billing")
def plan_status(plan_id: int):
    s = db_session()
    plan = _plan_or_404(plan_id)
    try:
        set_plan_status(s, plan, (request.form.get("status") or "").strip(), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("admin.plan_list"))
    s.commit()
    flash(f"Plan {plan.code} is now {plan.status}.", "success")
    return redirect(url_for("admin.plan_list"))


@bp.get("/subscriptions")
@require_permission("admin.billing")
def subscription_list():
    s = db_session()
    page, limit = parse_page_args(request.args, default_limit=25)
    status = (request.args.get("status") or "").strip()
    q = s.query(Subscription)
    if status in SUBSCRIPTION_STATUSES:
        q = q.filter(Subscription.status == status)
    result = paginate(q.order_by(Subscription.created_at.desc(), Subscription.id.desc()), page, limit)
    return render_template(
        "admin/subscriptions/list.html",
        page_obj=result,
        status=status,
        statuses=SUBSCRIPTION_STATUSES,
        build_url=page_url_builder("admin.subscription_list"),
    )


# ---------- Audit ----------
@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Audit trail UI (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - entity_type (exact)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=action,
        actor_email=actor_email,
        entity_type=entity_type,
        date_from=request.args.get("date_from") or "",
        date_to=request.args.get("date_to") or "",
    )


@bp.get("/roles")
@require_permission("admin.view")
def role_list():
    s = db_session()
    roles = s.query(Role).order_by(Role.id.asc()).all()
    return render_template("admin/roles.html", roles=roles)


@bp.get("/storage")
@require_role(ROLE_ADMIN)
def storage_keys():
    """Raw object listing for one entity folder, to compare against stored file rows."""
    entity_type = secure_filename(request.args.get("entity_type") or "").lower()
    entity_id = secure_filename(request.args.get("entity_id") or "")
    if not entity_type or not entity_id:
        return jsonify(action_error("entity_type and entity_id are required.")), 400
    try:
        keys = list_storage_keys(entity_type, entity_id, current_app.config)
    except FileError as e:
        current_app.logger.warning("Storage listing failed: %s", e.message)
        return jsonify({**action_error(e.message), "code": e.code}), e.status_code
    return jsonify(action_ok({"keys": keys}))
