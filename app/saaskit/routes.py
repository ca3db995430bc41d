from flask import Blueprint, render_template

from app.saaskit import dal
from app.saaskit.db import db_session
from app.saaskit.rbac import login_required

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return render_template("public/index.html")


@bp.get("/dashboard")
@login_required
def dashboard():
    from app.saaskit.modules.billing.service import get_billing_reference_id
    from app.saaskit.modules.notifications.service import list_notifications
    from app.saaskit.modules.projects.service import list_projects

    user = dal.require_auth_user()
    organizations = dal.get_user_organizations(user.id)
    org_id = organizations[0][0].id if organizations else None
    subscription = dal.get_active_subscription(get_billing_reference_id(user, org_id))
    s = db_session()
    recent = list_projects(s, user, {}, page=1, limit=5)
    return render_template(
        "dashboard.html",
        organizations=organizations,
        subscription=subscription,
        recent_projects=recent.data,
        recent_notifications=list_notifications(s, user, page=1, limit=5).data,
        unread=dal.get_unread_notification_count(user.id),
    )


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """Fast liveness probe; no DB access."""
    return "ok", 200
