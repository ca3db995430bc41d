from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, jsonify, redirect, render_template, request, url_for

from app.saaskit import dal
from app.saaskit.audit import record_event
from app.saaskit.db import db_session
from app.saaskit.errors import ServiceError, ValidationError
from app.saaskit.modules.billing.service import (
    BILLING_MODE_ORGANIZATION,
    billing_mode,
    cancel_subscription,
    check_subscription_limit,
    create_billing_portal_session,
    get_subscription_for,
    init_subscription,
    list_active_plans,
)
from app.saaskit.modules.billing.stripe_events import construct_event, process_event
from app.saaskit.rbac import login_required
from app.saaskit.utils import current_user, flash_service_error

bp = Blueprint("billing", __name__)


def _billing_org_id(user) -> int | None:
    if billing_mode() != BILLING_MODE_ORGANIZATION:
        return None
    org_id = request.values.get("organization_id", type=int)
    if org_id:
        return org_id
    orgs = dal.get_user_organizations(user.id)
    return orgs[0][0].id if orgs else None


@bp.get("/pricing")
def pricing():
    return render_template("billing/pricing.html", plans=list_active_plans(db_session()))


@bp.get("/account/subscription")
@login_required
def subscription():
    s = db_session()
    user = current_user()
    org_id = _billing_org_id(user)
    sub = get_subscription_for(s, user, org_id)
    usage = {
        limit_type: check_subscription_limit(s, user, limit_type, 0, organization_id=org_id)
        for limit_type in ("projects", "users")
    }
    checkout = request.args.get("checkout")
    if checkout == "success":
        flash("Thank you! Your subscription will be active in a moment.", "success")
    elif checkout == "canceled":
        flash("Checkout canceled.", "info")
    return render_template(
        "billing/subscription.html",
        subscription=sub,
        usage=usage,
        organization_id=org_id,
        organizations=dal.get_user_organizations(user.id),
        plans=list_active_plans(s),
    )


@bp.post("/account/subscription/checkout")
@login_required
def checkout():
    s = db_session()
    user = current_user()
    try:
        _sub, url = init_subscription(
            s,
            user,
            (request.form.get("plan") or "").strip(),
            seats=request.form.get("seats", 1, type=int) or 1,
            organization_id=_billing_org_id(user),
            annual=request.form.get("annual") == "1",
        )
    except ServiceError as e:
        s.rollback()
        if e.status_code == 403:
            abort(403)
        flash_service_error(e)
        return redirect(url_for("billing.pricing"))
    s.commit()
    return redirect(url, code=303)


@bp.post("/account/subscription/portal")
@login_required
def portal():
    s = db_session()
    user = current_user()
    try:
        url = create_billing_portal_session(s, user, _billing_org_id(user))
    except ServiceError as e:
        if e.status_code == 403:
            abort(403)
        flash_service_error(e)
        return redirect(url_for("billing.subscription"))
    return redirect(url, code=303)


@bp.post("/account/subscription/cancel")
@login_required
def cancel():
    s = db_session()
    user = current_user()
    try:
        cancel_subscription(s, user, _billing_org_id(user))
    except ServiceError as e:
        if e.status_code == 403:
            abort(403)
        flash_service_error(e)
        return redirect(url_for("billing.subscription"))
    s.commit()
    flash("Your subscription will end at the close of the current period.", "success")
    return redirect(url_for("billing.subscription"))


# ---------- Webhook ----------
@bp.post("/api/webhooks/stripe")
def stripe_webhook():
    if not current_app.config.get("STRIPE_WEBHOOK_ENABLED"):
        return jsonify({"error": "Webhook disabled"}), 410
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET") or ""
    if not secret:
        current_app.logger.error("Stripe webhook called but STRIPE_WEBHOOK_SECRET is not set")
        return jsonify({"error": "Webhook not configured"}), 500

    payload = request.get_data()
    try:
        event = construct_event(payload, request.headers.get("Stripe-Signature"), secret)
    except ValidationError as e:
        current_app.logger.warning("Rejected Stripe webhook: %s", e.message)
        return jsonify({"error": e.errors[0]}), 400

    s = db_session()
    try:
        handled = process_event(s, event)
        if handled:
            record_event(s, actor=None, action="stripe.webhook", entity_type="StripeEvent", entity_id=event.get("id"), metadata={"type": event.get("type")})
        s.commit()
    except Exception:
        s.rollback()
        current_app.logger.exception("Stripe webhook %s failed", event.get("type"))
        return jsonify({"error": "Webhook handler failed"}), 500
    return jsonify({"received": True, "handled": handled})
