from __future__ import annotations

import json
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import stripe
from flask import current_app
from sqlalchemy import func

from app.saaskit.abilities import CREATE, READ, UPDATE, ensure_can
from app.saaskit.audit import record_event
from app.saaskit.errors import NotFoundError, ServiceError, ValidationError
from app.saaskit.facades import logged_service
from app.saaskit.modules.billing.models import Subscription, SubscriptionPlan
from app.saaskit.rbac import is_admin

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saaskit.models import User


BILLING_MODE_USER = "USER"
BILLING_MODE_ORGANIZATION = "ORGANIZATION"

LIMIT_PROJECTS = "projects"
LIMIT_USERS = "users"
LIMIT_STORAGE = "storage"
LIMIT_TYPES = (LIMIT_PROJECTS, LIMIT_USERS, LIMIT_STORAGE)

FREE_PLAN_CODE = "free"
ADMIN_UNLIMITED = 1_000_000

PLAN_STATUSES = ("active", "inactive", "deprecated")
LIVE_STATUSES = ("active", "trialing")
PLAN_CODE_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


class BillingProviderError(ServiceError):
    status_code = 502


def billing_mode() -> str:
    mode = (current_app.config.get("BILLING_MODE") or BILLING_MODE_ORGANIZATION).upper()
    return mode if mode in (BILLING_MODE_USER, BILLING_MODE_ORGANIZATION) else BILLING_MODE_ORGANIZATION


def get_billing_reference_id(user: "User", organization_id: int | None = None) -> str:
    """Who pays: the user in USER mode, the organization in ORGANIZATION mode."""
    if billing_mode() == BILLING_MODE_ORGANIZATION and organization_id is not None:
        return f"org:{organization_id}"
    return f"user:{user.id}"


def parse_reference_id(reference_id: str) -> tuple[int | None, int | None]:
    """Returns (user_id, organization_id)."""
    kind, _, raw = (reference_id or "").partition(":")
    if not raw.isdigit():
        return None, None
    if kind == "user":
        return int(raw), None
    if kind == "org":
        return None, int(raw)
    return None, None


# ---------- Plans ----------
def get_plan(s: "Session", code: str) -> SubscriptionPlan | None:
    return s.query(SubscriptionPlan).filter(SubscriptionPlan.code == code).one_or_none()


def list_active_plans(s: "Session") -> list[SubscriptionPlan]:
    return (
        s.query(SubscriptionPlan)
        .filter(SubscriptionPlan.status == "active")
        .order_by(SubscriptionPlan.display_order.asc(), SubscriptionPlan.price.asc())
        .all()
    )


def get_active_subscription(s: "Session", reference_id: str) -> Subscription | None:
    return (
        s.query(Subscription)
        .filter(Subscription.reference_id == reference_id, Subscription.status.in_(LIVE_STATUSES))
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def _parse_decimal(raw: Any, field: str, errors: list[str], *, required: bool = False) -> Decimal | None:
    raw = str(raw if raw is not None else "").strip()
    if not raw:
        if required:
            errors.append(f"{field} is required.")
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        errors.append(f"{field} must be a number.")
        return None
    if value < 0:
        errors.append(f"{field} must be zero or more.")
    return value


def _parse_json(raw: Any, field: str, errors: list[str], expected: type) -> Any:
    if raw is None or raw == "":
        return None
    if isinstance(raw, expected):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        errors.append(f"{field} JSON is invalid: {e}")
        return None
    if not isinstance(value, expected):
        errors.append(f"{field} must be a JSON {expected.__name__}.")
        return None
    return value


def validate_plan_payload(payload: dict, *, creating: bool = True) -> tuple[dict, list[str]]:
    """Validate plan form input. Returns (clean values, errors)."""
    errors: list[str] = []
    clean: dict[str, Any] = {}

    code = (payload.get("code") or "").strip().lower()
    if creating:
        if not PLAN_CODE_RE.match(code):
            errors.append("Code must be lowercase letters, digits, '-' or '_'.")
        clean["code"] = code

    name = (payload.get("plan_name") or "").strip()
    if not name:
        errors.append("Plan name is required.")
    clean["plan_name"] = name

    clean["price"] = _parse_decimal(payload.get("price"), "Price", errors, required=True)
    clean["yearly_price"] = _parse_decimal(payload.get("yearly_price"), "Yearly price", errors)

    limits = _parse_json(payload.get("limits"), "Limits", errors, dict) or {}
    for key in (LIMIT_PROJECTS, LIMIT_USERS):
        if key in limits and (not isinstance(limits[key], int) or limits[key] < 0):
            errors.append(f"Limit '{key}' must be a non-negative integer.")
    clean["limits"] = limits
    clean["features"] = _parse_json(payload.get("features"), "Features", errors, list)
    clean["free_trial"] = _parse_json(payload.get("free_trial"), "Free trial", errors, dict)

    status = (payload.get("status") or "active").strip()
    if status not in PLAN_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(PLAN_STATUSES)}")
    clean["status"] = status

    for field in ("price_id", "annual_discount_price_id"):
        clean[field] = (payload.get(field) or "").strip() or None
    clean["currency"] = (payload.get("currency") or "EUR").strip().upper()[:8]
    try:
        clean["display_order"] = int(payload.get("display_order") or 0)
    except (TypeError, ValueError):
        errors.append("Display order must be an integer.")
    clean["is_recurring"] = str(payload.get("is_recurring", "1")).lower() in ("1", "true", "on", "yes")
    return clean, errors


@logged_service("billing")
def create_plan(s: "Session", payload: dict, user: "User") -> SubscriptionPlan:
    clean, errors = validate_plan_payload(payload, creating=True)
    if not errors and get_plan(s, clean["code"]):
        errors.append("A plan with this code already exists.")
    if errors:
        raise ValidationError(errors)
    plan = SubscriptionPlan(**clean)
    s.add(plan)
    s.flush()
    record_event(s, actor=user, action="plan.create", entity_type="SubscriptionPlan", entity_id=plan.id, metadata={"code": plan.code})
    return plan


@logged_service("billing")
def update_plan(s: "Session", plan: SubscriptionPlan, payload: dict, user: "User") -> SubscriptionPlan:
    clean, errors = validate_plan_payload(payload, creating=False)
    if errors:
        raise ValidationError(errors)
    pricing_changed = clean["price"] != plan.price or clean["price_id"] != plan.price_id
    for key, value in clean.items():
        setattr(plan, key, value)
    if pricing_changed:
        plan.version += 1
    plan.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="plan.edit", entity_type="SubscriptionPlan", entity_id=plan.id, metadata={"code": plan.code, "version": plan.version})
    return plan


@logged_service("billing")
def set_plan_status(s: "Session", plan: SubscriptionPlan, status: str, user: "User") -> SubscriptionPlan:
    if status not in PLAN_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(PLAN_STATUSES)}")
    old = plan.status
    plan.status = status
    plan.is_legacy = status == "deprecated"
    plan.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="plan.status", entity_type="SubscriptionPlan", entity_id=plan.id, metadata={"old": old, "new": status})
    return plan


# ---------- Limits ----------
def _count_usage(s: "Session", user: "User", limit_type: str, organization_id: int | None) -> int:
    from app.saaskit.modules.organizations.service import count_members, count_pending_invitations
    from app.saaskit.modules.projects.models import Project

    if limit_type == LIMIT_PROJECTS:
        q = s.query(func.count(Project.id))
        if billing_mode() == BILLING_MODE_ORGANIZATION and organization_id is not None:
            q = q.filter(Project.organization_id == organization_id)
        else:
            q = q.filter(Project.created_by == user.id)
        return q.scalar() or 0
    if organization_id is None:
        return 1
    return count_members(s, organization_id) + count_pending_invitations(s, organization_id)


@logged_service("billing")
def check_subscription_limit(
    s: "Session",
    user: "User",
    limit_type: str,
    requested: int = 1,
    organization_id: int | None = None,
) -> dict[str, Any]:
    if limit_type not in LIMIT_TYPES:
        raise ValidationError(f"Unknown limit type: {limit_type}")
    if limit_type == LIMIT_STORAGE:
        raise ServiceError("Storage limits are not implemented.")

    reference_id = get_billing_reference_id(user, organization_id)
    subscription = get_active_subscription(s, reference_id)
    plan = subscription.plan_obj if subscription else None
    if plan is None:
        plan = get_plan(s, FREE_PLAN_CODE)

    limits = (plan.limits if plan else None) or {}
    if limit_type == LIMIT_USERS:
        limit = subscription.seats if subscription else int(limits.get(LIMIT_USERS, 1))
    else:
        limit = int(limits.get(limit_type, 0))

    usage = _count_usage(s, user, limit_type, organization_id)
    remaining = max(0, limit - usage)
    if remaining == 0 and is_admin(user):
        limit = ADMIN_UNLIMITED
        remaining = limit - usage

    return {
        "allowed": usage + requested <= limit,
        "limit": limit,
        "usage": usage,
        "remaining": remaining,
        "has_subscription": subscription is not None,
        "limit_type": limit_type,
        "plan": plan.code if plan else None,
    }


# ---------- Subscriptions ----------
def _stripe_key() -> str:
    key = current_app.config.get("STRIPE_SECRET_KEY") or ""
    if not key:
        raise BillingProviderError("Payments are not configured.")
    return key


def _ensure_subscription_access(s: "Session", user: "User", action: str, reference_id: str) -> tuple[int | None, int | None]:
    user_id, organization_id = parse_reference_id(reference_id)
    resource = {"user_id": user_id} if user_id is not None else {"organization_id": organization_id}
    ensure_can(s, user, action, "Subscription", resource, organization_id=organization_id)
    return user_id, organization_id


def get_subscription_for(s: "Session", user: "User", organization_id: int | None = None) -> Subscription | None:
    reference_id = get_billing_reference_id(user, organization_id)
    _ensure_subscription_access(s, user, READ, reference_id)
    return get_active_subscription(s, reference_id)


@logged_service("billing")
def init_subscription(
    s: "Session",
    user: "User",
    plan_code: str,
    seats: int = 1,
    organization_id: int | None = None,
    annual: bool = False,
) -> tuple[Subscription, str]:
    """Create a pending subscription and a Stripe Checkout Session; returns (subscription, checkout url)."""
    plan = get_plan(s, plan_code) if plan_code else None
    if not plan or plan.status != "active":
        raise ValidationError("Plan not found.")
    if seats < 1:
        raise ValidationError("Seats must be at least 1.")
    price_id = plan.annual_discount_price_id if annual and plan.annual_discount_price_id else plan.price_id
    if not price_id:
        raise ValidationError("This plan cannot be purchased online.")

    reference_id = get_billing_reference_id(user, organization_id)
    ensure_can(s, user, CREATE, "Subscription")
    user_id, org_id = _ensure_subscription_access(s, user, UPDATE, reference_id) if organization_id else (user.id, None)

    sub = Subscription(
        plan=plan.code,
        reference_id=reference_id,
        user_id=user_id,
        organization_id=org_id,
        stripe_customer_id=user.stripe_customer_id,
        status="incomplete",
        seats=seats,
    )
    s.add(sub)
    s.flush()

    app_url = current_app.config.get("APP_URL", "")
    metadata = {"subscription_id": str(sub.id), "reference_id": reference_id, "plan": plan.code}
    params: dict[str, Any] = {
        "mode": "subscription" if plan.is_recurring else "payment",
        "line_items": [{"price": price_id, "quantity": seats}],
        "success_url": f"{app_url}/account/subscription?checkout=success",
        "cancel_url": f"{app_url}/pricing?checkout=canceled",
        "client_reference_id": reference_id,
        "metadata": metadata,
    }
    if plan.is_recurring:
        sub_data: dict[str, Any] = {"metadata": metadata}
        trial_days = (plan.free_trial or {}).get("days")
        if trial_days:
            sub_data["trial_period_days"] = int(trial_days)
        params["subscription_data"] = sub_data
    if user.stripe_customer_id:
        params["customer"] = user.stripe_customer_id
    else:
        params["customer_email"] = user.email

    try:
        session = stripe.checkout.Session.create(api_key=_stripe_key(), **params)
    except stripe.StripeError as e:
        current_app.logger.error("Stripe checkout failed for %s: %s", reference_id, e)
        raise BillingProviderError("Could not start checkout. Please try again later.") from e

    sub.stripe_checkout_session_id = session["id"]
    record_event(s, actor=user, action="subscription.checkout", entity_type="Subscription", entity_id=sub.id, metadata={"plan": plan.code, "seats": seats, "reference_id": reference_id})
    return sub, session["url"]


@logged_service("billing")
def create_billing_portal_session(s: "Session", user: "User", organization_id: int | None = None) -> str:
    sub = get_subscription_for(s, user, organization_id)
    customer = (sub.stripe_customer_id if sub else None) or user.stripe_customer_id
    if not customer:
        raise NotFoundError("No billing account found.")
    try:
        portal = stripe.billing_portal.Session.create(
            api_key=_stripe_key(),
            customer=customer,
            return_url=f"{current_app.config.get('APP_URL', '')}/account/subscription",
        )
    except stripe.StripeError as e:
        current_app.logger.error("Stripe portal failed for customer %s: %s", customer, e)
        raise BillingProviderError("Could not open the billing portal.") from e
    return portal["url"]


@logged_service("billing")
def cancel_subscription(s: "Session", user: "User", organization_id: int | None = None) -> Subscription:
    reference_id = get_billing_reference_id(user, organization_id)
    _ensure_subscription_access(s, user, UPDATE, reference_id)
    sub = get_active_subscription(s, reference_id)
    if not sub or not sub.stripe_subscription_id:
        raise NotFoundError("No active subscription.")
    try:
        stripe.Subscription.modify(sub.stripe_subscription_id, api_key=_stripe_key(), cancel_at_period_end=True)
    except stripe.StripeError as e:
        current_app.logger.error("Stripe cancel failed for %s: %s", sub.stripe_subscription_id, e)
        raise BillingProviderError("Could not cancel the subscription.") from e
    sub.cancel_at_period_end = True
    sub.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="subscription.cancel", entity_type="Subscription", entity_id=sub.id)
    return sub
