"""
Stripe webhook processing.

The signature is checked with the Stripe library; the verified payload is then
read as plain JSON and dispatched by event type. Handlers only touch local
subscription rows and notifications, they never call back into Stripe.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import stripe

from app.saaskit.abilities import ORG_ADMIN, ORG_OWNER
from app.saaskit.audit import record_event
from app.saaskit.errors import ValidationError
from app.saaskit.modules.billing.models import Subscription

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger("saaskit.billing")


def construct_event(payload: bytes, signature: str | None, secret: str) -> dict[str, Any]:
    if not signature:
        raise ValidationError("Missing Stripe-Signature header.")
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise ValidationError("Invalid webhook signature.") from e
    except ValueError as e:
        raise ValidationError("Invalid webhook payload.") from e
    return json.loads(payload)


def _ts(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _first_item(obj: dict) -> dict:
    items = ((obj.get("items") or {}).get("data")) or []
    return items[0] if items else {}


def _find_subscription(s: "Session", stripe_subscription_id: str | None, metadata: dict | None) -> Subscription | None:
    if stripe_subscription_id:
        sub = s.query(Subscription).filter(Subscription.stripe_subscription_id == stripe_subscription_id).first()
        if sub:
            return sub
    local_id = (metadata or {}).get("subscription_id")
    if local_id and str(local_id).isdigit():
        return s.get(Subscription, int(local_id))
    return None


def _recipients(s: "Session", sub: Subscription) -> list[int]:
    if sub.user_id:
        return [sub.user_id]
    if sub.organization_id:
        from app.saaskit.modules.organizations.models import Member

        rows = (
            s.query(Member.user_id)
            .filter(Member.organization_id == sub.organization_id, Member.role.in_((ORG_OWNER, ORG_ADMIN)))
            .all()
        )
        return [r[0] for r in rows]
    return []


def _notify(s: "Session", sub: Subscription, type_: str, **extra: Any) -> None:
    from app.saaskit.modules.notifications.service import create_notification

    metadata = {"plan": sub.plan, "status": sub.status, **extra}
    for user_id in _recipients(s, sub):
        create_notification(s, type=type_, user_id=user_id, metadata=metadata)


def _sync_from_stripe(sub: Subscription, obj: dict) -> None:
    item = _first_item(obj)
    sub.stripe_subscription_id = obj.get("id") or sub.stripe_subscription_id
    sub.stripe_customer_id = obj.get("customer") or sub.stripe_customer_id
    sub.status = obj.get("status") or sub.status
    # Newer API versions carry the period on the subscription item.
    sub.period_start = _ts(obj.get("current_period_start") or item.get("current_period_start")) or sub.period_start
    sub.period_end = _ts(obj.get("current_period_end") or item.get("current_period_end")) or sub.period_end
    sub.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    sub.seats = int(obj.get("quantity") or item.get("quantity") or sub.seats or 1)
    sub.trial_start = _ts(obj.get("trial_start")) or sub.trial_start
    sub.trial_end = _ts(obj.get("trial_end")) or sub.trial_end
    sub.updated_at = datetime.utcnow()


def handle_checkout_completed(s: "Session", obj: dict) -> Subscription | None:
    sub = _find_subscription(s, obj.get("subscription"), obj.get("metadata"))
    if not sub:
        logger.warning("checkout.session.completed without a local subscription (session=%s)", obj.get("id"))
        return None
    sub.stripe_customer_id = obj.get("customer") or sub.stripe_customer_id
    sub.stripe_subscription_id = obj.get("subscription") or sub.stripe_subscription_id
    sub.stripe_checkout_session_id = obj.get("id") or sub.stripe_checkout_session_id
    if sub.status not in ("active", "trialing"):
        sub.status = "active"
    sub.updated_at = datetime.utcnow()

    if sub.user_id and sub.stripe_customer_id:
        from app.saaskit.models import User

        user = s.get(User, sub.user_id)
        if user and not user.stripe_customer_id:
            user.stripe_customer_id = sub.stripe_customer_id

    # Other live subscriptions for the same payer are replaced by this one.
    others = (
        s.query(Subscription)
        .filter(
            Subscription.reference_id == sub.reference_id,
            Subscription.id != sub.id,
            Subscription.status.in_(("active", "trialing")),
        )
        .all()
    )
    for old in others:
        old.status = "canceled"
        old.updated_at = datetime.utcnow()

    record_event(s, actor=None, action="subscription.activate", entity_type="Subscription", entity_id=sub.id, metadata={"plan": sub.plan})
    _notify(s, sub, "subscription_created")
    return sub


def handle_subscription_updated(s: "Session", obj: dict) -> Subscription | None:
    sub = _find_subscription(s, obj.get("id"), obj.get("metadata"))
    if not sub:
        logger.warning("customer.subscription.updated for unknown subscription %s", obj.get("id"))
        return None
    was_canceling = sub.cancel_at_period_end
    _sync_from_stripe(sub, obj)
    record_event(s, actor=None, action="subscription.sync", entity_type="Subscription", entity_id=sub.id, metadata={"status": sub.status})
    if sub.cancel_at_period_end and not was_canceling:
        period_end = sub.period_end.strftime("%Y-%m-%d") if sub.period_end else ""
        _notify(s, sub, "subscription_canceled", period_end=period_end)
    else:
        _notify(s, sub, "subscription_updated")
    return sub


def handle_subscription_deleted(s: "Session", obj: dict) -> Subscription | None:
    sub = _find_subscription(s, obj.get("id"), obj.get("metadata"))
    if not sub:
        logger.warning("customer.subscription.deleted for unknown subscription %s", obj.get("id"))
        return None
    sub.status = "canceled"
    sub.cancel_at_period_end = False
    sub.updated_at = datetime.utcnow()
    record_event(s, actor=None, action="subscription.end", entity_type="Subscription", entity_id=sub.id)
    _notify(s, sub, "subscription_deleted")
    return sub


def _invoice_subscription_id(obj: dict) -> str | None:
    if obj.get("subscription"):
        return obj["subscription"]
    details = ((obj.get("parent") or {}).get("subscription_details")) or {}
    return details.get("subscription")


def handle_invoice(s: "Session", obj: dict, *, paid: bool) -> Subscription | None:
    sub = _find_subscription(s, _invoice_subscription_id(obj), None)
    if not sub:
        logger.info("invoice %s not linked to a local subscription", obj.get("id"))
        return None
    if not paid:
        sub.status = "past_due"
        sub.updated_at = datetime.utcnow()
    amount = (obj.get("amount_paid") if paid else obj.get("amount_due")) or 0
    record_event(
        s,
        actor=None,
        action="invoice.paid" if paid else "invoice.failed",
        entity_type="Subscription",
        entity_id=sub.id,
        metadata={"invoice": obj.get("id"), "amount": amount, "currency": obj.get("currency")},
    )
    _notify(s, sub, "payment_succeeded" if paid else "payment_failed")
    return sub


HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": lambda s, obj: handle_invoice(s, obj, paid=True),
    "invoice.payment_failed": lambda s, obj: handle_invoice(s, obj, paid=False),
}


def process_event(s: "Session", event: dict[str, Any]) -> bool:
    """Dispatch a verified event. Returns False for event types we ignore."""
    event_type = event.get("type") or ""
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Ignoring Stripe event %s", event_type)
        return False
    obj = ((event.get("data") or {}).get("object")) or {}
    logger.info("Processing Stripe event %s (%s)", event_type, event.get("id"))
    handler(s, obj)
    return True
