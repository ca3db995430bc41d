from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

from flask import current_app, has_app_context

from app.saaskit.abilities import DELETE, UPDATE, ensure_can
from app.saaskit.errors import NotFoundError, ValidationError
from app.saaskit.facades import logged_service
from app.saaskit.mailer import send_email
from app.saaskit.pagination import Page, paginate

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saaskit.models import User
    from app.saaskit.modules.accounts.models import UserSettings
    from app.saaskit.modules.notifications.models import Notification


# Default title/message per type; placeholders are filled from metadata.
NOTIFICATION_TEMPLATES: dict[str, tuple[str, str]] = {
    "payment_failed": ("Payment failed", "Your payment for the {plan} plan failed. Please update your payment method."),
    "payment_succeeded": ("Payment received", "Thank you, your payment for the {plan} plan was received."),
    "subscription_created": ("Subscription active", "Your {plan} subscription is now active."),
    "subscription_updated": ("Subscription updated", "Your {plan} subscription was updated (status: {status})."),
    "subscription_canceled": ("Subscription canceled", "Your {plan} subscription will end on {period_end}."),
    "subscription_deleted": ("Subscription ended", "Your {plan} subscription has ended."),
    "organization_invitation": ("Invitation", "{inviter} invited you to join {organization_name}: {invite_url}"),
    "project_created": ("Project created", "Project \"{project_name}\" was created."),
    "project_updated": ("Project updated", "Project \"{project_name}\" was updated."),
    "user_banned": ("Account suspended", "Your account was suspended. Reason: {reason}"),
    "user_unbanned": ("Account restored", "Your account is active again."),
    "system_maintenance": ("Scheduled maintenance", "Maintenance is planned: {details}"),
    "security_alert": ("Security alert", "{details}"),
    "password_changed": ("Password changed", "Your password was changed. If this was not you, reset it immediately."),
    "reset_password": ("Reset your password", "Use this link to choose a new password: {reset_url}"),
    "email_verification": ("Verify your email", "Confirm your email address: {verify_url}"),
    "change_email_verification": ("Confirm your new email", "Confirm your new email address: {verify_url}"),
    "magic_link": ("Your sign-in link", "Sign in with this link: {url}"),
    "otp_code": ("Your verification code", "Your code is {otp}"),
}

NOTIFICATION_TYPES = tuple(NOTIFICATION_TEMPLATES)

# Sent by email whatever the user's preferences.
CRITICAL_TYPES = frozenset(
    {
        "reset_password",
        "email_verification",
        "change_email_verification",
        "magic_link",
        "otp_code",
        "security_alert",
        "password_changed",
        "organization_invitation",
        "subscription_created",
        "subscription_updated",
        "subscription_canceled",
        "subscription_deleted",
    }
)


def render_notification(type_: str, metadata: dict[str, Any] | None) -> tuple[str, str]:
    title_tpl, message_tpl = NOTIFICATION_TEMPLATES[type_]
    values: defaultdict[str, Any] = defaultdict(str, metadata or {})
    return title_tpl.format_map(values), message_tpl.format_map(values)


def should_send_email(type_: str, settings: "UserSettings | None") -> bool:
    if type_ in CRITICAL_TYPES:
        return True
    if settings is None or not settings.enable_email_notifications:
        return False
    return settings.notification_channel in ("email", "both")


def _settings_for(s: "Session", user_id: int) -> "UserSettings | None":
    from app.saaskit.modules.accounts.models import UserSettings

    return s.query(UserSettings).filter(UserSettings.user_id == user_id).one_or_none()


@logged_service("notification")
def create_notification(
    s: "Session",
    *,
    type: str,
    user_id: int | None = None,
    email: str | None = None,
    metadata: dict[str, Any] | None = None,
    title: str | None = None,
    message: str | None = None,
) -> "Notification | None":
    """
    Store an in-app notification for `user_id` (when given) and send it by
    email when the type is critical or the user's settings allow it.
    `email` alone (no account yet) is used for invitations.
    """
    from app.saaskit.models import User
    from app.saaskit.modules.notifications.models import Notification

    if type not in NOTIFICATION_TEMPLATES:
        raise ValidationError(f"Unknown notification type: {type}")
    if user_id is None and not email:
        raise ValidationError("A recipient user or email is required.")

    default_title, default_message = render_notification(type, metadata)
    title = title or default_title
    message = message or default_message

    notification = None
    settings = None
    recipient = email
    if user_id is not None:
        user = s.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        recipient = recipient or user.email
        settings = _settings_for(s, user_id)
        notification = Notification(user_id=user_id, type=type, title=title, message=message, extra=metadata or None)
        s.add(notification)
        s.flush()

    if recipient and should_send_email(type, settings) and has_app_context():
        ok, detail = send_email(current_app.config, recipient, title, message)
        if not ok:
            current_app.logger.warning("Notification email %s to %s not sent: %s", type, recipient, detail)
    return notification


def _get_owned(s: "Session", notification_id: int, user: "User", action: str) -> "Notification":
    from app.saaskit.modules.notifications.models import Notification

    n = s.get(Notification, notification_id)
    if not n:
        raise NotFoundError("Notification not found")
    ensure_can(s, user, action, "Notification", {"user_id": n.user_id})
    return n


@logged_service("notification")
def list_notifications(s: "Session", user: "User", page: int = 1, limit: int = 20, unread_only: bool = False) -> Page:
    from app.saaskit.modules.notifications.models import Notification

    q = s.query(Notification).filter(Notification.user_id == user.id)
    if unread_only:
        q = q.filter(Notification.read.is_(False))
    q = q.order_by(Notification.created_at.desc(), Notification.id.desc())
    return paginate(q, page, limit)


@logged_service("notification")
def count_unread(s: "Session", user_id: int) -> int:
    from app.saaskit.modules.notifications.models import Notification

    return (
        s.query(Notification)
        .filter(Notification.user_id == user_id, Notification.read.is_(False))
        .count()
    )


@logged_service("notification")
def mark_as_read(s: "Session", notification_id: int, user: "User") -> "Notification":
    n = _get_owned(s, notification_id, user, UPDATE)
    n.read = True
    return n


@logged_service("notification")
def mark_all_as_read(s: "Session", user: "User") -> int:
    from app.saaskit.modules.notifications.models import Notification

    return (
        s.query(Notification)
        .filter(Notification.user_id == user.id, Notification.read.is_(False))
        .update({Notification.read: True}, synchronize_session=False)
    )


@logged_service("notification")
def delete_notification(s: "Session", notification_id: int, user: "User") -> None:
    n = _get_owned(s, notification_id, user, DELETE)
    s.delete(n)


@logged_service("notification")
def delete_read_notifications(s: "Session", user: "User") -> int:
    from app.saaskit.modules.notifications.models import Notification

    return (
        s.query(Notification)
        .filter(Notification.user_id == user.id, Notification.read.is_(True))
        .delete(synchronize_session=False)
    )
