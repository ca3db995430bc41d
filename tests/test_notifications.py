import pytest

from app.saaskit.db import session_scope
from app.saaskit.errors import NotFoundError, ValidationError
from app.saaskit.modules.accounts.models import UserSettings
from app.saaskit.modules.notifications import service as notifications
from app.saaskit.modules.notifications.models import Notification
from app.saaskit.modules.notifications.service import create_notification, render_notification, should_send_email
from conftest import csrf, login, make_user


@pytest.fixture()
def sent(monkeypatch):
    outbox = []

    def fake_send(config, to, subject, body, **kwargs):
        outbox.append((to, subject, body))
        return True, "sent"

    monkeypatch.setattr(notifications, "send_email", fake_send)
    return outbox


def _notify(app, user_id, type_="project_created", **metadata):
    with app.app_context(), session_scope(app) as s:
        return create_notification(s, type=type_, user_id=user_id, metadata=metadata or {"project_name": "Apollo"}).id


def test_render_notification_fills_placeholders():
    title, message = render_notification("payment_failed", {"plan": "pro"})
    assert title == "Payment failed"
    assert message == "Your payment for the pro plan failed. Please update your payment method."
    # Missing placeholders render empty rather than failing.
    assert render_notification("subscription_canceled", {"plan": "pro"})[1] == "Your pro subscription will end on ."


@pytest.mark.parametrize(
    "type_,enabled,channel,expected",
    [
        ("reset_password", False, "none", True),
        ("project_created", True, "email", True),
        ("project_created", True, "both", True),
        ("project_created", True, "push", False),
        ("project_created", False, "email", False),
    ],
)
def test_should_send_email(type_, enabled, channel, expected):
    settings = UserSettings(enable_email_notifications=enabled, notification_channel=channel)
    assert should_send_email(type_, settings) is expected


def test_should_send_email_without_settings():
    assert should_send_email("project_created", None) is False
    assert should_send_email("security_alert", None) is True


def test_create_notification_stores_and_emails(app, sent):
    uid = make_user(app, "jane@example.com")
    nid = _notify(app, uid)
    with session_scope(app) as s:
        n = s.get(Notification, nid)
        assert (n.title, n.message, n.read) == ("Project created", 'Project "Apollo" was created.', False)
    assert sent == [("jane@example.com", "Project created", 'Project "Apollo" was created.')]


def test_create_notification_respects_preferences(app, sent):
    uid = make_user(app, "jane@example.com")
    with session_scope(app) as s:
        s.query(UserSettings).filter(UserSettings.user_id == uid).one().notification_channel = "push"
    _notify(app, uid)
    assert sent == []
    _notify(app, uid, "security_alert", details="New sign-in")
    assert [subject for _to, subject, _body in sent] == ["Security alert"]


def test_create_notification_for_email_only(app, sent):
    with app.app_context(), session_scope(app) as s:
        assert create_notification(s, type="organization_invitation", email="new@example.com", metadata={"organization_name": "Acme"}) is None
        assert s.query(Notification).count() == 0
    assert sent[0][0] == "new@example.com"


def test_create_notification_rejects_bad_input(app):
    with app.app_context(), session_scope(app) as s:
        with pytest.raises(ValidationError):
            create_notification(s, type="carrier_pigeon", user_id=1)
        with pytest.raises(ValidationError):
            create_notification(s, type="project_created")
        with pytest.raises(NotFoundError):
            create_notification(s, type="project_created", user_id=9999)


def test_notification_routes(app, client, sent):
    uid = make_user(app, "jane@example.com")
    first = _notify(app, uid)
    second = _notify(app, uid, project_name="Gemini")
    login(client, "jane@example.com")
    headers = csrf(client)

    r = client.get("/account/notifications")
    assert r.status_code == 200
    assert b"Gemini" in r.data

    assert client.get("/account/notifications/unread-count").get_json() == {"success": True, "data": {"count": 2}}

    r = client.post(f"/account/notifications/{first}/read", headers=headers)
    body = r.get_json()
    assert body["success"] is True
    assert body["data"]["read"] is True
    assert body["data"]["metadata"] == {"project_name": "Apollo"}
    assert client.get("/account/notifications/unread-count").get_json()["data"]["count"] == 1
    assert client.get("/account/notifications?unread=1").status_code == 200

    r = client.post("/account/notifications/read-all", json={}, headers=headers)
    assert r.get_json() == {"success": True, "data": {"updated": 1}}

    r = client.post(f"/account/notifications/{second}/delete", headers=headers)
    assert r.get_json() == {"success": True, "message": "Notification deleted"}

    r = client.post("/account/notifications/delete-read", headers=headers)
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(Notification).filter(Notification.user_id == uid).count() == 0


def test_cannot_touch_someone_elses_notification(app, client, sent):
    owner = make_user(app, "jane@example.com")
    make_user(app, "mallory@example.com")
    nid = _notify(app, owner)
    login(client, "mallory@example.com")
    headers = csrf(client)

    r = client.post(f"/account/notifications/{nid}/read", headers=headers)
    assert r.status_code == 403
    assert r.get_json() == {"success": False, "message": "Access denied"}
    assert client.post(f"/account/notifications/{nid}/delete", headers=headers).status_code == 403
    assert client.post("/account/notifications/9999/read", headers=headers).status_code == 404
    with session_scope(app) as s:
        assert s.get(Notification, nid).read is False


def test_dashboard_lists_recent_notifications(app, client, sent):
    uid = make_user(app, "jane@example.com")
    for name in ("Apollo", "Gemini"):
        _notify(app, uid, project_name=name)
    login(client, "jane@example.com")
    r = client.get("/dashboard")
    assert r.status_code == 200
    assert b"Recent notifications" in r.data
    assert b"Project &#34;Gemini&#34; was created." in r.data
    assert b"2 unread notification(s)" in r.data
