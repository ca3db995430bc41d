from datetime import datetime, timedelta

from werkzeug.security import check_password_hash

from app.saaskit import jobs
from app.saaskit.db import session_scope
from app.saaskit.models import AuditEvent, User
from app.saaskit.modules.accounts.models import UserSettings
from app.saaskit.modules.notifications.models import Notification
from app.saaskit.modules.organizations.models import Member
from app.saaskit.security import make_password_reset_token
from conftest import PASSWORD, login, make_user


def _register(client, email="new@example.com", **overrides):
    data = {"name": "New Person", "email": email, "password": PASSWORD, "confirm": PASSWORD, "language": "en"}
    data.update(overrides)
    return client.post("/auth/register", data=data)


def test_register_creates_account_settings_and_personal_team(app, client):
    r = _register(client)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")

    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "new@example.com").one()
        assert [role.key for role in user.roles] == ["user"]
        settings = s.query(UserSettings).filter(UserSettings.user_id == user.id).one()
        assert settings.language == "en"
        membership = s.query(Member).filter(Member.user_id == user.id).one()
        assert membership.role == "owner"
        assert membership.organization.name == "New Person's team"

    assert client.get("/dashboard").status_code == 200


def test_register_rejects_bad_input(app, client):
    r = _register(client, email="not-an-email", confirm="different")
    assert r.status_code == 400
    assert b"A valid email is required." in r.data
    assert b"Passwords do not match." in r.data

    _register(client, email="dupe@example.com")
    client.get("/auth/logout")
    r = _register(client, email="DUPE@example.com")
    assert r.status_code == 400
    assert b"already exists" in r.data


def test_register_schedules_welcome_follow_up(app, client, monkeypatch):
    calls = []

    class FakeTask:
        def apply_async(self, kwargs=None, countdown=None):
            calls.append((kwargs, countdown))

    app.config["BACKGROUND_JOBS_ENABLED"] = True
    monkeypatch.setattr(jobs, "send_welcome_follow_up_email", FakeTask())

    _register(client, email="welcome@example.com", language="es")

    assert len(calls) == 1
    kwargs, countdown = calls[0]
    assert countdown == jobs.WELCOME_FOLLOW_UP_DELAY == 24 * 60 * 60
    assert kwargs["email"] == "welcome@example.com"
    assert kwargs["language"] == "es"


def test_register_skips_follow_up_when_jobs_disabled(app, client, monkeypatch):
    class ExplodingTask:
        def apply_async(self, **kwargs):
            raise AssertionError("should not be queued")

    monkeypatch.setattr(jobs, "send_welcome_follow_up_email", ExplodingTask())
    assert _register(client, email="nojobs@example.com").status_code == 302


def test_login_invalid_credentials_is_audited(app, client):
    make_user(app, "bob@example.com")
    r = client.post("/auth/login", data={"email": "bob@example.com", "password": "wrong-password"})
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    with client.session_transaction() as sess:
        assert "user_id" not in sess

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.reason == "Invalid credentials"


def test_login_redirects_to_safe_next_only(app, client):
    make_user(app, "bob@example.com")
    r = client.post("/auth/login", data={"email": "bob@example.com", "password": PASSWORD, "next": "/account"})
    assert r.headers["Location"].endswith("/account")
    client.get("/auth/logout")

    r = client.post("/auth/login", data={"email": "bob@example.com", "password": PASSWORD, "next": "//evil.example.com"})
    assert r.headers["Location"].endswith("/dashboard")


def test_banned_user_cannot_login(app, client):
    uid = make_user(app, "banned@example.com")
    with session_scope(app) as s:
        u = s.get(User, uid)
        u.banned = True
        u.ban_reason = "Spam"

    client.post("/auth/login", data={"email": "banned@example.com", "password": PASSWORD})
    with client.session_transaction() as sess:
        assert "user_id" not in sess
        flashes = [m for _, m in sess.get("_flashes", [])]
    assert any("Reason: Spam" in m for m in flashes)


def test_expired_ban_is_lifted_on_next_request(app, client):
    uid = make_user(app, "lifted@example.com")
    login(client, "lifted@example.com")
    with session_scope(app) as s:
        u = s.get(User, uid)
        u.banned = True
        u.ban_reason = "Cool down"
        u.ban_expires = datetime.utcnow() - timedelta(minutes=1)

    assert client.get("/dashboard").status_code == 200
    with session_scope(app) as s:
        assert s.get(User, uid).banned is False
        assert s.query(AuditEvent).filter(AuditEvent.action == "user.ban_expired").count() == 1


def test_login_is_rate_limited(app, client):
    make_user(app, "bob@example.com")
    for _ in range(5):
        client.post("/auth/login", data={"email": "bob@example.com", "password": "nope"})
    r = client.post("/auth/login", data={"email": "bob@example.com", "password": "nope"}, headers={"Accept": "application/json"})
    assert r.status_code == 429
    assert r.json["success"] is False


def test_logout_clears_session(app, client):
    make_user(app, "bob@example.com")
    login(client, "bob@example.com")
    r = client.get("/auth/logout")
    assert r.status_code == 302
    assert client.get("/dashboard").status_code == 302


def test_forgot_password_does_not_leak_accounts(app, client):
    make_user(app, "bob@example.com")
    for email in ("bob@example.com", "ghost@example.com"):
        r = client.post("/auth/forgot-password", data={"email": email})
        assert r.status_code == 302
        with client.session_transaction() as sess:
            flashes = [m for _, m in sess.pop("_flashes", [])]
        assert flashes == ["If an account exists for this email, a reset link has been sent."]

    with session_scope(app) as s:
        n = s.query(Notification).filter(Notification.type == "reset_password").one()
        assert "/auth/reset-password/" in n.extra["reset_url"]


def test_reset_password_flow(app, client):
    uid = make_user(app, "bob@example.com")
    with session_scope(app) as s:
        password_hash = s.get(User, uid).password_hash
    with app.test_request_context():
        token = make_password_reset_token(uid, password_hash)

    assert client.get(f"/auth/reset-password/{token}").status_code == 200
    r = client.post(f"/auth/reset-password/{token}", data={"password": "short", "confirm": "short"})
    assert r.status_code == 400

    r = client.post(f"/auth/reset-password/{token}", data={"password": "brand-new-pass", "confirm": "brand-new-pass"})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert check_password_hash(s.get(User, uid).password_hash, "brand-new-pass")
        assert s.query(Notification).filter(Notification.user_id == uid, Notification.type == "password_changed").count() == 1

    # The token is bound to the old password hash.
    r = client.get(f"/auth/reset-password/{token}")
    assert r.status_code == 302
    assert "/auth/forgot-password" in r.headers["Location"]


def test_invalid_reset_token_redirects(client):
    r = client.get("/auth/reset-password/not-a-token")
    assert r.status_code == 302
    assert "/auth/forgot-password" in r.headers["Location"]
