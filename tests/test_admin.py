from datetime import date, timedelta

from app.saaskit.db import session_scope
from app.saaskit.models import AuditEvent, User
from app.saaskit.modules.billing.models import Subscription, SubscriptionPlan
from app.saaskit.modules.notifications.models import Notification
from app.saaskit.modules.organizations.models import Organization
from app.saaskit.rbac import global_role
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, CSRF, login, make_org, make_user


def _admin_login(client):
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)


def _user(app, user_id):
    with session_scope(app) as s:
        u = s.get(User, user_id)
        if u is not None:
            u.roles  # load before the session closes
        return u


def test_dashboard_and_index_pages(app, client):
    make_user(app, "jane@example.com")
    _admin_login(client)
    r = client.get("/admin/")
    assert r.status_code == 200
    assert b"System status" in r.data
    for path in ("/admin/users", "/admin/organizations", "/admin/plans", "/admin/plans/new", "/admin/subscriptions", "/admin/audit", "/admin/roles"):
        assert client.get(path).status_code == 200, path


def test_non_admins_are_kept_out(app, client):
    make_user(app, "jane@example.com")
    make_user(app, "writer@example.com", role="redactor")

    login(client, "jane@example.com")
    assert client.get("/admin/").status_code == 403
    assert client.get("/admin/users").status_code == 403

    client.get("/auth/logout")
    login(client, "writer@example.com")
    assert client.get("/admin/").status_code == 403
    assert client.get("/admin/plans").status_code == 403
    assert client.get("/admin/blog").status_code == 200

    client.get("/auth/logout")
    r = client.get("/admin/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_user_search(app, client):
    make_user(app, "jane@example.com", name="Jane Doe")
    make_user(app, "bob@example.com", name="Bob")
    _admin_login(client)
    r = client.get("/admin/users?q=DOE")
    assert b"jane@example.com" in r.data
    assert b"bob@example.com" not in r.data


def test_ban_and_unban(app, client):
    uid = make_user(app, "jane@example.com")
    _admin_login(client)
    expires = (date.today() + timedelta(days=7)).isoformat()
    r = client.post(f"/admin/users/{uid}/ban", data={"reason": "Spam", "expires": expires, "csrf_token": CSRF})
    assert r.headers["Location"].endswith(f"/admin/users/{uid}")
    user = _user(app, uid)
    assert user.banned is True
    assert user.ban_reason == "Spam"
    assert user.ban_expires.date().isoformat() == expires
    assert client.get(f"/admin/users/{uid}").status_code == 200

    with session_scope(app) as s:
        assert s.query(Notification).filter(Notification.user_id == uid, Notification.type == "user_banned").count() == 1
        assert s.query(AuditEvent).filter(AuditEvent.action == "user.ban", AuditEvent.entity_id == str(uid)).one().reason == "Spam"

    other = client.application.test_client()
    other.post("/auth/login", data={"email": "jane@example.com", "password": "password123"})
    with other.session_transaction() as sess:
        assert "user_id" not in sess

    client.post(f"/admin/users/{uid}/unban", data={"csrf_token": CSRF})
    user = _user(app, uid)
    assert (user.banned, user.ban_reason, user.ban_expires) == (False, None, None)


def test_ban_validation(app, client):
    uid = make_user(app, "jane@example.com")
    _admin_login(client)
    client.post(f"/admin/users/{uid}/ban", data={"reason": "", "csrf_token": CSRF})
    client.post(f"/admin/users/{uid}/ban", data={"reason": "Spam", "expires": "soon", "csrf_token": CSRF})
    client.post(f"/admin/users/{uid}/ban", data={"reason": "Spam", "expires": "2000-01-01", "csrf_token": CSRF})
    assert _user(app, uid).banned is False

    with session_scope(app) as s:
        admin_id = s.query(User.id).filter(User.email == ADMIN_EMAIL).scalar()
    client.post(f"/admin/users/{admin_id}/ban", data={"reason": "Oops", "csrf_token": CSRF})
    assert _user(app, admin_id).banned is False


def test_role_change(app, client):
    uid = make_user(app, "jane@example.com")
    _admin_login(client)
    client.post(f"/admin/users/{uid}/role", data={"role": "redactor", "csrf_token": CSRF})
    assert global_role(_user(app, uid)) == "redactor"

    client.post(f"/admin/users/{uid}/role", data={"role": "emperor", "csrf_token": CSRF})
    assert global_role(_user(app, uid)) == "redactor"

    with session_scope(app) as s:
        admin_id = s.query(User.id).filter(User.email == ADMIN_EMAIL).scalar()
    client.post(f"/admin/users/{admin_id}/role", data={"role": "user", "csrf_token": CSRF})
    assert global_role(_user(app, admin_id)) == "admin"


def test_delete_user(app, client):
    uid = make_user(app, "jane@example.com")
    _admin_login(client)
    r = client.post(f"/admin/users/{uid}/delete", data={"csrf_token": CSRF})
    assert r.headers["Location"].endswith("/admin/users")
    assert _user(app, uid) is None
    assert client.get(f"/admin/users/{uid}").status_code == 404


def test_organization_edit_and_delete(app, client):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    _admin_login(client)
    assert b"acme" in client.get("/admin/organizations?q=ACM").data
    assert client.get(f"/admin/organizations/{org_id}").status_code == 200

    client.post(f"/admin/organizations/{org_id}/edit", data={"name": "Acme Global", "slug": "acme", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.get(Organization, org_id).name == "Acme Global"

    r = client.post(f"/admin/organizations/{org_id}/delete", data={"csrf_token": CSRF})
    assert r.headers["Location"].endswith("/admin/organizations")
    with session_scope(app) as s:
        assert s.get(Organization, org_id) is None


def test_plan_create_update_and_status(app, client):
    _admin_login(client)
    r = client.post(
        "/admin/plans/new",
        data={
            "code": "team",
            "plan_name": "Team",
            "price": "49",
            "currency": "usd",
            "limits": '{"projects": 10, "users": 20}',
            "features": '["Everything in Pro"]',
            "display_order": "4",
            "is_recurring": "1",
            "status": "active",
            "csrf_token": CSRF,
        },
    )
    assert r.headers["Location"].endswith("/admin/plans")
    with session_scope(app) as s:
        plan = s.query(SubscriptionPlan).filter(SubscriptionPlan.code == "team").one()
        assert plan.limits == {"projects": 10, "users": 20}
        assert plan.currency == "USD"
        assert plan.version == 1
        plan_id = plan.id
    assert client.get(f"/admin/plans/{plan_id}/edit").status_code == 200

    # Invalid JSON leaves the plan untouched.
    client.post(f"/admin/plans/{plan_id}/edit", data={"plan_name": "Team", "price": "49", "limits": "{", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.get(SubscriptionPlan, plan_id).limits == {"projects": 10, "users": 20}

    client.post(f"/admin/plans/{plan_id}/edit", data={"plan_name": "Team+", "price": "59", "limits": '{"projects": 10}', "csrf_token": CSRF})
    with session_scope(app) as s:
        plan = s.get(SubscriptionPlan, plan_id)
        assert (plan.plan_name, plan.version) == ("Team+", 2)

    client.post(f"/admin/plans/{plan_id}/edit", data={"plan_name": "Team Plus", "price": "59", "limits": '{"projects": 10}', "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.get(SubscriptionPlan, plan_id).version == 2

    client.post(f"/admin/plans/{plan_id}/status", data={"status": "deprecated", "csrf_token": CSRF})
    with session_scope(app) as s:
        plan = s.get(SubscriptionPlan, plan_id)
        assert (plan.status, plan.is_legacy) == ("deprecated", True)
    assert b"Team Plus" not in client.get("/pricing").data


def test_duplicate_plan_code(app, client):
    _admin_login(client)
    client.post("/admin/plans/new", data={"code": "pro", "plan_name": "Again", "price": "1", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.query(SubscriptionPlan).filter(SubscriptionPlan.code == "pro").one().plan_name == "Pro"


def test_subscription_list_and_audit_filters(app, client):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    with session_scope(app) as s:
        s.add(Subscription(plan="pro", reference_id=f"org:{org_id}", organization_id=org_id, status="past_due", seats=2))
    _admin_login(client)

    r = client.get("/admin/subscriptions?status=past_due")
    assert r.status_code == 200
    assert f"org:{org_id}".encode() in r.data
    assert client.get("/admin/subscriptions?status=active").status_code == 200

    r = client.get("/admin/audit?action=auth.login")
    assert r.status_code == 200
    assert ADMIN_EMAIL.encode() in r.data
    today = date.today().isoformat()
    assert client.get(f"/admin/audit?entity_type=User&date_from={today}&date_to={today}").status_code == 200
    assert client.get("/admin/audit?date_from=yesterday").status_code == 200
