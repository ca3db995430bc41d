import pytest
from werkzeug.security import generate_password_hash

from app.saaskit import create_app
from app.saaskit.db import session_scope
from app.saaskit.models import Base, Role, User
from app.saaskit.modules.accounts.models import UserSettings
from app.saaskit.modules.billing.models import SubscriptionPlan
from app.saaskit.modules.organizations.models import Member, Organization

CSRF = "test-csrf-token"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-password"
PASSWORD = "password123"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("APP_URL", "http://testserver")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("RATELIMIT_STORAGE_URI", "memory://")
    monkeypatch.setenv("BACKGROUND_JOBS_ENABLED", "0")
    monkeypatch.setenv("BILLING_MODE", "ORGANIZATION")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_WEBHOOK_ENABLED", "1")
    monkeypatch.setenv("STRIPE_PRICE_PRO_MONTHLY", "price_pro_monthly")
    monkeypatch.setenv("STRIPE_PRICE_PRO_YEARLY", "price_pro_yearly")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "SMTP_SERVER", "REDIS_URL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    from scripts.init_db import seed

    with session_scope(app) as s:
        seed(s, admin_email=ADMIN_EMAIL, admin_password=ADMIN_PASSWORD)

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def make_user(app, email, *, role="user", password=PASSWORD, name=None, language="en") -> int:
    with session_scope(app) as s:
        u = User(
            email=email,
            name=name or email.split("@")[0],
            password_hash=generate_password_hash(password),
            is_active=True,
        )
        u.roles.append(s.query(Role).filter(Role.key == role).one())
        s.add(u)
        s.flush()
        s.add(UserSettings(user_id=u.id, language=language))
        return u.id


def make_org(app, owner_id, slug, *, name=None) -> int:
    with session_scope(app) as s:
        org = Organization(name=name or slug.title(), slug=slug)
        s.add(org)
        s.flush()
        s.add(Member(organization_id=org.id, user_id=owner_id, role="owner"))
        return org.id


def add_member(app, org_id, user_id, role="member") -> int:
    with session_scope(app) as s:
        m = Member(organization_id=org_id, user_id=user_id, role=role)
        s.add(m)
        s.flush()
        return m.id


def set_plan_limits(app, code="free", **limits) -> None:
    with session_scope(app) as s:
        plan = s.query(SubscriptionPlan).filter(SubscriptionPlan.code == code).one()
        plan.limits = {**plan.limits, **limits}


def login(client, email, password=PASSWORD):
    r = client.post("/auth/login", data={"email": email, "password": password})
    assert r.status_code == 302
    with client.session_transaction() as sess:
        assert "user_id" in sess
        sess["csrf_token"] = CSRF
    return r


def csrf(client):
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    return {"X-CSRF-Token": CSRF}
