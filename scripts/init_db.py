import os
import sys
from decimal import Decimal
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.saaskit.models import Permission, Role, User
from app.saaskit.modules.billing.models import SubscriptionPlan

PERMISSIONS = {
    "admin.view": "Admin: view back-office",
    "admin.users": "Admin: manage users",
    "admin.organizations": "Admin: manage organizations",
    "admin.billing": "Admin: manage plans and subscriptions",
    "blog.manage": "Blog: manage posts",
}

ROLES = {
    # key: (name, permission keys)
    "user": ("User", ()),
    "redactor": ("Redactor", ("blog.manage",)),
    "admin": ("Administrator", tuple(PERMISSIONS)),
}


def _default_plans() -> list[dict]:
    env = os.environ.get
    return [
        {
            "code": "free",
            "plan_name": "Free",
            "price_id": None,
            "annual_discount_price_id": None,
            "limits": {"projects": 1, "users": 1, "storage": 1},
            "features": ["1 user", "1 project", "1 GB storage", "Community support"],
            "price": Decimal("0"),
            "yearly_price": Decimal("0"),
            "display_order": 1,
        },
        {
            "code": "pro",
            "plan_name": "Pro",
            "price_id": env("STRIPE_PRICE_PRO_MONTHLY") or None,
            "annual_discount_price_id": env("STRIPE_PRICE_PRO_YEARLY") or None,
            "limits": {"projects": 2, "users": 5, "storage": 10},
            "features": ["Up to 5 users", "2 projects", "10 GB storage", "Priority support"],
            "price": Decimal("29"),
            "yearly_price": Decimal("249"),
            "display_order": 2,
        },
        {
            "code": "enterprise",
            "plan_name": "Enterprise",
            "price_id": env("STRIPE_PRICE_ENTERPRISE_MONTHLY") or None,
            "annual_discount_price_id": env("STRIPE_PRICE_ENTERPRISE_YEARLY") or None,
            "limits": {"projects": 3, "users": 50, "storage": 50},
            "features": ["Up to 50 users", "3 projects", "50 GB storage", "24/7 support"],
            "price": Decimal("99"),
            "yearly_price": Decimal("990"),
            "display_order": 3,
        },
    ]


def seed(s, *, admin_email: str, admin_password: str) -> User:
    """
    Seed permissions/roles/plans/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password or an existing plan.
    """
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS.items():
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for key, (name, perm_keys) in ROLES.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
        for pk in perm_keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
        roles[key] = role

    for values in _default_plans():
        if s.query(SubscriptionPlan).filter(SubscriptionPlan.code == values["code"]).one_or_none():
            continue
        s.add(SubscriptionPlan(currency="EUR", status="active", is_recurring=True, **values))

    user = s.query(User).filter(User.email == admin_email).one_or_none()
    if not user:
        user = User(email=admin_email, name="Admin", password_hash=generate_password_hash(admin_password), is_active=True, email_verified=True)
        s.add(user)
    # Global role is exclusive.
    user.roles = [roles["admin"]]
    s.flush()
    return user


def seed_only(*, database_url: str | None = None) -> None:
    from scripts._db_utils import script_session

    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@saaskit.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///saaskit.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        seed(s, admin_email=admin_email, admin_password=admin_password)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
