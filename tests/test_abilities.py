import pytest

from app.saaskit.abilities import CREATE, DELETE, MANAGE, READ, UPDATE, build_rules, can
from app.saaskit.models import Permission, Role, User
from app.saaskit.rbac import global_role, has_required_role, is_admin, user_has_permission


def _user(uid, *role_keys, perms=()):
    u = User(id=uid, email=f"u{uid}@example.com", password_hash="x", is_active=True, banned=False)
    for key in role_keys:
        role = Role(key=key, name=key.title())
        role.permissions.extend(Permission(key=p, name=p) for p in perms)
        u.roles.append(role)
    return u


def test_guest_reads_only_published_posts():
    assert can(None, READ, "Post", {"status": "published"})
    assert not can(None, READ, "Post", {"status": "draft"})
    assert not can(None, CREATE, "Post")
    assert can(None, READ, "User", {"visibility": "public"})
    assert not can(None, READ, "User", {"visibility": "private"})


def test_user_manages_own_posts_only():
    u = _user(1, "user")
    assert can(u, UPDATE, "Post", {"author_id": 1, "status": "draft"})
    assert can(u, DELETE, "Post", {"author_id": 1})
    assert not can(u, UPDATE, "Post", {"author_id": 2, "status": "draft"})
    # Reading someone else's post still works once it is published.
    assert can(u, READ, "Post", {"author_id": 2, "status": "published"})


def test_user_cannot_delete_accounts():
    u = _user(1, "user")
    assert can(u, UPDATE, "User", {"id": 1})
    assert not can(u, DELETE, "User", {"id": 1})
    assert not can(u, UPDATE, "User", {"id": 2})


def test_user_owns_notifications_and_files():
    u = _user(1, "user")
    assert can(u, UPDATE, "Notification", {"user_id": 1})
    assert not can(u, DELETE, "Notification", {"user_id": 2})
    assert can(u, MANAGE, "File", {"user_id": 1})
    assert can(u, READ, "File", {"user_id": 1})
    assert not can(u, READ, "File", {"user_id": 2})


def test_admin_can_do_anything():
    admin = _user(9, "admin")
    assert is_admin(admin)
    assert build_rules(admin)[0].subject == "all"
    assert can(admin, DELETE, "Organization", {"id": 123})
    assert can(admin, DELETE, "User", {"id": 1})


@pytest.mark.parametrize(
    "org_role, action, subject, expected",
    [
        ("owner", DELETE, "Organization", True),
        ("owner", CREATE, "Project", True),
        ("owner", UPDATE, "Subscription", True),
        ("admin", UPDATE, "Organization", True),
        ("admin", DELETE, "Organization", False),
        ("admin", DELETE, "Project", True),
        ("member", READ, "Project", True),
        ("member", CREATE, "Project", False),
        ("member", CREATE, "Task", True),
        ("member", DELETE, "Task", False),
        ("member", CREATE, "Member", False),
    ],
)
def test_organization_roles(org_role, action, subject, expected):
    u = _user(1, "user")
    resource = {"id": 7} if subject == "Organization" else {"organization_id": 7}
    assert can(u, action, subject, resource, org_role=org_role, organization_id=7) is expected


def test_organization_role_does_not_leak_to_other_organizations():
    u = _user(1, "user")
    assert not can(u, READ, "Project", {"organization_id": 8}, org_role="owner", organization_id=7)
    assert not can(u, READ, "Project", {"organization_id": 7})


def test_global_role_picks_highest():
    assert global_role(None) is None
    assert global_role(_user(1, "user")) == "user"
    assert global_role(_user(1, "user", "redactor")) == "redactor"
    assert global_role(_user(1)) == "user"
    assert has_required_role(_user(1, "redactor"), "user")
    assert not has_required_role(_user(1, "user"), "admin")
    assert not has_required_role(_user(1, "admin"), "superuser")


def test_permissions_follow_roles_and_ban_state():
    redactor = _user(1, "redactor", perms=("blog.manage",))
    assert user_has_permission(redactor, "blog.manage")
    assert not user_has_permission(redactor, "admin.view")
    redactor.banned = True
    assert not user_has_permission(redactor, "blog.manage")
    assert not user_has_permission(None, "blog.manage")
