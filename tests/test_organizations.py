from app.saaskit.db import session_scope
from app.saaskit.modules.notifications.models import Notification
from app.saaskit.modules.organizations.models import Invitation, Member, Organization
from app.saaskit.modules.organizations.service import unique_slug, validate_organization_payload
from conftest import CSRF, add_member, login, make_org, make_user, set_plan_limits


def _invitation(app, email):
    with session_scope(app) as s:
        return s.query(Invitation).filter(Invitation.email == email).one_or_none()


def test_validate_organization_payload():
    assert validate_organization_payload({"name": "Acme", "slug": "acme"}) == []
    errors = validate_organization_payload({"name": "A", "slug": "Not Valid"})
    assert "Name must be at least 2 characters." in errors
    assert "Slug may only contain lowercase letters, digits and dashes." in errors


def test_unique_slug_appends_counter(app):
    owner = make_user(app, "owner@example.com")
    make_org(app, owner, "acme")
    with session_scope(app) as s:
        assert unique_slug(s, "Acme") == "acme-2"
        assert unique_slug(s, "Été Café") == "ete-cafe"


def test_create_organization_makes_caller_owner(app, client):
    uid = make_user(app, "owner@example.com")
    login(client, "owner@example.com")
    r = client.post("/account/organizations", data={"name": "Acme Corp", "csrf_token": CSRF})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/team/acme-corp")

    with session_scope(app) as s:
        org = s.query(Organization).filter(Organization.slug == "acme-corp").one()
        m = s.query(Member).filter(Member.organization_id == org.id).one()
        assert (m.user_id, m.role) == (uid, "owner")

    assert client.get("/team/acme-corp").status_code == 200
    assert client.get("/account/organizations").status_code == 200


def test_duplicate_slug_is_rejected(app, client):
    owner = make_user(app, "owner@example.com")
    make_org(app, owner, "taken")
    login(client, "owner@example.com")
    client.post("/account/organizations", data={"name": "Other", "slug": "taken", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.query(Organization).filter(Organization.name == "Other").count() == 0


def test_non_member_is_forbidden(app, client):
    owner = make_user(app, "owner@example.com")
    make_org(app, owner, "acme")
    make_user(app, "stranger@example.com")
    login(client, "stranger@example.com")
    assert client.get("/team/acme").status_code == 403
    assert client.get("/team/missing").status_code == 404


def test_seat_limit_blocks_invitations_on_free_plan(app, client):
    owner = make_user(app, "owner@example.com")
    make_org(app, owner, "acme")
    login(client, "owner@example.com")
    client.post("/team/acme/members/invite", data={"email": "friend@example.com", "role": "member", "csrf_token": CSRF})
    assert _invitation(app, "friend@example.com") is None


def test_invite_accept_flow(app, client):
    set_plan_limits(app, users=5)
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    friend = make_user(app, "friend@example.com")

    login(client, "owner@example.com")
    r = client.post("/team/acme/members/invite", data={"email": "Friend@Example.com", "role": "admin", "csrf_token": CSRF})
    assert r.status_code == 302
    inv = _invitation(app, "friend@example.com")
    assert inv.status == "pending"
    assert inv.role == "admin"

    with session_scope(app) as s:
        n = s.query(Notification).filter(Notification.user_id == friend, Notification.type == "organization_invitation").one()
        assert n.extra["organization_name"] == "Acme"
        assert n.extra["invite_url"].endswith(f"/account/invitations/{inv.id}")

    # A second invitation for the same address is refused.
    client.post("/team/acme/members/invite", data={"email": "friend@example.com", "role": "member", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.query(Invitation).filter(Invitation.organization_id == org_id).count() == 1

    client.get("/auth/logout")
    login(client, "friend@example.com")
    assert client.get("/account/invitations").status_code == 200
    assert client.get(f"/account/invitations/{inv.id}").status_code == 200
    r = client.post(f"/account/invitations/{inv.id}/accept", data={"csrf_token": CSRF})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/team/acme")

    with session_scope(app) as s:
        m = s.query(Member).filter(Member.organization_id == org_id, Member.user_id == friend).one()
        assert m.role == "admin"
        assert s.get(Invitation, inv.id).status == "accepted"
    assert client.get("/team/acme/members").status_code == 200


def test_invitation_is_private_to_its_recipient(app, client):
    set_plan_limits(app, users=5)
    owner = make_user(app, "owner@example.com")
    make_org(app, owner, "acme")
    make_user(app, "other@example.com")
    login(client, "owner@example.com")
    client.post("/team/acme/members/invite", data={"email": "friend@example.com", "role": "member", "csrf_token": CSRF})
    inv = _invitation(app, "friend@example.com")

    client.get("/auth/logout")
    login(client, "other@example.com")
    assert client.get(f"/account/invitations/{inv.id}").status_code == 404
    assert client.post(f"/account/invitations/{inv.id}/accept", data={"csrf_token": CSRF}).status_code == 404


def test_member_cannot_invite(app, client):
    set_plan_limits(app, users=5)
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    member = make_user(app, "member@example.com")
    add_member(app, org_id, member)

    login(client, "member@example.com")
    client.post("/team/acme/members/invite", data={"email": "x@example.com", "role": "member", "csrf_token": CSRF})
    assert _invitation(app, "x@example.com") is None


def test_last_owner_cannot_be_demoted_or_removed(app, client):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    with session_scope(app) as s:
        owner_member_id = s.query(Member.id).filter(Member.organization_id == org_id).scalar()

    login(client, "owner@example.com")
    client.post(f"/team/acme/members/{owner_member_id}/role", data={"role": "member", "csrf_token": CSRF})
    client.post(f"/team/acme/members/{owner_member_id}/remove", data={"csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.get(Member, owner_member_id).role == "owner"


def test_only_owner_grants_ownership(app, client):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    admin_id = make_user(app, "admin2@example.com")
    add_member(app, org_id, admin_id, role="admin")
    member_id = add_member(app, org_id, make_user(app, "member@example.com"))

    login(client, "admin2@example.com")
    client.post(f"/team/acme/members/{member_id}/role", data={"role": "owner", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.get(Member, member_id).role == "member"

    client.post(f"/team/acme/members/{member_id}/role", data={"role": "admin", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.get(Member, member_id).role == "admin"


def test_member_can_leave(app, client):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    member_id = add_member(app, org_id, make_user(app, "member@example.com"))

    login(client, "member@example.com")
    r = client.post(f"/team/acme/members/{member_id}/remove", data={"csrf_token": CSRF})
    assert r.headers["Location"].endswith("/account/organizations")
    with session_scope(app) as s:
        assert s.get(Member, member_id) is None


def test_settings_update_and_delete_requires_confirmation(app, client):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    login(client, "owner@example.com")

    r = client.post("/team/acme/settings", data={"name": "Acme Inc", "slug": "acme-inc", "description": "Widgets", "csrf_token": CSRF})
    assert r.headers["Location"].endswith("/team/acme-inc/settings")

    client.post("/team/acme-inc/delete", data={"confirm": "wrong", "csrf_token": CSRF})
    with session_scope(app) as s:
        org = s.get(Organization, org_id)
        assert org.name == "Acme Inc"
        assert org.description == "Widgets"

    client.post("/team/acme-inc/delete", data={"confirm": "acme-inc", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.get(Organization, org_id) is None
        assert s.query(Member).filter(Member.organization_id == org_id).count() == 0


def test_member_cannot_delete_organization(app, client):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    add_member(app, org_id, make_user(app, "member@example.com"))
    login(client, "member@example.com")
    r = client.post("/team/acme/delete", data={"confirm": "acme", "csrf_token": CSRF})
    assert r.status_code == 403
    with session_scope(app) as s:
        assert s.get(Organization, org_id) is not None
