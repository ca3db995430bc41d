import pytest

from app.saaskit.db import session_scope
from app.saaskit.models import User
from app.saaskit.modules.accounts.service import create_api_key
from app.saaskit.modules.projects.models import Project, Task
from app.saaskit.modules.projects.service import validate_project_payload, validate_task_payload
from conftest import CSRF, add_member, csrf, login, make_org, make_user, set_plan_limits


def _project(app, org_id, owner_id, name="Launch"):
    with session_scope(app) as s:
        p = Project(name=name, organization_id=org_id, created_by=owner_id)
        s.add(p)
        s.flush()
        return p.id


def _task(app, project_id, org_id, title, *, status="todo", order=0):
    with session_scope(app) as s:
        t = Task(title=title, status=status, order=order, project_id=project_id, organization_id=org_id)
        s.add(t)
        s.flush()
        return t.id


@pytest.fixture()
def team(app):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    return owner, org_id


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"name": "ok"}, ["Name must be between 3 and 100 characters."]),
        ({"name": "Fine", "description": "x" * 501}, ["Description must be at most 500 characters."]),
        ({"name": "Fine"}, []),
        ({"name": 123}, ["Name must be a string."]),
        ({"name": "Fine", "description": ["x"]}, ["Description must be a string."]),
    ],
)
def test_validate_project_payload(payload, expected):
    assert validate_project_payload(payload) == expected


def test_validate_task_payload():
    assert validate_task_payload({"title": "Write docs"}) == []
    errors = validate_task_payload({"title": "x", "status": "blocked", "order": "-1", "due_date": "tomorrow"})
    assert "Title must be between 3 and 200 characters." in errors
    assert "Invalid status. Must be one of: todo, in_progress, done" in errors
    assert "Order must be zero or more." in errors
    assert "Due date must be YYYY-MM-DD." in errors
    # Partial updates only check what was sent.
    assert validate_task_payload({"status": "done"}, partial=True) == []
    assert validate_task_payload({"status": 5}, partial=True) == ["Status must be a string."]
    assert validate_task_payload({"title": 42, "assigned_to": "bob"}) == ["Title must be a string.", "Assignee must be a user id."]


def test_create_project_respects_free_plan_limit(app, client, team):
    _owner, org_id = team
    login(client, "owner@example.com")
    r = client.post("/team/acme/projects/new", data={"name": "Website", "description": "Relaunch", "csrf_token": CSRF})
    assert r.status_code == 302
    with session_scope(app) as s:
        project = s.query(Project).filter(Project.organization_id == org_id).one()
    assert r.headers["Location"].endswith(f"/team/acme/projects/{project.id}")
    assert client.get(f"/team/acme/projects/{project.id}").status_code == 200
    assert client.get("/team/acme/projects").status_code == 200

    client.post("/team/acme/projects/new", data={"name": "Second one", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.query(Project).filter(Project.organization_id == org_id).count() == 1

    set_plan_limits(app, projects=3)
    client.post("/team/acme/projects/new", data={"name": "Second one", "csrf_token": CSRF})
    with session_scope(app) as s:
        assert s.query(Project).filter(Project.organization_id == org_id).count() == 2


def test_project_from_other_team_is_not_found(app, client, team):
    owner, _org_id = team
    other_org = make_org(app, owner, "other")
    project_id = _project(app, other_org, owner)
    login(client, "owner@example.com")
    assert client.get(f"/team/acme/projects/{project_id}").status_code == 404


def test_member_cannot_delete_project(app, client, team):
    owner, org_id = team
    add_member(app, org_id, make_user(app, "member@example.com"))
    project_id = _project(app, org_id, owner)
    login(client, "member@example.com")
    assert client.get(f"/team/acme/projects/{project_id}").status_code == 200
    assert client.get(f"/team/acme/projects/{project_id}/edit").status_code == 403
    r = client.post(f"/team/acme/projects/{project_id}/delete", data={"csrf_token": CSRF})
    assert r.status_code == 403
    with session_scope(app) as s:
        assert s.get(Project, project_id) is not None


def test_task_actions_return_envelopes(app, client, team):
    owner, org_id = team
    project_id = _project(app, org_id, owner)
    login(client, "owner@example.com")
    headers = csrf(client)

    r = client.post(f"/team/acme/projects/{project_id}/tasks", json={"title": "Write copy"}, headers=headers)
    assert r.status_code == 201
    body = r.get_json()
    assert body["success"] is True
    assert body["message"] == "Task created"
    assert body["data"]["status"] == "todo"
    assert body["data"]["order"] == 0
    first = body["data"]["id"]

    second = client.post(f"/team/acme/projects/{project_id}/tasks", json={"title": "Ship it"}, headers=headers).get_json()["data"]
    assert second["order"] == 1

    r = client.post(f"/team/acme/projects/{project_id}/tasks", json={"title": "x"}, headers=headers)
    assert r.status_code == 400
    assert r.get_json()["success"] is False

    r = client.post(f"/team/acme/tasks/{first}", json={"status": "in_progress"}, headers=headers)
    assert r.get_json()["data"]["status"] == "in_progress"

    r = client.post(
        "/team/acme/tasks/reorder",
        json={"items": [{"id": first, "status": "done", "order": 0}, {"id": second["id"], "status": "done", "order": 1}]},
        headers=headers,
    )
    assert r.get_json() == {"success": True, "data": {"updated": 2}}
    with session_scope(app) as s:
        assert [t.status for t in s.query(Task).order_by(Task.id)] == ["done", "done"]

    r = client.post(f"/team/acme/tasks/{first}/delete", headers=headers)
    assert r.get_json() == {"success": True, "message": "Task deleted"}
    with session_scope(app) as s:
        assert s.get(Task, first) is None


def test_reorder_rejects_tasks_from_other_teams(app, client, team):
    owner, _org_id = team
    other_org = make_org(app, owner, "other")
    other_project = _project(app, other_org, owner)
    task_id = _task(app, other_project, other_org, "Foreign task")
    login(client, "owner@example.com")
    r = client.post("/team/acme/tasks/reorder", json={"items": [{"id": task_id, "order": 3}]}, headers=csrf(client))
    assert r.status_code == 404
    assert r.get_json()["success"] is False


def test_api_requires_authentication(client):
    r = client.get("/api/projects")
    assert r.status_code == 401
    assert r.get_json() == {"error": "Not authenticated"}


def test_api_crud(app, client, team):
    _owner, org_id = team
    login(client, "owner@example.com")
    headers = csrf(client)

    r = client.post("/api/projects", json={"name": "API project", "organizationId": org_id}, headers=headers)
    assert r.status_code == 201
    created = r.get_json()
    assert created["success"] is True
    assert created["message"] == "Project created"
    project_id = created["data"]["id"]

    r = client.get(f"/api/projects?organizationId={org_id}&page=1&limit=10")
    body = r.get_json()
    assert body["success"] is True
    assert [p["id"] for p in body["data"]] == [project_id]
    assert body["pagination"] == {"total": 1, "page": 1, "limit": 10, "total_pages": 1}

    assert client.get(f"/api/projects/{project_id}").get_json()["data"]["name"] == "API project"
    assert client.get("/api/projects/9999").status_code == 404

    r = client.put(f"/api/projects/{project_id}", json={"name": "no"}, headers=headers)
    assert r.status_code == 400
    assert r.get_json() == {"error": "Invalid data", "details": ["Name must be between 3 and 100 characters."]}

    r = client.put(f"/api/projects/{project_id}", json={"name": "Renamed"}, headers=headers)
    assert r.get_json()["data"]["name"] == "Renamed"

    r = client.delete(f"/api/projects/{project_id}", headers=headers)
    assert r.get_json() == {"success": True, "message": "Project deleted"}
    assert client.get(f"/api/projects/{project_id}").status_code == 404


def test_api_rejects_non_object_body(client, team):
    login(client, "owner@example.com")
    r = client.post("/api/projects", json=["nope"], headers=csrf(client))
    assert r.status_code == 400
    assert r.get_json()["error"] == "Invalid data"


def test_api_forbids_other_organizations(app, client, team):
    owner, org_id = team
    project_id = _project(app, org_id, owner)
    make_user(app, "stranger@example.com")
    login(client, "stranger@example.com")
    assert client.get(f"/api/projects/{project_id}").status_code == 403
    assert client.get(f"/api/projects?organizationId={org_id}").status_code == 403
    # Without an organization the caller only sees their own projects.
    assert client.get("/api/projects").get_json()["data"] == []


def test_api_by_token(app, client, team):
    owner, org_id = team
    _project(app, org_id, owner, name="Mine")
    with app.app_context(), session_scope(app) as s:
        _key, raw = create_api_key(s, s.get(User, owner), "ci")

    r = client.get("/api/projects/by-token", headers={"Authorization": f"Bearer {raw}"})
    assert r.status_code == 200
    assert [p["name"] for p in r.get_json()["data"]] == ["Mine"]

    assert client.get("/api/projects/by-token", headers={"x-api-key": raw}).status_code == 200
    assert client.get("/api/projects/by-token").get_json() == {"error": "Missing token"}
    r = client.get("/api/projects/by-token", headers={"Authorization": "Bearer sk_wrong"})
    assert r.status_code == 401
    assert r.get_json() == {"error": "Invalid token"}


def test_task_actions_reject_wrong_types(app, client, team):
    owner, org_id = team
    project_id = _project(app, org_id, owner)
    task_id = _task(app, project_id, org_id, "Write copy")
    login(client, "owner@example.com")
    headers = csrf(client)

    r = client.post(f"/team/acme/projects/{project_id}/tasks", json={"title": 5}, headers=headers)
    assert r.status_code == 400
    assert r.get_json() == {"success": False, "message": "Validation error : Title must be a string."}

    r = client.post(f"/team/acme/tasks/{task_id}", json={"status": 5}, headers=headers)
    assert r.status_code == 400
    assert r.get_json()["success"] is False

    r = client.post(f"/team/acme/tasks/{task_id}", json={"assigned_to": "bob"}, headers=headers)
    assert r.status_code == 400
    assert "Assignee must be a user id." in r.get_json()["message"]

    for path in (f"/team/acme/tasks/{task_id}", f"/team/acme/tasks/{task_id}/move", "/team/acme/tasks/reorder"):
        r = client.post(path, json=[{"id": task_id}], headers=headers)
        assert r.status_code == 400
        assert r.get_json()["success"] is False

    r = client.post("/team/acme/tasks/reorder", json={"items": "all"}, headers=headers)
    assert r.status_code == 400

    with session_scope(app) as s:
        task = s.get(Task, task_id)
        assert (task.status, task.assigned_to) == ("todo", None)


def test_reorder_applies_nothing_when_one_item_is_invalid(app, client, team):
    owner, org_id = team
    project_id = _project(app, org_id, owner)
    first = _task(app, project_id, org_id, "First", order=0)
    second = _task(app, project_id, org_id, "Second", order=1)
    login(client, "owner@example.com")

    r = client.post(
        "/team/acme/tasks/reorder",
        json={"items": [{"id": first, "status": "done", "order": 4}, {"id": second, "order": -1}]},
        headers=csrf(client),
    )
    assert r.status_code == 400
    assert "Order must be zero or more." in r.get_json()["message"]
    with session_scope(app) as s:
        assert (s.get(Task, first).status, s.get(Task, first).order) == ("todo", 0)
        assert s.get(Task, second).order == 1


def test_api_rejects_wrong_field_types(app, client, team):
    owner, org_id = team
    project_id = _project(app, org_id, owner)
    login(client, "owner@example.com")
    headers = csrf(client)

    r = client.post("/api/projects", json={"name": 123, "organizationId": org_id}, headers=headers)
    assert r.status_code == 400
    assert r.get_json() == {"error": "Invalid data", "details": ["Name must be a string."]}

    r = client.put(f"/api/projects/{project_id}", json={"description": 5}, headers=headers)
    assert r.status_code == 400
    assert r.get_json() == {"error": "Invalid data", "details": ["Description must be a string."]}
    with session_scope(app) as s:
        assert s.query(Project).count() == 1


def test_bearer_header_does_not_skip_csrf_for_session_users(app, client, team):
    _owner, org_id = team
    login(client, "owner@example.com")
    r = client.post(
        "/api/projects",
        json={"name": "Sneaky", "organizationId": org_id},
        headers={"Authorization": "Bearer junk"},
    )
    assert r.status_code == 400
    assert r.get_json() == {"error": "CSRF token missing or invalid."}
    with session_scope(app) as s:
        assert s.query(Project).count() == 0
