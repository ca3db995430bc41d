from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.saaskit.abilities import CREATE, DELETE, READ, UPDATE, ensure_can
from app.saaskit.audit import record_event
from app.saaskit.errors import NotFoundError, ValidationError
from app.saaskit.facades import logged_service
from app.saaskit.modules.projects.models import Project, Task
from app.saaskit.pagination import Page, paginate

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saaskit.models import User


TASK_STATUSES = ("todo", "in_progress", "done")


def _to_date(raw: Any) -> date | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _text(raw: Any) -> str:
    return raw.strip() if isinstance(raw, str) else ""


def _check_text(payload: dict, field: str, label: str, errors: list[str]) -> bool:
    """False (with an error recorded) when `field` holds something other than a string."""
    raw = payload.get(field)
    if raw is None or isinstance(raw, str):
        return True
    errors.append(f"{label} must be a string.")
    return False


def validate_project_payload(payload: dict) -> list[str]:
    """Validate project creation/update payload. Returns list of errors."""
    errors: list[str] = []
    if _check_text(payload, "name", "Name", errors):
        if not (3 <= len(_text(payload.get("name"))) <= 100):
            errors.append("Name must be between 3 and 100 characters.")
    if _check_text(payload, "description", "Description", errors):
        if len(_text(payload.get("description"))) > 500:
            errors.append("Description must be at most 500 characters.")
    return errors


def validate_task_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "title" in payload:
        if _check_text(payload, "title", "Title", errors):
            if not (3 <= len(_text(payload.get("title"))) <= 200):
                errors.append("Title must be between 3 and 200 characters.")
    if _check_text(payload, "description", "Description", errors):
        if len(_text(payload.get("description"))) > 1000:
            errors.append("Description must be at most 1000 characters.")
    if "status" in payload or not partial:
        if _check_text(payload, "status", "Status", errors):
            if (_text(payload.get("status")) or "todo") not in TASK_STATUSES:
                errors.append(f"Invalid status. Must be one of: {', '.join(TASK_STATUSES)}")
    if payload.get("order") not in (None, ""):
        try:
            if int(payload["order"]) < 0:
                errors.append("Order must be zero or more.")
        except (TypeError, ValueError):
            errors.append("Order must be an integer.")
    if payload.get("assigned_to") not in (None, ""):
        try:
            int(payload["assigned_to"])
        except (TypeError, ValueError):
            errors.append("Assignee must be a user id.")
    try:
        _to_date(payload.get("due_date"))
    except ValueError:
        errors.append("Due date must be YYYY-MM-DD.")
    return errors


# ---------- Projects ----------
@logged_service("project")
def create_project(s: "Session", payload: dict, user: "User", organization_id: int) -> Project:
    from app.saaskit.modules.billing.service import check_subscription_limit
    from app.saaskit.modules.notifications.service import create_notification

    ensure_can(s, user, CREATE, "Project", {"organization_id": organization_id}, organization_id=organization_id)
    errors = validate_project_payload(payload)
    if errors:
        raise ValidationError(errors)
    limit = check_subscription_limit(s, user, "projects", 1, organization_id=organization_id)
    if not limit["allowed"]:
        raise ValidationError(f"Project limit reached ({limit['usage']}/{limit['limit']}). Upgrade your plan to create more projects.")

    now = datetime.utcnow()
    project = Project(
        name=_text(payload["name"]),
        description=_text(payload.get("description")) or None,
        organization_id=organization_id,
        created_by=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(project)
    s.flush()
    record_event(s, actor=user, action="project.create", entity_type="Project", entity_id=project.id, metadata={"name": project.name, "organization_id": organization_id})
    create_notification(s, type="project_created", user_id=user.id, metadata={"project_name": project.name, "project_id": project.id})
    return project


@logged_service("project")
def get_project(s: "Session", project_id: int, user: "User") -> Project:
    project = s.get(Project, project_id)
    if not project:
        raise NotFoundError("Project not found")
    ensure_can(s, user, READ, "Project", {"organization_id": project.organization_id}, organization_id=project.organization_id)
    return project


@logged_service("project")
def update_project(s: "Session", project: Project, payload: dict, user: "User") -> Project:
    from app.saaskit.modules.notifications.service import create_notification

    ensure_can(s, user, UPDATE, "Project", {"organization_id": project.organization_id}, organization_id=project.organization_id)
    merged = {"name": project.name, "description": project.description, **payload}
    errors = validate_project_payload(merged)
    if errors:
        raise ValidationError(errors)

    changes = {}
    for field in ("name", "description"):
        new = _text(merged.get(field)) or None
        if new != getattr(project, field):
            changes[field] = {"old": getattr(project, field), "new": new}
            setattr(project, field, new)
    project.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="project.edit", entity_type="Project", entity_id=project.id, metadata={"changes": changes})
    if changes:
        create_notification(s, type="project_updated", user_id=user.id, metadata={"project_name": project.name, "project_id": project.id})
    return project


@logged_service("project")
def delete_project(s: "Session", project: Project, user: "User") -> None:
    ensure_can(s, user, DELETE, "Project", {"organization_id": project.organization_id}, organization_id=project.organization_id)
    record_event(s, actor=user, action="project.delete", entity_type="Project", entity_id=project.id, metadata={"name": project.name})
    s.delete(project)


@logged_service("project")
def list_projects(s: "Session", user: "User", filters: dict | None = None, page: int = 1, limit: int = 20) -> Page:
    """
    Filters: `search` (name), `organization_id`, `created_by`.
    Listing an organization requires read access to it; otherwise only the
    caller's own projects are returned.
    """
    filters = filters or {}
    q = s.query(Project)
    org_id = filters.get("organization_id")
    if org_id:
        org_id = int(org_id)
        ensure_can(s, user, READ, "Project", {"organization_id": org_id}, organization_id=org_id)
        q = q.filter(Project.organization_id == org_id)
        if filters.get("created_by"):
            q = q.filter(Project.created_by == int(filters["created_by"]))
    else:
        q = q.filter(Project.created_by == user.id)
    search = (filters.get("search") or "").strip()
    if search:
        q = q.filter(Project.name.ilike(f"%{search}%"))
    q = q.order_by(Project.created_at.desc(), Project.id.desc())
    return paginate(q, page, limit)


# ---------- Tasks ----------
def _next_order(s: "Session", project_id: int, status: str) -> int:
    last = (
        s.query(Task.order)
        .filter(Task.project_id == project_id, Task.status == status)
        .order_by(Task.order.desc())
        .first()
    )
    return (last[0] + 1) if last else 0


def _task_resource(task_or_project) -> dict:
    return {"organization_id": task_or_project.organization_id}


@logged_service("task")
def create_task(s: "Session", project: Project, payload: dict, user: "User") -> Task:
    ensure_can(s, user, CREATE, "Task", _task_resource(project), organization_id=project.organization_id)
    errors = validate_task_payload(payload)
    if errors:
        raise ValidationError(errors)
    status = _text(payload.get("status")) or "todo"
    order = payload.get("order")
    now = datetime.utcnow()
    task = Task(
        title=_text(payload["title"]),
        description=_text(payload.get("description")) or None,
        status=status,
        order=int(order) if order not in (None, "") else _next_order(s, project.id, status),
        due_date=_to_date(payload.get("due_date")),
        project_id=project.id,
        organization_id=project.organization_id,
        created_by=user.id,
        assigned_to=int(payload["assigned_to"]) if payload.get("assigned_to") else None,
        created_at=now,
        updated_at=now,
    )
    s.add(task)
    s.flush()
    record_event(s, actor=user, action="task.create", entity_type="Task", entity_id=task.id, metadata={"project_id": project.id, "title": task.title})
    return task


@logged_service("task")
def get_task(s: "Session", task_id: int, user: "User") -> Task:
    task = s.get(Task, task_id)
    if not task:
        raise NotFoundError("Task not found")
    ensure_can(s, user, READ, "Task", _task_resource(task), organization_id=task.organization_id)
    return task


@logged_service("task")
def update_task(s: "Session", task: Task, payload: dict, user: "User") -> Task:
    ensure_can(s, user, UPDATE, "Task", _task_resource(task), organization_id=task.organization_id)
    errors = validate_task_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    if "title" in payload:
        task.title = _text(payload["title"])
    if "description" in payload:
        task.description = _text(payload.get("description")) or None
    if _text(payload.get("status")):
        task.status = _text(payload["status"])
    if payload.get("order") not in (None, ""):
        task.order = int(payload["order"])
    if "due_date" in payload:
        task.due_date = _to_date(payload.get("due_date"))
    if "assigned_to" in payload:
        task.assigned_to = int(payload["assigned_to"]) if payload.get("assigned_to") else None
    task.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="task.edit", entity_type="Task", entity_id=task.id, metadata={"status": task.status})
    return task


@logged_service("task")
def delete_task(s: "Session", task: Task, user: "User") -> None:
    ensure_can(s, user, DELETE, "Task", _task_resource(task), organization_id=task.organization_id)
    record_event(s, actor=user, action="task.delete", entity_type="Task", entity_id=task.id, metadata={"title": task.title})
    s.delete(task)


def tasks_grouped_by_status(project: Project) -> dict[str, list[Task]]:
    grouped: dict[str, list[Task]] = {status: [] for status in TASK_STATUSES}
    for task in sorted(project.tasks, key=lambda t: (t.order, t.id)):
        grouped.setdefault(task.status, []).append(task)
    return grouped


@logged_service("task")
def update_task_order(s: "Session", task: Task, status: str, order: int, user: "User") -> Task:
    return update_task(s, task, {"status": status, "order": order}, user)


@logged_service("task")
def update_tasks_order(s: "Session", items: list[dict], user: "User") -> int:
    """Move many tasks at once; nothing is applied if any item fails."""
    moves: list[tuple[Task, str, int]] = []
    for item in items or []:
        try:
            task_id = int(item["id"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError("Each item needs a task id.") from e
        task = s.get(Task, task_id)
        if not task:
            raise NotFoundError(f"Task {task_id} not found")
        ensure_can(s, user, UPDATE, "Task", _task_resource(task), organization_id=task.organization_id)
        status = item.get("status") or task.status
        order = item.get("order", task.order)
        errors = validate_task_payload({"status": status, "order": order}, partial=True)
        if errors:
            raise ValidationError(errors)
        moves.append((task, _text(status) or task.status, int(order)))

    now = datetime.utcnow()
    for task, status, order in moves:
        task.status = status
        task.order = order
        task.updated_at = now
    if moves:
        record_event(s, actor=user, action="task.reorder", entity_type="Project", entity_id=moves[0][0].project_id, metadata={"tasks": [t.id for t, _, _ in moves]})
    return len(moves)
