from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.saaskit import dal
from app.saaskit.abilities import CREATE, DELETE, UPDATE, user_can
from app.saaskit.db import db_session
from app.saaskit.errors import ServiceError, ValidationError
from app.saaskit.modules.projects.models import Project, Task
from app.saaskit.modules.projects.service import (
    TASK_STATUSES,
    create_project,
    create_task,
    delete_project,
    delete_task,
    get_task,
    list_projects,
    tasks_grouped_by_status,
    update_project,
    update_task,
    update_task_order,
    update_tasks_order,
)
from app.saaskit.pagination import action_error, action_ok, parse_page_args
from app.saaskit.rbac import login_required
from app.saaskit.utils import flash_service_error, form_payload, page_url_builder

bp = Blueprint("projects", __name__)


def _project_in(org, project_id: int) -> Project:
    p = db_session().get(Project, project_id)
    if not p or p.organization_id != org.id:
        abort(404)
    return p


def _action_payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _action_failure(err: ServiceError):
    current_app.logger.warning("Server action failed: %s (request_id=%s)", err.message, getattr(g, "request_id", None))
    return jsonify(action_error(err.message)), err.status_code


# ---------- Pages ----------
@bp.get("/team/<slug>/projects")
@login_required
def project_list(slug: str):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    page, limit = parse_page_args(request.args)
    search = (request.args.get("q") or "").strip()
    result = list_projects(s, user, {"organization_id": org.id, "search": search}, page, limit)
    return render_template(
        "projects/list.html",
        org=org,
        page_obj=result,
        search=search,
        can_create=user_can(s, user, CREATE, "Project", {"organization_id": org.id}, org.id),
        build_url=page_url_builder("projects.project_list", slug=slug),
    )


@bp.get("/team/<slug>/projects/new")
@login_required
def project_new_get(slug: str):
    _user, org, _member = dal.require_organization_member(slug)
    return render_template("projects/new.html", org=org)


@bp.post("/team/<slug>/projects/new")
@login_required
def project_new_post(slug: str):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    try:
        project = create_project(s, form_payload("name", "description"), user, org.id)
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("projects.project_new_get", slug=slug))
    s.commit()
    flash("Project created.", "success")
    return redirect(url_for("projects.project_detail", slug=slug, project_id=project.id))


@bp.get("/team/<slug>/projects/<int:project_id>")
@login_required
def project_detail(slug: str, project_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    project = _project_in(org, project_id)
    return render_template(
        "projects/detail.html",
        org=org,
        project=project,
        board=tasks_grouped_by_status(project),
        statuses=TASK_STATUSES,
        can_edit=user_can(s, user, UPDATE, "Project", {"organization_id": org.id}, org.id),
        can_delete=user_can(s, user, DELETE, "Project", {"organization_id": org.id}, org.id),
    )


@bp.get("/team/<slug>/projects/<int:project_id>/edit")
@login_required
def project_edit_get(slug: str, project_id: int):
    user, org, _member = dal.require_organization_member(slug)
    project = _project_in(org, project_id)
    if not user_can(db_session(), user, UPDATE, "Project", {"organization_id": org.id}, org.id):
        abort(403)
    return render_template("projects/edit.html", org=org, project=project)


@bp.post("/team/<slug>/projects/<int:project_id>/edit")
@login_required
def project_edit_post(slug: str, project_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    project = _project_in(org, project_id)
    try:
        update_project(s, project, form_payload("name", "description"), user)
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("projects.project_edit_get", slug=slug, project_id=project_id))
    s.commit()
    flash("Project updated.", "success")
    return redirect(url_for("projects.project_detail", slug=slug, project_id=project_id))


@bp.post("/team/<slug>/projects/<int:project_id>/delete")
@login_required
def project_delete(slug: str, project_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    delete_project(s, _project_in(org, project_id), user)
    s.commit()
    flash("Project deleted.", "success")
    return redirect(url_for("projects.project_list", slug=slug))


# ---------- Server actions (JSON envelopes) ----------
@bp.post("/team/<slug>/projects/<int:project_id>/tasks")
@login_required
def task_create(slug: str, project_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    project = _project_in(org, project_id)
    try:
        task = create_task(s, project, _action_payload(), user)
    except ServiceError as e:
        return _action_failure(e)
    s.commit()
    return jsonify(action_ok(task.to_dict(), message="Task created")), 201


@bp.post("/team/<slug>/tasks/<int:task_id>")
@login_required
def task_update(slug: str, task_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    try:
        task = get_task(s, task_id, user)
        if task.organization_id != org.id:
            abort(404)
        task = update_task(s, task, _action_payload(), user)
    except ServiceError as e:
        return _action_failure(e)
    s.commit()
    return jsonify(action_ok(task.to_dict(), message="Task updated"))


@bp.post("/team/<slug>/tasks/<int:task_id>/move")
@login_required
def task_move(slug: str, task_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    try:
        data = _action_payload()
        task = get_task(s, task_id, user)
        if task.organization_id != org.id:
            abort(404)
        order = data.get("order")
        task = update_task_order(s, task, (data.get("status") or task.status), task.order if order in (None, "") else order, user)
    except ServiceError as e:
        return _action_failure(e)
    s.commit()
    return jsonify(action_ok(task.to_dict()))


def _item_ids(items: list) -> list[int]:
    ids = []
    for item in items:
        try:
            ids.append(int(item["id"]))
        except (KeyError, TypeError, ValueError):
            continue
    return ids


@bp.post("/team/<slug>/tasks/reorder")
@login_required
def tasks_reorder(slug: str):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    try:
        items = _action_payload().get("items") or []
        if not isinstance(items, list):
            raise ValidationError("Items must be a list.")
    except ServiceError as e:
        return _action_failure(e)
    foreign = s.query(Task.id).filter(Task.id.in_(_item_ids(items)), Task.organization_id != org.id).first()
    if foreign is not None:
        return jsonify(action_error("Task not found")), 404
    try:
        count = update_tasks_order(s, items, user)
    except ServiceError as e:
        s.rollback()
        return _action_failure(e)
    s.commit()
    return jsonify(action_ok({"updated": count}))


@bp.post("/team/<slug>/tasks/<int:task_id>/delete")
@login_required
def task_delete(slug: str, task_id: int):
    user, org, _member = dal.require_organization_member(slug)
    s = db_session()
    try:
        task = get_task(s, task_id, user)
        if task.organization_id != org.id:
            abort(404)
        delete_task(s, task, user)
    except ServiceError as e:
        return _action_failure(e)
    s.commit()
    return jsonify(action_ok(message="Task deleted"))
