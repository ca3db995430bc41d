"""
JSON API for projects.

Session-authenticated endpoints live under /api/projects; /api/projects/by-token
accepts an API key instead. Errors are always `{"error": ...}` with the HTTP
status of the underlying service error.
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.saaskit.api_auth import api_auth, api_error, api_token_auth
from app.saaskit.db import db_session
from app.saaskit.errors import AuthorizationError, NotFoundError, ServiceError, ValidationError
from app.saaskit.modules.projects.service import (
    create_project,
    delete_project,
    get_project,
    list_projects,
    update_project,
)
from app.saaskit.pagination import parse_page_args

bp = Blueprint("projects_api", __name__)


def _error_response(err: Exception):
    if isinstance(err, ValidationError):
        return jsonify({"error": "Invalid data", "details": err.errors}), 400
    if isinstance(err, AuthorizationError):
        return api_error(err.message, 403)
    if isinstance(err, NotFoundError):
        return api_error(err.message, 404)
    current_app.logger.exception("Projects API failure (request_id=%s)", getattr(g, "request_id", None))
    return api_error("Internal server error", 500)


def _list_response(user, organization_id):
    page, limit = parse_page_args(request.args)
    filters = {"search": request.args.get("search"), "organization_id": organization_id}
    result = list_projects(db_session(), user, filters, page, limit)
    return jsonify({"success": True, **result.to_dict(lambda p: p.to_dict())})


def _default_organization_id(user) -> int | None:
    from app.saaskit.dal import get_user_organizations

    orgs = get_user_organizations(user.id)
    return orgs[0][0].id if orgs else None


@bp.get("")
@api_auth()
def project_index():
    try:
        return _list_response(g.current_user, request.args.get("organizationId", type=int))
    except ServiceError as e:
        return _error_response(e)


@bp.post("")
@api_auth()
def project_create():
    s = db_session()
    user = g.current_user
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid data", "details": ["Body must be a JSON object."]}), 400
    org_id = data.get("organizationId") or data.get("organization_id") or _default_organization_id(user)
    if not str(org_id).isdigit():
        return jsonify({"error": "Invalid data", "details": ["organizationId is required."]}), 400
    try:
        project = create_project(s, data, user, int(org_id))
        s.commit()
    except ServiceError as e:
        s.rollback()
        return _error_response(e)
    return jsonify({"success": True, "message": "Project created", "data": project.to_dict()}), 201


@bp.get("/<int:project_id>")
@api_auth()
def project_show(project_id: int):
    try:
        project = get_project(db_session(), project_id, g.current_user)
    except ServiceError as e:
        return _error_response(e)
    return jsonify({"success": True, "data": project.to_dict()})


@bp.put("/<int:project_id>")
@api_auth()
def project_update(project_id: int):
    s = db_session()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid data", "details": ["Body must be a JSON object."]}), 400
    try:
        project = get_project(s, project_id, g.current_user)
        project = update_project(s, project, {k: data[k] for k in ("name", "description") if k in data}, g.current_user)
        s.commit()
    except ServiceError as e:
        s.rollback()
        return _error_response(e)
    return jsonify({"success": True, "message": "Project updated", "data": project.to_dict()})


@bp.delete("/<int:project_id>")
@api_auth()
def project_destroy(project_id: int):
    s = db_session()
    try:
        project = get_project(s, project_id, g.current_user)
        delete_project(s, project, g.current_user)
        s.commit()
    except ServiceError as e:
        s.rollback()
        return _error_response(e)
    return jsonify({"success": True, "message": "Project deleted"})


@bp.get("/by-token")
@api_token_auth()
def project_index_by_token():
    try:
        return _list_response(g.api_user, None)
    except ServiceError as e:
        return _error_response(e)
