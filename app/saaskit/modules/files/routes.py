from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, jsonify, redirect, render_template, request, send_file, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.saaskit.db import db_session
from app.saaskit.errors import FileError, NotFoundError
from app.saaskit.modules.files.service import (
    ALLOWED_CONTENT_TYPES,
    MAX_FILE_SIZE,
    delete_file,
    discard_stored_object,
    download_file,
    list_files,
    upload_file,
)
from app.saaskit.pagination import action_error, action_ok
from app.saaskit.rbac import login_required
from app.saaskit.utils import current_user

bp = Blueprint("files", __name__)


def _wants_json() -> bool:
    return request.accept_mimetypes.best == "application/json" or request.args.get("format") == "json"


@bp.get("/files")
@login_required
def file_list():
    files = list_files(
        db_session(),
        current_user(),
        entity_type=(request.args.get("entity_type") or "").strip() or None,
        entity_id=(request.args.get("entity_id") or "").strip() or None,
        organization_id=request.args.get("organization_id", type=int),
    )
    if _wants_json():
        return jsonify(action_ok([f.to_dict() for f in files]))
    return render_template(
        "files/list.html",
        files=files,
        max_mb=MAX_FILE_SIZE // (1024 * 1024),
        allowed=ALLOWED_CONTENT_TYPES,
    )


@bp.post("/files/upload")
@login_required
def file_upload():
    f = request.files.get("file")
    if not f or not f.filename:
        if _wants_json():
            return jsonify(action_error("No file provided.")), 400
        flash("Choose a file to upload.", "danger")
        return redirect(url_for("files.file_list"))

    s = db_session()
    user = current_user()
    try:
        stored = upload_file(
            s,
            data=f.read(),
            filename=f.filename,
            content_type=f.mimetype or "application/octet-stream",
            entity_type=(request.form.get("entity_type") or "user").strip(),
            entity_id=(request.form.get("entity_id") or str(user.id)).strip(),
            user=user,
            app_config=current_app.config,
            organization_id=request.form.get("organization_id", type=int),
            images_only=request.form.get("images_only") == "1",
        )
    except FileError as e:
        s.rollback()
        if _wants_json():
            return jsonify({**action_error(e.message), "code": e.code}), e.status_code
        flash(e.message, "danger")
        return redirect(url_for("files.file_list"))
    try:
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        discard_stored_object(current_app.config, stored.storage_key)
        raise
    if _wants_json():
        return jsonify(action_ok(stored.to_dict(), message="File uploaded")), 201
    flash("File uploaded.", "success")
    return redirect(url_for("files.file_list"))


@bp.get("/files/<int:file_id>")
@login_required
def file_download(file_id: int):
    try:
        stored, stream = download_file(db_session(), file_id, current_user(), current_app.config)
    except NotFoundError:
        abort(404)
    except FileError as e:
        current_app.logger.error("Download of file %s failed: %s", file_id, e.message)
        abort(404)
    return send_file(
        stream,
        mimetype=stored.content_type,
        as_attachment=not stored.content_type.startswith("image/"),
        download_name=stored.original_filename,
    )


@bp.post("/files/<int:file_id>/delete")
@login_required
def file_delete(file_id: int):
    s = db_session()
    try:
        delete_file(s, file_id, current_user(), current_app.config)
    except NotFoundError:
        abort(404)
    except FileError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("files.file_list"))
    s.commit()
    if _wants_json():
        return jsonify(action_ok(message="File deleted"))
    flash("File deleted.", "success")
    return redirect(url_for("files.file_list"))
