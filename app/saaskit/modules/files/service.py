from __future__ import annotations

import hashlib
import logging
import os
from datetime import datetime
from typing import TYPE_CHECKING, BinaryIO

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from app.saaskit.abilities import MANAGE, READ, ensure_can
from app.saaskit.audit import record_event
from app.saaskit.errors import FileError, NotFoundError
from app.saaskit.facades import logged_service
from app.saaskit.modules.files.models import StoredFile
from app.saaskit.storage import StorageError, storage_from_config

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saaskit.models import User


MAX_FILE_SIZE = 5 * 1024 * 1024
ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/gif", "application/pdf")
IMAGE_EXTENSIONS = ("webp", "jpeg", "jpg", "png")

logger = logging.getLogger(__name__)

# Failures raised by either storage backend.
STORAGE_FAILURES = (StorageError, OSError, ClientError, BotoCoreError)


def _sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lstrip(".").lower()


def validate_upload(filename: str, content_type: str, size: int, *, images_only: bool = False) -> None:
    if size > MAX_FILE_SIZE:
        raise FileError(f"File too large (max {MAX_FILE_SIZE // (1024 * 1024)} MB).", FileError.FILE_TOO_LARGE)
    if images_only:
        if _extension(filename) not in IMAGE_EXTENSIONS or not (content_type or "").startswith("image/"):
            raise FileError(f"Only images are allowed ({', '.join(IMAGE_EXTENSIONS)}).", FileError.INVALID_FILE_TYPE)
        return
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise FileError(f"File type not allowed: {content_type or 'unknown'}.", FileError.INVALID_FILE_TYPE)


def build_storage_key(app_config: dict, entity_type: str, entity_id: str, filename: str) -> str:
    base = (app_config.get("STORAGE_BASE_PATH") or "dev").strip("/")
    ts = int(datetime.utcnow().timestamp() * 1000)
    safe_fn = secure_filename(filename or "file") or "file"
    return f"{base}/{entity_type}s/{entity_id}/{ts}-{safe_fn}"


def _file_resource(f: StoredFile) -> dict:
    if f.organization_id is not None:
        return {"organization_id": f.organization_id}
    return {"user_id": f.user_id}


@logged_service("file")
def upload_file(
    s: "Session",
    *,
    data: bytes,
    filename: str,
    content_type: str,
    entity_type: str,
    entity_id: str | int,
    user: "User",
    app_config: dict,
    organization_id: int | None = None,
    images_only: bool = False,
) -> StoredFile:
    resource = {"organization_id": organization_id} if organization_id is not None else {"user_id": user.id}
    ensure_can(s, user, MANAGE, "File", resource, organization_id=organization_id)
    validate_upload(filename, content_type, len(data), images_only=images_only)

    entity_type = secure_filename(entity_type or "").lower() or "user"
    storage_key = build_storage_key(app_config, entity_type, str(entity_id), filename)
    try:
        storage_from_config(app_config).put_bytes(storage_key, data, content_type=content_type)
    except STORAGE_FAILURES as e:
        raise FileError(f"Upload failed: {e}", FileError.UPLOAD_FAILED) from e

    f = StoredFile(
        user_id=user.id,
        organization_id=organization_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        storage_key=storage_key,
        original_filename=filename or storage_key.rsplit("/", 1)[-1],
        content_type=content_type,
        size_bytes=len(data),
        sha256=_sha256_bytes(data),
        created_at=datetime.utcnow(),
    )
    try:
        s.add(f)
        s.flush()
        record_event(s, actor=user, action="file.upload", entity_type="File", entity_id=f.id, metadata={"storage_key": storage_key, "sha256": f.sha256, "size_bytes": f.size_bytes})
    except SQLAlchemyError:
        discard_stored_object(app_config, storage_key)
        raise
    return f


def discard_stored_object(app_config: dict, storage_key: str) -> None:
    """Remove an object whose database row was never committed."""
    try:
        storage_from_config(app_config).delete(storage_key)
    except STORAGE_FAILURES:
        logger.exception("Could not remove orphaned upload %s", storage_key)


def get_file(s: "Session", file_id: int, user: "User", action: str = READ) -> StoredFile:
    f = s.get(StoredFile, file_id)
    if not f:
        raise NotFoundError("File not found")
    ensure_can(s, user, action, "File", _file_resource(f), organization_id=f.organization_id)
    return f


@logged_service("file")
def download_file(s: "Session", file_id: int, user: "User", app_config: dict) -> tuple[StoredFile, BinaryIO]:
    f = get_file(s, file_id, user)
    try:
        stream = storage_from_config(app_config).open(f.storage_key)
    except STORAGE_FAILURES as e:
        raise FileError(f"Download failed: {e}", FileError.DOWNLOAD_FAILED) from e
    return f, stream


@logged_service("file")
def delete_file(s: "Session", file_id: int, user: "User", app_config: dict) -> None:
    f = get_file(s, file_id, user, MANAGE)
    try:
        storage_from_config(app_config).delete(f.storage_key)
    except STORAGE_FAILURES as e:
        raise FileError(f"Delete failed: {e}", FileError.DELETE_FAILED) from e
    record_event(s, actor=user, action="file.delete", entity_type="File", entity_id=f.id, metadata={"storage_key": f.storage_key})
    s.delete(f)


@logged_service("file")
def list_files(
    s: "Session",
    user: "User",
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    organization_id: int | None = None,
) -> list[StoredFile]:
    q = s.query(StoredFile)
    if organization_id is not None:
        ensure_can(s, user, READ, "File", {"organization_id": organization_id}, organization_id=organization_id)
        q = q.filter(StoredFile.organization_id == organization_id)
    else:
        q = q.filter(StoredFile.user_id == user.id)
    if entity_type:
        q = q.filter(StoredFile.entity_type == entity_type)
    if entity_id is not None:
        q = q.filter(StoredFile.entity_id == str(entity_id))
    return q.order_by(StoredFile.created_at.desc(), StoredFile.id.desc()).all()


def list_storage_keys(entity_type: str, entity_id: str | int, app_config: dict) -> list[str]:
    """Raw storage listing for one entity folder (admin diagnostics)."""
    base = (app_config.get("STORAGE_BASE_PATH") or "dev").strip("/")
    try:
        return storage_from_config(app_config).list_keys(f"{base}/{entity_type}s/{entity_id}/")
    except STORAGE_FAILURES as e:
        raise FileError(f"List failed: {e}", FileError.LIST_FAILED) from e
