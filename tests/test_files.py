import io

import pytest
from sqlalchemy.exc import OperationalError

from app.saaskit.db import session_scope
from app.saaskit.errors import FileError
from app.saaskit.modules.files.models import StoredFile
from app.saaskit.models import User
from app.saaskit.modules.files import service as files_service
from app.saaskit.modules.files.service import build_storage_key, upload_file, validate_upload
from app.saaskit.storage import LocalStorage, StorageError, storage_from_config
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, CSRF, add_member, login, make_org, make_user

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JSON = {"Accept": "application/json"}


def _upload(client, content=PNG, filename="pic.png", content_type="image/png", **form):
    data = {"file": (io.BytesIO(content), filename, content_type), "csrf_token": CSRF, **form}
    return client.post("/files/upload", data=data, headers=JSON, content_type="multipart/form-data")


@pytest.mark.parametrize(
    "filename,content_type,size,images_only,code",
    [
        ("a.png", "image/png", 10, False, None),
        ("a.pdf", "application/pdf", 10, False, None),
        ("a.txt", "text/plain", 10, False, FileError.INVALID_FILE_TYPE),
        ("a.webp", "image/webp", 10, True, None),
        ("a.pdf", "application/pdf", 10, True, FileError.INVALID_FILE_TYPE),
        ("a.png", "application/pdf", 10, True, FileError.INVALID_FILE_TYPE),
        ("a.png", "image/png", 5 * 1024 * 1024 + 1, False, FileError.FILE_TOO_LARGE),
    ],
)
def test_validate_upload(filename, content_type, size, images_only, code):
    if code is None:
        validate_upload(filename, content_type, size, images_only=images_only)
        return
    with pytest.raises(FileError) as exc:
        validate_upload(filename, content_type, size, images_only=images_only)
    assert exc.value.code == code
    assert exc.value.status_code == 400


def test_build_storage_key_sanitizes_filename():
    key = build_storage_key({"STORAGE_BASE_PATH": "/prod/"}, "project", "7", "../../etc/passwd")
    assert key.startswith("prod/projects/7/")
    assert key.endswith("-etc_passwd")


def test_local_storage_round_trip(tmp_path):
    storage = storage_from_config({"STORAGE_BACKEND": "local", "LOCAL_STORAGE_ROOT": str(tmp_path)})
    assert isinstance(storage, LocalStorage)
    storage.put_bytes("dev/users/1/a.txt", b"hello")
    assert storage.exists("dev/users/1/a.txt")
    with storage.open("dev/users/1/a.txt") as fh:
        assert fh.read() == b"hello"
    assert storage.list_keys("dev/users/") == ["dev/users/1/a.txt"]
    storage.delete("dev/users/1/a.txt")
    assert not storage.exists("dev/users/1/a.txt")
    with pytest.raises(StorageError):
        storage.open("dev/users/1/a.txt")


def test_local_storage_rejects_escaping_keys(tmp_path):
    storage = LocalStorage(root=tmp_path / "root")
    with pytest.raises(StorageError):
        storage.put_bytes("../outside.txt", b"x")


def test_upload_download_and_delete(app, client):
    uid = make_user(app, "jane@example.com")
    login(client, "jane@example.com")

    r = _upload(client)
    assert r.status_code == 201
    body = r.get_json()
    assert body["message"] == "File uploaded"
    assert body["data"]["filename"] == "pic.png"
    assert body["data"]["entity_id"] == str(uid)
    file_id = body["data"]["id"]

    with session_scope(app) as s:
        stored = s.get(StoredFile, file_id)
        key = stored.storage_key
        assert stored.size_bytes == len(PNG)
    storage = storage_from_config(app.config)
    assert storage.exists(key)

    r = client.get(f"/files/{file_id}")
    assert r.status_code == 200
    assert r.data == PNG
    assert r.mimetype == "image/png"

    listing = client.get("/files?format=json").get_json()
    assert [f["id"] for f in listing["data"]] == [file_id]
    assert client.get("/files").status_code == 200

    r = client.post(f"/files/{file_id}/delete", data={"csrf_token": CSRF}, headers=JSON)
    assert r.get_json() == {"success": True, "message": "File deleted"}
    assert not storage.exists(key)
    with session_scope(app) as s:
        assert s.get(StoredFile, file_id) is None


def test_other_users_cannot_read_files(app, client):
    make_user(app, "jane@example.com")
    make_user(app, "mallory@example.com")
    login(client, "jane@example.com")
    file_id = _upload(client).get_json()["data"]["id"]

    client.get("/auth/logout")
    login(client, "mallory@example.com")
    assert client.get(f"/files/{file_id}").status_code == 403
    assert client.post(f"/files/{file_id}/delete", data={"csrf_token": CSRF}).status_code == 403
    assert client.get("/files/9999").status_code == 404


def test_rejected_uploads(app, client):
    make_user(app, "jane@example.com")
    login(client, "jane@example.com")

    r = _upload(client, b"hello", "notes.txt", "text/plain")
    assert r.status_code == 400
    assert r.get_json() == {"success": False, "message": "File type not allowed: text/plain.", "code": "INVALID_FILE_TYPE"}

    r = _upload(client, b"%PDF-1.4", "doc.pdf", "application/pdf", images_only="1")
    assert r.get_json()["code"] == "INVALID_FILE_TYPE"

    r = _upload(client, b"\x00" * (6 * 1024 * 1024))
    assert r.status_code == 400
    assert r.get_json()["code"] == "FILE_TOO_LARGE"

    r = client.post("/files/upload", data={"csrf_token": CSRF}, headers=JSON)
    assert r.get_json() == {"success": False, "message": "No file provided."}

    with session_scope(app) as s:
        assert s.query(StoredFile).count() == 0


def test_organization_files_are_shared_with_members(app, client):
    owner = make_user(app, "owner@example.com")
    org_id = make_org(app, owner, "acme")
    add_member(app, org_id, make_user(app, "member@example.com"))
    make_user(app, "stranger@example.com")

    login(client, "owner@example.com")
    file_id = _upload(client, organization_id=str(org_id), entity_type="organization", entity_id=str(org_id)).get_json()["data"]["id"]

    client.get("/auth/logout")
    login(client, "stranger@example.com")
    assert client.get(f"/files?organization_id={org_id}&format=json").status_code == 403

    client.get("/auth/logout")
    login(client, "member@example.com")
    listing = client.get(f"/files?organization_id={org_id}&format=json").get_json()
    assert [f["id"] for f in listing["data"]] == [file_id]
    assert client.get(f"/files/{file_id}").status_code == 200
    assert client.post(f"/files/{file_id}/delete", data={"csrf_token": CSRF}).status_code == 403


def test_failed_database_write_removes_uploaded_object(app, monkeypatch):
    uid = make_user(app, "jane@example.com")

    def broken_audit(*args, **kwargs):
        raise OperationalError("INSERT INTO audit_events", {}, Exception("disk full"))

    monkeypatch.setattr(files_service, "record_event", broken_audit)
    with app.app_context():
        with pytest.raises(OperationalError):
            with session_scope(app) as s:
                upload_file(
                    s,
                    data=PNG,
                    filename="pic.png",
                    content_type="image/png",
                    entity_type="user",
                    entity_id=uid,
                    user=s.get(User, uid),
                    app_config=app.config,
                )
    assert storage_from_config(app.config).list_keys("") == []
    with session_scope(app) as s:
        assert s.query(StoredFile).count() == 0


def test_admin_storage_listing(app, client, monkeypatch):
    uid = make_user(app, "jane@example.com")
    login(client, "jane@example.com")
    assert _upload(client).status_code == 201
    assert client.get(f"/admin/storage?entity_type=user&entity_id={uid}").status_code == 403

    client.get("/auth/logout")
    login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    r = client.get(f"/admin/storage?entity_type=user&entity_id={uid}")
    assert r.status_code == 200
    keys = r.get_json()["data"]["keys"]
    assert len(keys) == 1
    assert f"/users/{uid}/" in keys[0]

    r = client.get("/admin/storage?entity_type=user")
    assert r.status_code == 400
    assert r.get_json() == {"success": False, "message": "entity_type and entity_id are required."}

    def broken_list(self, prefix=""):
        raise OSError("permission denied")

    monkeypatch.setattr(LocalStorage, "list_keys", broken_list)
    r = client.get(f"/admin/storage?entity_type=user&entity_id={uid}")
    assert r.status_code == 500
    assert r.get_json()["code"] == FileError.LIST_FAILED


def test_admin_storage_listing_requires_sign_in(client):
    r = client.get("/admin/storage?entity_type=user&entity_id=1")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
