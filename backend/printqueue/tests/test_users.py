import pytest

from .conftest import client, db, make_user, auth_headers, STL_BYTES
from printqueue import audit, models
from printqueue.errors import PermissionDeniedError, ValidationError
from printqueue.models import UserRole
from printqueue.services import users


def test_profile_reports_upload_allowance(client, db):
    user = make_user(db, file_uploads_used=3)
    resp = client.get("/api/users/me", headers=auth_headers(user))
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["email"] == user.email
    assert body["file_uploads_used"] == 3
    assert body["file_upload_limit"] == 10
    assert body["files_remaining"] == 7


def test_user_directory_is_staff_only(client, db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    assert client.get("/api/users", headers=auth_headers(user)).status_code == 403
    assert client.get(f"/api/users/{admin.id}", headers=auth_headers(user)).status_code == 403

    listed = client.get("/api/users", params={"role": "admin"}, headers=auth_headers(admin))
    assert listed.status_code == 200
    assert admin.id in [u["id"] for u in listed.json()]
    assert all(u["role"] == "ADMIN" for u in listed.json())
    assert client.get(f"/api/users/{user.id}", headers=auth_headers(admin)).json()["email"] == user.email
    assert client.get("/api/users/999999", headers=auth_headers(admin)).status_code == 404


def test_staff_can_reset_upload_counter(client, db):
    user = make_user(db, file_uploads_used=10)
    admin = make_user(db, UserRole.ADMIN)
    blocked = client.post(
        "/api/orders",
        json={"project_name": "Blocked"},
        headers=auth_headers(user),
    ).json()["id"]
    resp = client.post(
        "/api/files/upload",
        data={"order_id": str(blocked)},
        files={"upload": ("part.stl", STL_BYTES, "model/stl")},
        headers=auth_headers(user),
    )
    assert resp.status_code == 400

    resp = client.patch(f"/api/users/{user.id}", json={"file_uploads_used": 0}, headers=auth_headers(admin))
    assert resp.status_code == 200, resp.text
    assert resp.json()["file_uploads_used"] == 0

    resp = client.post(
        "/api/files/upload",
        data={"order_id": str(blocked)},
        files={"upload": ("part.stl", STL_BYTES, "model/stl")},
        headers=auth_headers(user),
    )
    assert resp.status_code == 200, resp.text

    log = audit.query_logs(db, action="user_updated", entity_id=user.id)[0]
    assert log.user_id == admin.id
    assert log.details["changes"]["file_uploads_used"] == {"before": 10, "after": 0}


def test_promotion_and_suspension(client, db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    resp = client.patch(f"/api/users/{user.id}", json={"role": "ADMIN"}, headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.json()["role"] == "ADMIN"

    resp = client.patch(f"/api/users/{user.id}", json={"suspended": True}, headers=auth_headers(admin))
    assert resp.json()["suspended"] is True
    # suspended accounts are read-only
    assert client.post("/api/orders", json={"project_name": "x"}, headers=auth_headers(user)).status_code == 403


def test_only_superadmin_manages_superadmins(db):
    admin = make_user(db, UserRole.ADMIN)
    root = make_user(db, UserRole.SUPERADMIN)
    target = make_user(db)

    with pytest.raises(PermissionDeniedError):
        users.update_user(db, target.id, {"role": UserRole.SUPERADMIN}, admin)
    with pytest.raises(PermissionDeniedError):
        users.update_user(db, root.id, {"suspended": True}, admin)
    db.rollback()

    promoted = users.update_user(db, target.id, {"role": "superadmin"}, root)
    db.commit()
    assert promoted.role == UserRole.SUPERADMIN


def test_cannot_demote_or_suspend_self(db):
    admin = make_user(db, UserRole.ADMIN)
    with pytest.raises(PermissionDeniedError):
        users.update_user(db, admin.id, {"role": UserRole.USER}, admin)
    with pytest.raises(PermissionDeniedError):
        users.update_user(db, admin.id, {"suspended": True}, admin)
    db.rollback()


def test_update_rejects_unknown_fields_and_bad_values(db):
    admin = make_user(db, UserRole.ADMIN)
    target = make_user(db)
    with pytest.raises(ValidationError):
        users.update_user(db, target.id, {"email": "x@example.com"}, admin)
    with pytest.raises(ValidationError):
        users.update_user(db, target.id, {"file_uploads_used": -1}, admin)
    with pytest.raises(ValidationError):
        users.update_user(db, target.id, {"role": "OWNER"}, admin)


def test_no_change_writes_no_audit(db):
    admin = make_user(db, UserRole.ADMIN)
    target = make_user(db)
    users.update_user(db, target.id, {"suspended": False}, admin)
    db.commit()
    assert audit.query_logs(db, action="user_updated", entity_id=target.id) == []
