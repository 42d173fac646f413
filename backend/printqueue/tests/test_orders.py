import re

import pytest

from .conftest import client, db, make_user, make_club, auth_headers, STL_BYTES
from printqueue import audit, models, notify
from printqueue.errors import IllegalTransitionError, ValidationError
from printqueue.models import OrderStatus, UserRole
from printqueue.services import orders


def upload(client, headers, name="part.stl"):
    resp = client.post(
        "/api/files/upload",
        files={"upload": (name, STL_BYTES, "model/stl")},
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["id"]


def submit(client, headers, **payload):
    body = {"project_name": "Robot arm"}
    body.update(payload)
    return client.post("/api/orders", json=body, headers=headers)


def test_create_order_applies_defaults_and_attaches_files(client, db):
    user = make_user(db)
    club = make_club(db)
    headers = auth_headers(user)
    file_id = upload(client, headers)

    resp = submit(client, headers, club_id=club.id, file_ids=[file_id])
    assert resp.status_code == 200, resp.text
    order = resp.json()
    assert re.fullmatch(rf"#{club.code}\d{{2}}001", order["order_id"])
    assert order["status"] == "submitted"
    assert order["material"] == "PLA"
    assert order["color"] == "White"
    assert order["providing_filament"] is False
    assert [f["id"] for f in order["files"]] == [file_id]
    assert order["files"][0]["fileName"] == "part.stl"

    db.expire_all()
    assert db.get(models.User, user.id).file_uploads_used == 1
    logs = audit.query_logs(db, action="order_submitted", entity_id=order["id"])
    assert len(logs) == 1
    assert logs[0].details["orderId"] == order["order_id"]


def test_submission_sends_confirmation_email(client, db):
    user = make_user(db)
    resp = submit(client, auth_headers(user), project_name="Trophy")
    assert resp.status_code == 200
    assert any(
        to == user.email and subject == "Print Request Received - Trophy"
        for to, subject, _ in notify.EMAIL_OUTBOX
    )


def test_project_name_is_required(client, db):
    user = make_user(db)
    resp = submit(client, auth_headers(user), project_name="   ")
    assert resp.status_code == 422


def test_quota_exceeded_rejects_files(client, db):
    user = make_user(db, file_uploads_used=10)
    headers = auth_headers(user)
    file_id = upload(client, headers)
    resp = submit(client, headers, file_ids=[file_id])
    assert resp.status_code == 400
    assert "limit" in resp.json()["detail"]

    db.expire_all()
    assert db.get(models.User, user.id).file_uploads_used == 10
    assert db.query(models.Order).filter(models.Order.user_id == user.id).count() == 0


def test_quota_counts_requested_files(client, db):
    user = make_user(db, file_uploads_used=9)
    headers = auth_headers(user)
    ids = [upload(client, headers, f"p{n}.stl") for n in range(2)]
    assert submit(client, headers, file_ids=ids).status_code == 400
    assert submit(client, headers, file_ids=ids[:1]).status_code == 200


def test_order_without_files_ignores_quota(client, db):
    user = make_user(db, file_uploads_used=10)
    assert submit(client, auth_headers(user)).status_code == 200


def test_guest_cannot_submit(client, db):
    guest = make_user(db, UserRole.GUEST)
    assert submit(client, auth_headers(guest)).status_code == 403


def test_cannot_attach_someone_elses_file(client, db):
    owner = make_user(db)
    other = make_user(db)
    file_id = upload(client, auth_headers(owner))
    resp = submit(client, auth_headers(other), file_ids=[file_id])
    assert resp.status_code == 403


def test_full_lifecycle(client, db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order_id = submit(client, auth_headers(user)).json()["id"]
    admin_headers = auth_headers(admin)

    for status in ("approved", "started", "finished"):
        resp = client.patch(f"/api/orders/{order_id}/status", json={"status": status}, headers=admin_headers)
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == status
    assert resp.json()["actual_completion_time"] is not None

    logs = audit.query_logs(db, action="order_status_updated", entity_id=order_id)
    assert [log.details["newStatus"] for log in reversed(logs)] == ["approved", "started", "finished"]
    assert logs[0].details["previousStatus"] == "started"
    subjects = [subject for to, subject, _ in notify.EMAIL_OUTBOX if to == user.email]
    assert "Print Complete - Robot arm" in subjects


def test_illegal_transition_leaves_status_unchanged(client, db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order_id = submit(client, auth_headers(user)).json()["id"]
    headers = auth_headers(admin)
    for status in ("approved", "started", "finished"):
        client.patch(f"/api/orders/{order_id}/status", json={"status": status}, headers=headers)

    resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "approved"}, headers=headers)
    assert resp.status_code == 409
    assert client.get(f"/api/orders/{order_id}", headers=headers).json()["status"] == "finished"


def test_submitted_cannot_skip_to_started(db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order = orders.create_order(db, {"project_name": "Skip"}, user)
    db.commit()
    with pytest.raises(IllegalTransitionError) as exc:
        orders.transition(db, order.id, OrderStatus.STARTED, admin)
    assert exc.value.allowed == (OrderStatus.APPROVED, OrderStatus.CANCELLED)
    db.rollback()
    assert db.get(models.Order, order.id).status == OrderStatus.SUBMITTED


def test_cancellation_records_reason(client, db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order_id = submit(client, auth_headers(user)).json()["id"]
    resp = client.patch(
        f"/api/orders/{order_id}/status",
        json={"status": "cancelled", "reason": "duplicate request"},
        headers=auth_headers(admin),
    )
    assert resp.status_code == 200
    assert resp.json()["cancellation_reason"] == "duplicate request"
    log = audit.query_logs(db, action="order_status_updated", entity_id=order_id)[0]
    assert log.reason == "duplicate request"


def test_owner_cannot_change_status(client, db):
    user = make_user(db)
    order_id = submit(client, auth_headers(user)).json()["id"]
    resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "approved"}, headers=auth_headers(user))
    assert resp.status_code == 403


def test_disabled_preference_suppresses_email(client, db):
    user = make_user(db, notification_preferences={"order_approved": False})
    admin = make_user(db, UserRole.ADMIN)
    order_id = submit(client, auth_headers(user)).json()["id"]
    notify.EMAIL_OUTBOX.clear()
    client.patch(f"/api/orders/{order_id}/status", json={"status": "approved"}, headers=auth_headers(admin))
    assert not [m for m in notify.EMAIL_OUTBOX if m[0] == user.email]


def test_no_email_when_transaction_rolls_back(db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order = orders.create_order(db, {"project_name": "Rollback"}, user)
    db.commit()
    notify.EMAIL_OUTBOX.clear()
    orders.transition(db, order.id, OrderStatus.APPROVED, admin)
    db.rollback()
    assert notify.EMAIL_OUTBOX == []


def test_staff_update_records_changed_fields(client, db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order_id = submit(client, auth_headers(user)).json()["id"]
    resp = client.patch(
        f"/api/orders/{order_id}",
        json={"material": "PETG", "color": "White"},
        headers=auth_headers(admin),
    )
    assert resp.status_code == 200
    assert resp.json()["material"] == "PETG"
    log = audit.query_logs(db, action="order_updated", entity_id=order_id)[0]
    assert log.details["fields"] == ["material"]
    assert log.details["changes"]["material"] == {"before": "PLA", "after": "PETG"}


def test_update_rejects_status_field(db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order = orders.create_order(db, {"project_name": "Patch"}, user)
    db.commit()
    with pytest.raises(ValidationError):
        orders.update_order(db, order.id, {"status": "finished"}, admin)
    db.rollback()


def test_users_only_see_their_own_orders(client, db):
    alice = make_user(db)
    bob = make_user(db)
    alice_order = submit(client, auth_headers(alice)).json()["id"]
    submit(client, auth_headers(bob))

    listed = client.get("/api/orders", headers=auth_headers(alice)).json()
    assert {o["user_id"] for o in listed} == {alice.id}
    assert client.get(f"/api/orders/{alice_order}", headers=auth_headers(bob)).status_code == 403


def test_list_orders_by_status(db):
    user = make_user(db)
    orders.create_order(db, {"project_name": "Listed"}, user)
    db.commit()
    listed = orders.list_orders(db, user_id=user.id, status=OrderStatus.SUBMITTED)
    assert [o.project_name for o in listed] == ["Listed"]
    assert orders.list_orders(db, user_id=user.id, status=OrderStatus.FINISHED) == []


@pytest.mark.parametrize("path", [("approved",), ("approved", "started")])
def test_failure_records_reason(client, db, path):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    headers = auth_headers(admin)
    order_id = submit(client, auth_headers(user)).json()["id"]
    for status in path:
        client.patch(f"/api/orders/{order_id}/status", json={"status": status}, headers=headers)

    resp = client.patch(
        f"/api/orders/{order_id}/status",
        json={"status": "failed", "reason": "nozzle clog"},
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "failed"
    assert resp.json()["failure_reason"] == "nozzle clog"
    db.expire_all()
    assert db.get(models.Order, order_id).failure_reason == "nozzle clog"
    log = audit.query_logs(db, action="order_status_updated", entity_id=order_id)[0]
    assert log.details["previousStatus"] == path[-1]
    assert log.details["newStatus"] == "failed"


def test_submitted_cannot_fail(db):
    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order = orders.create_order(db, {"project_name": "Too early"}, user)
    db.commit()
    with pytest.raises(IllegalTransitionError):
        orders.transition(db, order.id, OrderStatus.FAILED, admin, "never started")
    db.rollback()
    order = db.get(models.Order, order.id)
    assert order.status == OrderStatus.SUBMITTED
    assert order.failure_reason is None


def test_broken_notifier_keeps_committed_status(client, db, monkeypatch):
    from printqueue import tasks

    def explode(message):
        raise RuntimeError("mail relay down")

    user = make_user(db)
    admin = make_user(db, UserRole.ADMIN)
    order_id = submit(client, auth_headers(user)).json()["id"]
    monkeypatch.setattr(tasks, "enqueue_order_notification", explode)

    resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "approved"}, headers=auth_headers(admin))
    assert resp.status_code == 200
    db.expire_all()
    assert db.get(models.Order, order_id).status == OrderStatus.APPROVED
    assert audit.query_logs(db, action="order_status_updated", entity_id=order_id)
