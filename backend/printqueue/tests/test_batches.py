import re

import pytest

from .conftest import client, db, make_user, auth_headers
from printqueue import audit, models
from printqueue.errors import IllegalTransitionError, NotFoundError, ValidationError
from printqueue.models import BatchStatus, OrderStatus, UserRole
from printqueue.services import batches, orders


def _orders(db, count=2):
    user = make_user(db)
    created = [orders.create_order(db, {"project_name": f"Part {n}"}, user) for n in range(count)]
    db.commit()
    return created


def test_create_batch_links_orders(client, db):
    admin = make_user(db, UserRole.ADMIN)
    first, second = _orders(db)
    resp = client.post(
        "/api/batches",
        json={"name": "Friday run", "order_ids": [first.id, second.id], "estimated_duration": 6},
        headers=auth_headers(admin),
    )
    assert resp.status_code == 200, resp.text
    batch = resp.json()
    assert re.fullmatch(r"BATCH-\d{2}-\d{3}", batch["batch_number"])
    assert batch["status"] == "created"
    assert batch["order_ids"] == sorted([first.id, second.id])

    db.expire_all()
    for order in (first, second):
        refreshed = db.get(models.Order, order.id)
        assert refreshed.batch_id == batch["id"]
        assert refreshed.status == OrderStatus.SUBMITTED
    assert audit.query_logs(db, action="batch_created", entity_id=batch["id"])


def test_create_batch_is_all_or_nothing(db):
    admin = make_user(db, UserRole.ADMIN)
    first, second = _orders(db)
    orders.transition(db, second.id, OrderStatus.CANCELLED, admin, "not needed")
    db.commit()
    batch_count = db.query(models.Batch).count()

    with pytest.raises(ValidationError):
        batches.create_batch(db, "Mixed", [first.id, second.id], admin)
    db.rollback()

    assert db.query(models.Batch).count() == batch_count
    assert db.get(models.Order, first.id).batch_id is None


def test_create_batch_unknown_order(db):
    admin = make_user(db, UserRole.ADMIN)
    (order,) = _orders(db, 1)
    with pytest.raises(NotFoundError):
        batches.create_batch(db, None, [order.id, 99999999], admin)
    db.rollback()


def test_order_cannot_join_two_batches(db):
    admin = make_user(db, UserRole.ADMIN)
    (order,) = _orders(db, 1)
    batches.create_batch(db, "One", [order.id], admin)
    db.commit()
    with pytest.raises(ValidationError):
        batches.create_batch(db, "Two", [order.id], admin)
    db.rollback()


def test_start_and_complete_do_not_touch_orders(client, db):
    admin = make_user(db, UserRole.ADMIN)
    headers = auth_headers(admin)
    order_ids = [o.id for o in _orders(db)]
    batch_id = client.post("/api/batches", json={"order_ids": order_ids}, headers=headers).json()["id"]

    started = client.post(f"/api/batches/{batch_id}/start", headers=headers)
    assert started.status_code == 200
    assert started.json()["status"] == "started"
    assert started.json()["started_at"] is not None

    completed = client.post(f"/api/batches/{batch_id}/complete", headers=headers)
    assert completed.status_code == 200
    assert completed.json()["status"] == "finished"

    members = client.get(f"/api/batches/{batch_id}/orders", headers=headers).json()
    assert {o["status"] for o in members} == {"submitted"}
    actions = {log.action for log in audit.query_logs(db, entity_type="batch", entity_id=batch_id)}
    assert {"batch_created", "batch_started", "batch_completed"} <= actions


def test_cannot_complete_batch_that_never_started(db):
    admin = make_user(db, UserRole.ADMIN)
    order_ids = [o.id for o in _orders(db, 1)]
    batch = batches.create_batch(db, None, order_ids, admin)
    db.commit()
    with pytest.raises(IllegalTransitionError):
        batches.mark_completed(db, batch.id, admin)
    db.rollback()


def test_update_batch(client, db):
    admin = make_user(db, UserRole.ADMIN)
    headers = auth_headers(admin)
    order_ids = [o.id for o in _orders(db, 1)]
    batch_id = client.post("/api/batches", json={"order_ids": order_ids}, headers=headers).json()["id"]

    resp = client.patch(
        f"/api/batches/{batch_id}",
        json={"name": "Renamed", "status": "approved"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["name"] == "Renamed"
    assert resp.json()["status"] == BatchStatus.APPROVED
    log = audit.query_logs(db, action="batch_updated", entity_id=batch_id)[0]
    assert set(log.details["changes"]) == {"name", "status"}


def test_regular_users_cannot_batch(client, db):
    user = make_user(db)
    order_ids = [o.id for o in _orders(db, 1)]
    resp = client.post("/api/batches", json={"order_ids": order_ids}, headers=auth_headers(user))
    assert resp.status_code == 403
