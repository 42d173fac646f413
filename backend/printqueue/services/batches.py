from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from sqlalchemy.orm import Session

from .. import audit, identifiers, models, rbac
from ..errors import IllegalTransitionError, NotFoundError, ValidationError
from ..models import BatchStatus, OrderStatus, utcnow

# purpose: group approved orders for bulk printing without touching their status
# status: active
# related_docs: DESIGN.md

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "estimated_duration", "status")

BATCH_TRANSITIONS: dict[str, tuple[str, ...]] = {
    BatchStatus.CREATED: (BatchStatus.APPROVED, BatchStatus.STARTED),
    BatchStatus.APPROVED: (BatchStatus.STARTED,),
    BatchStatus.STARTED: (BatchStatus.FINISHED,),
    BatchStatus.FINISHED: (),
}


def _ensure_transition(batch: models.Batch, target: str) -> None:
    allowed = BATCH_TRANSITIONS.get(batch.status, ())
    if target not in allowed:
        raise IllegalTransitionError(batch.status, target, allowed)


def get_batch(db: Session, batch_id: int) -> models.Batch:
    batch = db.get(models.Batch, batch_id)
    if batch is None:
        raise NotFoundError("Batch not found")
    return batch


def list_batches(db: Session, status: str | None = None) -> list[models.Batch]:
    query = db.query(models.Batch)
    if status:
        if status not in BatchStatus.ALL:
            raise ValidationError(f"unknown batch status '{status}'")
        query = query.filter(models.Batch.status == status)
    return query.order_by(models.Batch.created_at.desc(), models.Batch.id.desc()).all()


def list_batch_orders(db: Session, batch_id: int) -> list[models.Order]:
    get_batch(db, batch_id)
    return (
        db.query(models.Order)
        .filter(models.Order.batch_id == batch_id)
        .order_by(models.Order.submitted_at.asc(), models.Order.id.asc())
        .all()
    )


def _validate_duration(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("estimated duration must be a whole number of hours")
    try:
        hours = int(value)
    except (TypeError, ValueError):
        raise ValidationError("estimated duration must be a whole number of hours")
    if hours < 0:
        raise ValidationError("estimated duration cannot be negative")
    return hours


def create_batch(
    db: Session,
    name: str | None,
    order_ids: Iterable[int],
    actor: models.User,
    estimated_duration: int | None = None,
) -> models.Batch:
    """Create a batch and link ``order_ids`` to it in the caller's transaction.

    Nothing is written when any order is unknown, terminal or already
    batched; the caller commits once for the batch and every link.
    """

    rbac.ensure_staff(actor)
    ids = list(dict.fromkeys(order_ids or []))
    if not ids:
        raise ValidationError("At least one order is required")
    duration = _validate_duration(estimated_duration)

    orders = (
        db.query(models.Order)
        .filter(models.Order.id.in_(ids))
        .with_for_update()
        .all()
    )
    found = {order.id: order for order in orders}
    missing = [order_id for order_id in ids if order_id not in found]
    if missing:
        raise NotFoundError(f"Orders not found: {', '.join(map(str, missing))}")
    for order in orders:
        if order.status in OrderStatus.TERMINAL:
            raise ValidationError(f"Order {order.order_id} is {order.status} and cannot be batched")
        if order.batch_id is not None:
            raise ValidationError(f"Order {order.order_id} already belongs to a batch")

    batch = models.Batch(
        batch_number=identifiers.generate_batch_number(db),
        name=(name or "").strip() or None,
        status=BatchStatus.CREATED,
        created_by_id=actor.id,
        estimated_duration=duration,
        created_at=utcnow(),
    )
    db.add(batch)
    db.flush()
    for order_id in ids:
        found[order_id].batch_id = batch.id
        found[order_id].updated_at = utcnow()
    db.flush()

    audit.log_action(
        db,
        actor.id,
        "batch_created",
        "batch",
        batch.id,
        {
            "batchNumber": batch.batch_number,
            "name": batch.name,
            "orderIds": [found[order_id].order_id for order_id in ids],
            "orderCount": len(ids),
        },
    )
    logger.info("Batch %s created with %s orders", batch.batch_number, len(ids))
    return batch


def _lock_batch(db: Session, batch_id: int) -> models.Batch:
    batch = (
        db.query(models.Batch)
        .filter(models.Batch.id == batch_id)
        .with_for_update()
        .one_or_none()
    )
    if batch is None:
        raise NotFoundError("Batch not found")
    return batch


def update_batch(
    db: Session,
    batch_id: int,
    fields: Mapping[str, Any],
    actor: models.User,
) -> models.Batch:
    rbac.ensure_staff(actor)
    unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"unsupported fields: {', '.join(unknown)}")
    batch = _lock_batch(db, batch_id)

    changes: dict[str, dict[str, Any]] = {}
    if "name" in fields:
        name = (fields["name"] or "").strip() or None
        if name != batch.name:
            changes["name"] = {"before": batch.name, "after": name}
            batch.name = name
    if "estimated_duration" in fields:
        duration = _validate_duration(fields["estimated_duration"])
        if duration != batch.estimated_duration:
            changes["estimated_duration"] = {"before": batch.estimated_duration, "after": duration}
            batch.estimated_duration = duration
    if "status" in fields and fields["status"] != batch.status:
        # started and finished go through mark_started / mark_completed
        if fields["status"] != BatchStatus.APPROVED:
            raise ValidationError("only the approved status can be set here")
        _ensure_transition(batch, BatchStatus.APPROVED)
        changes["status"] = {"before": batch.status, "after": BatchStatus.APPROVED}
        batch.status = BatchStatus.APPROVED

    if changes:
        db.flush()
        audit.log_action(
            db,
            actor.id,
            "batch_updated",
            "batch",
            batch.id,
            {"batchNumber": batch.batch_number, "changes": changes},
        )
    return batch


def mark_started(db: Session, batch_id: int, actor: models.User) -> models.Batch:
    """Stamp the batch as printing. Member orders keep their own status."""

    rbac.ensure_staff(actor)
    batch = _lock_batch(db, batch_id)
    _ensure_transition(batch, BatchStatus.STARTED)
    previous = batch.status
    batch.status = BatchStatus.STARTED
    batch.started_at = utcnow()
    db.flush()
    audit.log_action(
        db,
        actor.id,
        "batch_started",
        "batch",
        batch.id,
        {"batchNumber": batch.batch_number, "previousStatus": previous},
    )
    return batch


def mark_completed(db: Session, batch_id: int, actor: models.User) -> models.Batch:
    rbac.ensure_staff(actor)
    batch = _lock_batch(db, batch_id)
    _ensure_transition(batch, BatchStatus.FINISHED)
    batch.status = BatchStatus.FINISHED
    batch.completed_at = utcnow()
    db.flush()
    audit.log_action(
        db,
        actor.id,
        "batch_completed",
        "batch",
        batch.id,
        {"batchNumber": batch.batch_number},
    )
    return batch
