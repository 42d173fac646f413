"""Order submission and the status lifecycle.

    submitted -> approved -> started -> finished
    submitted -> cancelled
    approved  -> cancelled | failed
    started   -> failed

``finished``, ``failed`` and ``cancelled`` are terminal. Every change
writes exactly one audit entry and queues an email that is delivered
after the caller commits.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.orm import Session

from .. import audit, identifiers, models, notify, rbac
from ..errors import (
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models import OrderStatus, as_utc, utcnow
from . import attachments

# purpose: validate submissions, enforce quotas and drive order status changes
# status: active
# related_docs: DESIGN.md

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    OrderStatus.SUBMITTED: (OrderStatus.APPROVED, OrderStatus.CANCELLED),
    OrderStatus.APPROVED: (OrderStatus.STARTED, OrderStatus.CANCELLED, OrderStatus.FAILED),
    OrderStatus.STARTED: (OrderStatus.FINISHED, OrderStatus.FAILED),
    OrderStatus.FINISHED: (),
    OrderStatus.FAILED: (),
    OrderStatus.CANCELLED: (),
}

DEFAULT_MATERIAL = "PLA"
DEFAULT_COLOR = "White"

PATCHABLE_FIELDS = (
    "project_name",
    "material",
    "color",
    "providing_filament",
    "event_deadline",
    "special_instructions",
    "staff_notes",
    "estimated_completion_time",
)
PROTECTED_FIELDS = ("status", "order_id", "files", "batch_id")
TRANSITION_EXTRAS = ("estimated_completion_time", "staff_notes")


def _audit_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def allowed_transitions(status: str) -> tuple[str, ...]:
    return ALLOWED_TRANSITIONS.get(status, ())


def get_order(db: Session, order_id: int) -> models.Order:
    order = db.get(models.Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order_by_code(db: Session, code: str) -> models.Order:
    order = db.query(models.Order).filter(models.Order.order_id == code).one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order_for(db: Session, order_id: int, viewer: models.User) -> models.Order:
    order = get_order(db, order_id)
    rbac.ensure_can_view_order(viewer, order)
    return order


def list_orders(
    db: Session,
    user_id: int | None = None,
    club_id: int | None = None,
    status: str | None = None,
) -> list[models.Order]:
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if club_id is not None:
        query = query.filter(models.Order.club_id == club_id)
    if status:
        if status not in OrderStatus.ALL:
            raise ValidationError(f"unknown status '{status}'")
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.submitted_at.desc(), models.Order.id.desc()).all()


def _lock_order(db: Session, order_id: int) -> models.Order:
    order = (
        db.query(models.Order)
        .filter(models.Order.id == order_id)
        .with_for_update()
        .one_or_none()
    )
    if order is None:
        raise NotFoundError("Order not found")
    return order


def _resolve_club(db: Session, club_id: int | None) -> models.Club | None:
    if club_id is None:
        return None
    club = db.get(models.Club, club_id)
    if club is None or not club.is_active:
        raise ValidationError("Unknown or inactive club")
    return club


def create_order(db: Session, payload: Mapping[str, Any], actor: models.User) -> models.Order:
    """Validate and persist a new submission.

    ``payload`` carries ``project_name`` (required), ``club_id``,
    ``event_deadline``, ``material``, ``color``, ``providing_filament``,
    ``special_instructions`` and ``file_ids`` of files uploaded ahead of
    submission. The uploader's lifetime file counter grows by the number
    of files attached.
    """

    rbac.ensure_can_mutate(actor)
    project_name = _clean_text(payload.get("project_name"))
    if not project_name:
        raise ValidationError("Project name is required")
    file_ids = list(payload.get("file_ids") or [])
    club = _resolve_club(db, payload.get("club_id"))

    attachments.check_quota(db, actor, len(set(map(str, file_ids))))

    order = models.Order(
        order_id=identifiers.generate_order_id(db, club.id if club else None),
        user_id=actor.id,
        club_id=club.id if club else None,
        project_name=project_name,
        event_deadline=payload.get("event_deadline"),
        material=_clean_text(payload.get("material")) or DEFAULT_MATERIAL,
        color=_clean_text(payload.get("color")) or DEFAULT_COLOR,
        providing_filament=bool(payload.get("providing_filament") or False),
        special_instructions=_clean_text(payload.get("special_instructions")),
        files=[],
        status=OrderStatus.SUBMITTED,
        submitted_at=utcnow(),
    )
    db.add(order)
    db.flush()

    attached = attachments.attach_to_order(db, order, file_ids, actor)
    attachments.consume_quota(db, actor, len(attached))

    audit.log_action(
        db,
        actor.id,
        "order_submitted",
        "order",
        order.id,
        {
            "orderId": order.order_id,
            "projectName": order.project_name,
            "clubId": order.club_id,
            "fileCount": len(attached),
        },
    )
    notify.notify_order_event(db, order, OrderStatus.SUBMITTED)
    logger.info("Order %s submitted by user %s", order.order_id, actor.id)
    return order


def transition(
    db: Session,
    order_id: int,
    new_status: str,
    actor: models.User,
    reason: str | None = None,
    extra: Mapping[str, Any] | None = None,
) -> models.Order:
    """Move an order to ``new_status``; raises ``IllegalTransitionError``."""

    if new_status not in OrderStatus.ALL:
        raise ValidationError(f"unknown status '{new_status}'")
    extra = dict(extra or {})
    unknown = sorted(set(extra) - set(TRANSITION_EXTRAS))
    if unknown:
        raise ValidationError(f"unsupported fields: {', '.join(unknown)}")

    order = _lock_order(db, order_id)
    rbac.ensure_can_transition(actor, order)
    previous = order.status
    allowed = allowed_transitions(previous)
    if new_status not in allowed:
        raise IllegalTransitionError(previous, new_status, allowed)

    reason = _clean_text(reason)
    now = utcnow()
    order.status = new_status
    if new_status == OrderStatus.CANCELLED:
        order.cancellation_reason = reason
    elif new_status == OrderStatus.FAILED:
        order.failure_reason = reason
    elif new_status == OrderStatus.FINISHED:
        order.actual_completion_time = now
    if extra.get("estimated_completion_time") is not None:
        order.estimated_completion_time = extra["estimated_completion_time"]
    if "staff_notes" in extra:
        order.staff_notes = _clean_text(extra["staff_notes"])
    order.updated_at = now
    db.flush()

    audit.log_action(
        db,
        actor.id,
        "order_status_updated",
        "order",
        order.id,
        {
            "orderId": order.order_id,
            "previousStatus": previous,
            "newStatus": new_status,
            "reason": reason,
        },
        reason,
    )
    notify.notify_order_event(db, order, new_status, previous_status=previous, reason=reason)
    logger.info("Order %s moved from %s to %s", order.order_id, previous, new_status)
    return order


def update_order(
    db: Session,
    order_id: int,
    fields: Mapping[str, Any],
    actor: models.User,
) -> models.Order:
    """Patch descriptive fields; status changes go through ``transition``."""

    rbac.ensure_staff(actor)
    protected = sorted(set(fields) & set(PROTECTED_FIELDS))
    if protected:
        raise ValidationError(f"fields cannot be updated here: {', '.join(protected)}")
    unknown = sorted(set(fields) - set(PATCHABLE_FIELDS))
    if unknown:
        raise ValidationError(f"unsupported fields: {', '.join(unknown)}")
    if "project_name" in fields and not _clean_text(fields["project_name"]):
        raise ValidationError("Project name is required")

    order = _lock_order(db, order_id)
    changes: dict[str, dict[str, Any]] = {}
    for name in PATCHABLE_FIELDS:
        if name not in fields:
            continue
        value = fields[name]
        if isinstance(value, str):
            value = _clean_text(value)
        current = getattr(order, name)
        if isinstance(current, datetime) and isinstance(value, datetime):
            unchanged = as_utc(current) == as_utc(value)
        else:
            unchanged = current == value
        if unchanged:
            continue
        changes[name] = {"before": _audit_value(current), "after": _audit_value(value)}
        setattr(order, name, value)

    if not changes:
        return order
    order.updated_at = utcnow()
    db.flush()
    audit.log_action(
        db,
        actor.id,
        "order_updated",
        "order",
        order.id,
        {"orderId": order.order_id, "fields": sorted(changes), "changes": changes},
    )
    return order
