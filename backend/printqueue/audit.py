import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .models import utcnow

logger = logging.getLogger(__name__)

SYSTEM_ENTITY = "system"


def log_action(
    db: Session,
    user_id: int | None,
    action: str,
    entity_type: str,
    entity_id: Any = None,
    details: dict | None = None,
    reason: str | None = None,
) -> models.AuditLog | None:
    """Append an audit entry without coupling it to the caller's outcome.

    The entry is written inside a savepoint: when the insert fails the
    savepoint is rolled back, the failure is logged and the surrounding
    operation carries on. Entries are committed together with the caller's
    transaction.
    """

    log = models.AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
        reason=reason,
        timestamp=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(log)
            db.flush()
    except SQLAlchemyError:
        logger.exception("Failed to write audit entry %s for %s %s", action, entity_type, entity_id)
        return None
    return log


def query_logs(
    db: Session,
    *,
    user_id: int | None = None,
    entity_type: str | None = None,
    action: str | None = None,
    entity_id: Any = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int | None = None,
) -> list[models.AuditLog]:
    query = db.query(models.AuditLog)
    if user_id is not None:
        query = query.filter(models.AuditLog.user_id == user_id)
    if entity_type:
        query = query.filter(models.AuditLog.entity_type == entity_type)
    if action:
        query = query.filter(models.AuditLog.action == action)
    if entity_id is not None:
        query = query.filter(models.AuditLog.entity_id == str(entity_id))
    if start:
        query = query.filter(models.AuditLog.timestamp >= start)
    if end:
        query = query.filter(models.AuditLog.timestamp <= end)
    query = query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def generate_report(
    db: Session,
    start: datetime,
    end: datetime,
    user_id: int | None = None,
):
    query = db.query(models.AuditLog).filter(
        models.AuditLog.timestamp >= start,
        models.AuditLog.timestamp <= end,
    )
    if user_id:
        query = query.filter(models.AuditLog.user_id == user_id)
    rows = (
        query.with_entities(models.AuditLog.action, func.count(models.AuditLog.id))
        .group_by(models.AuditLog.action)
        .all()
    )
    return [{"action": r[0], "count": r[1]} for r in rows]
