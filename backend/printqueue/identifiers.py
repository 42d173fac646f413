"""Human-readable order and batch identifiers.

Order ids look like ``#RC24007`` (club code, two-digit year, three-digit
sequence) and fall back to ``#GEN24007`` when the order has no club.
Batch numbers look like ``BATCH-24-003``.

Sequences come from ``SequenceCounter`` rows that are locked and bumped
inside the caller's transaction, so concurrent submissions for the same
club and year cannot be handed the same number. A counter that does not
exist yet is seeded from the rows already present, which keeps numbering
continuous for databases that predate the counter table.
"""

from __future__ import annotations

import logging
import random
import re
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .models import utcnow

logger = logging.getLogger(__name__)

GENERIC_CODE = "GEN"
_BATCH_PATTERN = re.compile(r"^BATCH-(\d{2})-(\d+)$")


def academic_year(now: datetime | None = None) -> str:
    return f"{(now or utcnow()).year % 100:02d}"


def next_sequence_value(db: Session, scope: str, seed: int = 0) -> int:
    """Lock the counter row for ``scope`` and return its next value."""

    counter = (
        db.query(models.SequenceCounter)
        .filter(models.SequenceCounter.scope == scope)
        .with_for_update()
        .one_or_none()
    )
    if counter is None:
        try:
            with db.begin_nested():
                counter = models.SequenceCounter(scope=scope, value=seed)
                db.add(counter)
                db.flush()
        except IntegrityError:
            # another writer created the row first
            counter = (
                db.query(models.SequenceCounter)
                .filter(models.SequenceCounter.scope == scope)
                .with_for_update()
                .one()
            )
    counter.value = counter.value + 1
    db.flush()
    return counter.value


def _fallback_order_id(now: datetime | None = None) -> str:
    millis = int((now or utcnow()).timestamp() * 1000)
    return f"#FALLBACK-{millis}-{random.randint(0, 999):03d}"


def _club_code(db: Session, club_id: int | None) -> tuple[int | None, str | None]:
    if club_id is None:
        return None, None
    try:
        club = db.get(models.Club, club_id)
    except SQLAlchemyError:
        logger.warning("Club lookup failed for %s; using generic sequence", club_id)
        return None, None
    if club is None or not club.code:
        return None, None
    return club.id, club.code.strip().upper()


def generate_order_id(db: Session, club_id: int | None = None, now: datetime | None = None) -> str:
    """Return the next order id for ``club_id``; never raises."""

    year = academic_year(now)
    try:
        with db.begin_nested():
            resolved_id, code = _club_code(db, club_id)
            if code:
                seed = (
                    db.query(func.count(models.Order.id))
                    .filter(models.Order.club_id == resolved_id)
                    .scalar()
                ) or 0
                value = next_sequence_value(db, f"order:{code}:{year}", seed)
                return f"#{code}{year}{value:03d}"
            seed = db.query(func.count(models.Order.id)).scalar() or 0
            value = next_sequence_value(db, f"order:{GENERIC_CODE}:{year}", seed)
            return f"#{GENERIC_CODE}{year}{value:03d}"
    except Exception:
        logger.exception("Order id generation failed; issuing fallback id")
        return _fallback_order_id(now)


def _highest_batch_sequence(db: Session, year: str) -> int:
    highest = 0
    numbers = (
        db.query(models.Batch.batch_number)
        .filter(models.Batch.batch_number.like(f"BATCH-{year}-%"))
        .all()
    )
    for (number,) in numbers:
        match = _BATCH_PATTERN.match(number or "")
        if match:
            highest = max(highest, int(match.group(2)))
    return highest


def generate_batch_number(db: Session, now: datetime | None = None) -> str:
    year = academic_year(now)
    value = next_sequence_value(db, f"batch:{year}", _highest_batch_sequence(db, year))
    return f"BATCH-{year}-{value:03d}"
