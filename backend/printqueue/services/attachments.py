"""Attachment management: uploads, downloads, deletion and retention.

Uploaded bytes live in the object store; the ``files`` table holds their
metadata and ``Order.files`` carries a denormalized copy for the order
views. This module is the only writer of ``Order.files`` and always
updates it by read-modify-write on an order row loaded ``FOR UPDATE``.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Iterable
from urllib.parse import quote
from uuid import UUID, uuid4

from sqlalchemy import String, cast, func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import audit, config, models, rbac, storage
from ..errors import (
    ExpiredError,
    FileTypeError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    StorageError,
    ValidationError,
)
from ..models import OrderStatus, utcnow
from . import system_config

# purpose: couple uploaded blobs to orders and expire them after the retention window
# status: active
# related_docs: DESIGN.md

logger = logging.getLogger(__name__)

RETENTION_REASON = "Automated cleanup of expired files"


def _coerce_uuid(file_id: UUID | str) -> UUID:
    if isinstance(file_id, UUID):
        return file_id
    try:
        return UUID(str(file_id))
    except ValueError:
        raise NotFoundError("File not found")


def validate_upload(file_name: str, size: int) -> None:
    extension = os.path.splitext(file_name or "")[1].lower()
    if extension not in config.ALLOWED_EXTENSIONS:
        allowed = ", ".join(ext.lstrip(".").upper() for ext in config.ALLOWED_EXTENSIONS)
        raise FileTypeError(f"Invalid file type. Only {allowed} files are allowed.")
    if size <= 0:
        raise ValidationError("No file uploaded")
    if size > config.MAX_UPLOAD_SIZE:
        raise ValidationError(f"File exceeds the {config.MAX_UPLOAD_SIZE} byte upload limit")


def _lock_order(db: Session, order_id: int) -> models.Order | None:
    return (
        db.query(models.Order)
        .filter(models.Order.id == order_id)
        .with_for_update()
        .one_or_none()
    )


def _append_to_order(order: models.Order, file: models.File) -> None:
    order.files = [*(order.files or []), file.to_metadata()]
    order.updated_at = utcnow()


def _remove_from_order(db: Session, order_id: int, file_id: UUID) -> None:
    order = _lock_order(db, order_id)
    if order is None:
        return
    remaining = [
        entry for entry in (order.files or [])
        if not (isinstance(entry, dict) and entry.get("id") == str(file_id))
    ]
    if len(remaining) != len(order.files or []):
        order.files = remaining
        order.updated_at = utcnow()


def _ensure_can_view(db: Session, actor: models.User, file: models.File) -> None:
    if rbac.is_staff(actor) or file.uploaded_by == actor.id:
        return
    if file.order_id is not None:
        order = db.get(models.Order, file.order_id)
        if order is not None and rbac.can_view_order(actor, order):
            return
    raise PermissionDeniedError("Access denied")


def check_quota(db: Session, user: models.User, requested: int) -> None:
    """Raise ``QuotaExceededError`` unless ``requested`` more files fit the lifetime limit."""

    if requested <= 0:
        return
    limit = system_config.get_int(db, system_config.FILE_UPLOAD_LIMIT)
    used = (
        db.query(models.User.file_uploads_used)
        .filter(models.User.id == user.id)
        .scalar()
    ) or 0
    if used >= limit or used + requested > limit:
        raise QuotaExceededError(
            f"File upload limit reached ({used}/{limit}). Contact staff to raise your limit."
        )


def consume_quota(db: Session, user: models.User, count: int) -> None:
    if count <= 0:
        return
    db.execute(
        update(models.User)
        .where(models.User.id == user.id)
        .values(file_uploads_used=models.User.file_uploads_used + count)
    )


def upload_file(
    db: Session,
    data: bytes,
    file_name: str,
    content_type: str | None,
    size: int | None,
    uploader: models.User,
    order_id: int | None = None,
    *,
    store: storage.ObjectStore | None = None,
) -> models.File:
    """Store ``data`` and record its metadata, optionally on an order.

    Files uploaded straight onto an order count against the uploader's
    quota here; unassigned uploads are counted when an order claims them.
    """

    rbac.ensure_can_mutate(uploader)
    actual_size = len(data or b"")
    if size is not None and size != actual_size:
        raise ValidationError("Declared size does not match the uploaded data")
    size = actual_size
    validate_upload(file_name, size)

    order = None
    if order_id is not None:
        order = _lock_order(db, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if not rbac.can_view_order(uploader, order):
            raise PermissionDeniedError("Access denied")
        if order.status in OrderStatus.TERMINAL:
            raise ValidationError(f"Cannot attach files to a {order.status} order")
        check_quota(db, uploader, 1)

    store = store or storage.get_object_store()
    retention_days = system_config.get_int(db, system_config.FILE_DOWNLOAD_DAYS)
    created_at = utcnow()
    file_id = uuid4()
    namespace = f"uploads/{uploader.id}/{order.id if order else 'unassigned'}"
    key = storage.build_object_name(namespace, os.path.basename(file_name))
    content_type = content_type or "application/octet-stream"
    record = models.File(
        id=file_id,
        order_id=order.id if order else None,
        filename=file_name,
        content_type=content_type,
        size=size,
        storage_key=key,
        uploaded_by=uploader.id,
        created_at=created_at,
        expires_at=created_at + timedelta(days=retention_days),
    )
    store.put(
        key,
        data,
        {
            "file-id": str(file_id),
            "filename": quote(file_name),
            "uploaded-by": str(uploader.id),
            "order-id": str(order.id) if order else "",
            "created-at": created_at.isoformat(),
            "expires-at": record.expires_at.isoformat(),
        },
        content_type,
    )
    try:
        db.add(record)
        db.flush()
        if order is not None:
            _append_to_order(order, record)
            db.flush()
            consume_quota(db, uploader, 1)
    except SQLAlchemyError:
        store.delete(key)
        raise

    audit.log_action(
        db,
        uploader.id,
        "file_uploaded",
        "file",
        file_id,
        {"fileName": file_name, "size": size, "orderId": record.order_id},
    )
    return record


def get_file_metadata(db: Session, file_id: UUID | str) -> models.File:
    record = db.get(models.File, _coerce_uuid(file_id))
    if record is None:
        raise NotFoundError("File not found")
    return record


def get_file(
    db: Session,
    file_id: UUID | str,
    *,
    actor: models.User | None = None,
    include_data: bool = True,
    now: datetime | None = None,
    store: storage.ObjectStore | None = None,
) -> tuple[models.File, bytes | None]:
    """Return metadata and, unless ``include_data`` is False, the bytes.

    Expired files still return metadata; asking for their bytes raises
    ``ExpiredError`` rather than ``NotFoundError``.
    """

    record = get_file_metadata(db, file_id)
    if actor is not None:
        _ensure_can_view(db, actor, record)
    if not include_data:
        return record, None
    if record.is_expired(now):
        raise ExpiredError("File has expired and is no longer available for download")

    store = store or storage.get_object_store()
    try:
        data, _ = store.get(record.storage_key)
    except FileNotFoundError:
        raise NotFoundError("File data not found")

    if actor is not None:
        audit.log_action(
            db,
            actor.id,
            "file_downloaded",
            "file",
            record.id,
            {"fileName": record.filename, "orderId": record.order_id},
        )
    return record, data


def delete_file(
    db: Session,
    file_id: UUID | str,
    actor: models.User | None = None,
    order_id: int | None = None,
    reason: str | None = None,
    *,
    store: storage.ObjectStore | None = None,
) -> bool:
    """Remove blob, metadata and the order entry; False when already gone."""

    try:
        file_uuid = _coerce_uuid(file_id)
    except NotFoundError:
        return False
    record = db.get(models.File, file_uuid)
    if record is None:
        if order_id is not None:
            _remove_from_order(db, order_id, file_uuid)
        return False
    if actor is not None:
        rbac.ensure_can_manage_file(actor, record)

    owning_order = order_id if order_id is not None else record.order_id
    if owning_order is not None:
        _remove_from_order(db, owning_order, file_uuid)

    store = store or storage.get_object_store()
    store.delete(record.storage_key)
    details = {"fileName": record.filename, "size": record.size, "orderId": owning_order}
    db.delete(record)
    db.flush()

    audit.log_action(
        db,
        actor.id if actor is not None else None,
        "file_deleted",
        "file",
        file_uuid,
        details,
        reason,
    )
    return True


def list_by_order(db: Session, order_id: int) -> list[models.File]:
    if db.get(models.Order, order_id) is None:
        raise NotFoundError("Order not found")
    return (
        db.query(models.File)
        .filter(models.File.order_id == order_id)
        .order_by(models.File.created_at.asc())
        .all()
    )


def attach_to_order(
    db: Session,
    order: models.Order,
    file_ids: Iterable[UUID | str],
    actor: models.User,
    *,
    now: datetime | None = None,
) -> list[models.File]:
    """Bind files uploaded ahead of submission to ``order``."""

    attached: list[models.File] = []
    seen: set[UUID] = set()
    for raw_id in file_ids:
        record = get_file_metadata(db, raw_id)
        if record.id in seen:
            continue
        seen.add(record.id)
        if record.uploaded_by != actor.id and not rbac.is_staff(actor):
            raise PermissionDeniedError("Access denied")
        if record.order_id is not None and record.order_id != order.id:
            raise ValidationError(f"File {record.id} is already attached to another order")
        if record.is_expired(now):
            raise ExpiredError(f"File {record.id} has expired")
        record.order_id = order.id
        attached.append(record)

    if attached:
        locked = _lock_order(db, order.id) or order
        present = {entry.get("id") for entry in (locked.files or []) if isinstance(entry, dict)}
        locked.files = [
            *(locked.files or []),
            *(record.to_metadata() for record in attached if str(record.id) not in present),
        ]
        locked.updated_at = utcnow()
        db.flush()
    return attached


def _order_file_ids(db: Session, order: models.Order) -> list[UUID]:
    ids: list[UUID] = []
    for entry in order.files or []:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        try:
            ids.append(UUID(str(entry["id"])))
        except ValueError:
            continue
    for (file_id,) in db.query(models.File.id).filter(models.File.order_id == order.id).all():
        if file_id not in ids:
            ids.append(file_id)
    return ids


def _orders_with_attachments(db: Session, cutoff: datetime) -> list[models.Order]:
    """Orders submitted before ``cutoff`` that still reference any file."""

    has_rows = (
        db.query(models.File.id)
        .filter(models.File.order_id == models.Order.id)
        .exists()
    )
    listed = func.coalesce(cast(models.Order.files, String), "[]").notin_(["[]", "null"])
    return (
        db.query(models.Order)
        .filter(models.Order.submitted_at < cutoff, or_(has_rows, listed))
        .order_by(models.Order.id.asc())
        .all()
    )


def sweep_expired_files(
    db: Session,
    now: datetime | None = None,
    *,
    store: storage.ObjectStore | None = None,
) -> dict:
    """Delete attachments of orders older than the retention window.

    Every deletion commits on its own so an interrupted run keeps its
    progress; the next run repeats the remaining work. Writes one
    ``file_deleted`` entry per file and one ``automated_file_cleanup``
    summary, or ``automated_file_cleanup_failed`` when the run aborts.
    """

    now = now or utcnow()
    store = store or storage.get_object_store()
    summary = {
        "deletedFilesCount": 0,
        "totalSizeDeleted": 0,
        "expiredOrdersCount": 0,
        "orphanedFilesCount": 0,
        "failedCount": 0,
    }
    try:
        retention_days = system_config.get_int(db, system_config.FILE_DOWNLOAD_DAYS)
        cutoff = now - timedelta(days=retention_days)
        summary["retentionDays"] = retention_days
        summary["cutoffDate"] = cutoff.isoformat()

        for order in _orders_with_attachments(db, cutoff):
            file_ids = _order_file_ids(db, order)
            if not file_ids and not order.files:
                continue
            summary["expiredOrdersCount"] += 1
            failed = False
            for file_id in file_ids:
                record = db.get(models.File, file_id)
                size = record.size if record is not None else 0
                try:
                    deleted = delete_file(db, file_id, order_id=order.id, reason=RETENTION_REASON, store=store)
                    db.commit()
                except (StorageError, SQLAlchemyError):
                    db.rollback()
                    failed = True
                    summary["failedCount"] += 1
                    logger.exception("Failed to delete expired file %s (order %s)", file_id, order.order_id)
                    continue
                if deleted:
                    summary["deletedFilesCount"] += 1
                    summary["totalSizeDeleted"] += size or 0
                    logger.info("Deleted expired file %s (order %s)", file_id, order.order_id)
            if not failed:
                locked = _lock_order(db, order.id)
                if locked is not None and locked.files:
                    locked.files = []
                    locked.updated_at = utcnow()
                db.commit()

        orphans = (
            db.query(models.File)
            .filter(models.File.order_id.is_(None), models.File.expires_at < now)
            .all()
        )
        for record in orphans:
            size = record.size or 0
            try:
                deleted = delete_file(db, record.id, reason=RETENTION_REASON, store=store)
                db.commit()
            except (StorageError, SQLAlchemyError):
                db.rollback()
                summary["failedCount"] += 1
                logger.exception("Failed to delete expired upload %s", record.id)
                continue
            if deleted:
                summary["orphanedFilesCount"] += 1
                summary["deletedFilesCount"] += 1
                summary["totalSizeDeleted"] += size

        audit.log_action(
            db,
            None,
            "automated_file_cleanup",
            audit.SYSTEM_ENTITY,
            "file_cleanup",
            summary,
            RETENTION_REASON,
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("File cleanup failed")
        audit.log_action(
            db,
            None,
            "automated_file_cleanup_failed",
            audit.SYSTEM_ENTITY,
            "file_cleanup",
            {"error": str(exc), **summary},
            "Automated cleanup failed",
        )
        db.commit()
        raise

    logger.info(
        "File cleanup completed: %s files, %.2f MB freed, %s expired orders",
        summary["deletedFilesCount"],
        summary["totalSizeDeleted"] / 1024 / 1024,
        summary["expiredOrdersCount"],
    )
    return summary
