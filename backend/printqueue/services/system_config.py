"""Key/value runtime settings stored in the ``system_config`` table."""

from __future__ import annotations

import json
from typing import Any, Iterable

from sqlalchemy.orm import Session

from .. import audit, models
from ..errors import ValidationError
from ..models import utcnow

# purpose: expose retention, quota and refresh settings with hard-coded fallbacks
# status: active

FILE_DOWNLOAD_DAYS = "file_download_days"
FILE_UPLOAD_LIMIT = "file_upload_limit"
QUEUE_REFRESH_INTERVAL = "queue_refresh_interval"

DEFAULTS: dict[str, Any] = {
    FILE_DOWNLOAD_DAYS: 30,
    FILE_UPLOAD_LIMIT: 10,
    QUEUE_REFRESH_INTERVAL: 30,
}


def _ensure_json(key: str, value: Any) -> None:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"value for '{key}' is not JSON serializable") from exc


def get_entry(db: Session, key: str) -> models.SystemConfig | None:
    return db.query(models.SystemConfig).filter(models.SystemConfig.key == key).one_or_none()


def get(db: Session, key: str) -> Any:
    """Return the stored value or the default for ``key``."""

    entry = get_entry(db, key)
    if entry is None:
        return DEFAULTS.get(key)
    return entry.value


def get_int(db: Session, key: str) -> int:
    """Return ``key`` as a positive int, falling back to the default when absent or malformed."""

    default = int(DEFAULTS.get(key, 0))
    value = get(db, key)
    if isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def get_all(db: Session) -> list[models.SystemConfig]:
    return db.query(models.SystemConfig).order_by(models.SystemConfig.key.asc()).all()


def _upsert(
    db: Session,
    key: str,
    value: Any,
    updated_by: int,
    description: str | None,
) -> models.SystemConfig:
    key = (key or "").strip()
    if not key:
        raise ValidationError("config key is required")
    _ensure_json(key, value)
    entry = get_entry(db, key)
    if entry is None:
        entry = models.SystemConfig(
            key=key,
            value=value,
            updated_by=updated_by,
            description=description or f"Configuration for {key}",
            updated_at=utcnow(),
        )
        db.add(entry)
    else:
        entry.value = value
        entry.updated_by = updated_by
        entry.updated_at = utcnow()
        if description:
            entry.description = description
    db.flush()
    return entry


def set_value(
    db: Session,
    key: str,
    value: Any,
    updated_by: int,
    description: str | None = None,
) -> models.SystemConfig:
    """Create or update a setting and record who changed it."""

    previous = get(db, key)
    entry = _upsert(db, key, value, updated_by, description)
    audit.log_action(
        db,
        updated_by,
        "system_config_updated",
        "system_config",
        entry.key,
        {"key": entry.key, "value": value, "previous": previous},
    )
    return entry


def bulk_set(
    db: Session,
    entries: Iterable[dict[str, Any]],
    updated_by: int,
) -> list[models.SystemConfig]:
    """Apply several settings in the caller's transaction."""

    results = []
    for item in entries:
        results.append(set_value(db, item.get("key"), item.get("value"), updated_by, item.get("description")))
    return results
