from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.orm import Session

from .. import audit, models, rbac
from ..errors import NotFoundError, PermissionDeniedError, ValidationError
from ..models import UserRole
from . import system_config

# purpose: staff administration of accounts: roles, suspension and upload allowance
# status: active
# related_docs: DESIGN.md

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("role", "suspended", "file_uploads_used")


def get_user(db: Session, user_id: int) -> models.User:
    user = db.get(models.User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def list_users(
    db: Session,
    role: str | None = None,
    suspended: bool | None = None,
) -> list[models.User]:
    query = db.query(models.User)
    if role:
        role = role.upper()
        if role not in UserRole.ALL:
            raise ValidationError(f"unknown role '{role}'")
        query = query.filter(models.User.role == role)
    if suspended is not None:
        query = query.filter(models.User.suspended.is_(suspended))
    return query.order_by(models.User.email.asc()).all()


def upload_allowance(db: Session, user: models.User) -> dict:
    limit = system_config.get_int(db, system_config.FILE_UPLOAD_LIMIT)
    used = user.file_uploads_used or 0
    return {"file_upload_limit": limit, "files_remaining": max(limit - used, 0)}


def _validate(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"unsupported fields: {', '.join(unknown)}")
    cleaned = dict(fields)
    if "role" in cleaned:
        role = str(cleaned["role"] or "").upper()
        if role not in UserRole.ALL:
            raise ValidationError(f"unknown role '{cleaned['role']}'")
        cleaned["role"] = role
    if "suspended" in cleaned and not isinstance(cleaned["suspended"], bool):
        raise ValidationError("suspended must be true or false")
    if "file_uploads_used" in cleaned:
        used = cleaned["file_uploads_used"]
        if isinstance(used, bool) or not isinstance(used, int) or used < 0:
            raise ValidationError("file_uploads_used must be a non-negative integer")
    return cleaned


def update_user(
    db: Session,
    user_id: int,
    fields: Mapping[str, Any],
    actor: models.User,
) -> models.User:
    """Change role, suspension or the upload counter of an account.

    Staff only. Granting or revoking ``SUPERADMIN``, or editing a
    superadmin at all, needs a superadmin. Nobody changes their own role
    or suspends themselves. Writes one ``user_updated`` audit entry when
    anything changed.
    """

    rbac.ensure_staff(actor)
    cleaned = _validate(fields)
    user = (
        db.query(models.User)
        .filter(models.User.id == user_id)
        .with_for_update()
        .one_or_none()
    )
    if user is None:
        raise NotFoundError("User not found")

    touches_superadmin = user.role == UserRole.SUPERADMIN or cleaned.get("role") == UserRole.SUPERADMIN
    if touches_superadmin and not rbac.is_superadmin(actor):
        raise PermissionDeniedError("Insufficient permissions")
    if user.id == actor.id and (
        ("role" in cleaned and cleaned["role"] != user.role) or cleaned.get("suspended") is True
    ):
        raise PermissionDeniedError("Cannot change your own role or suspend yourself")

    changes: dict[str, dict[str, Any]] = {}
    for name in UPDATABLE_FIELDS:
        if name not in cleaned or getattr(user, name) == cleaned[name]:
            continue
        changes[name] = {"before": getattr(user, name), "after": cleaned[name]}
        setattr(user, name, cleaned[name])

    if not changes:
        return user
    db.flush()
    audit.log_action(
        db,
        actor.id,
        "user_updated",
        "user",
        user.id,
        {"email": user.email, "fields": sorted(changes), "changes": changes},
    )
    logger.info("User %s updated by %s: %s", user.id, actor.id, ", ".join(sorted(changes)))
    return user
