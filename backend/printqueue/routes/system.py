from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..errors import NotFoundError
from ..rbac import ensure_staff, ensure_superadmin
from ..services import attachments, system_config
from .. import models, schemas

router = APIRouter(prefix="/api/system", tags=["system"])


def _describe(key: str, entry: models.SystemConfig | None) -> dict:
    if entry is not None:
        return schemas.SystemConfigOut.model_validate(entry).model_dump()
    return {"key": key, "value": system_config.DEFAULTS[key], "description": "default"}


@router.get("/config", response_model=list[schemas.SystemConfigOut])
async def list_config(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    ensure_staff(user)
    entries = {entry.key: entry for entry in system_config.get_all(db)}
    keys = sorted(set(entries) | set(system_config.DEFAULTS))
    return [_describe(key, entries.get(key)) for key in keys]


@router.get("/config/{key}", response_model=schemas.SystemConfigOut)
async def get_config(
    key: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    entry = system_config.get_entry(db, key)
    if entry is None and key not in system_config.DEFAULTS:
        raise NotFoundError("Config key not found")
    return _describe(key, entry)


@router.post("/config", response_model=list[schemas.SystemConfigOut])
async def set_config(
    payload: list[schemas.SystemConfigIn],
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    ensure_superadmin(user)
    entries = system_config.bulk_set(db, [item.model_dump() for item in payload], user.id)
    db.commit()
    return [schemas.SystemConfigOut.model_validate(entry) for entry in entries]


@router.post("/cleanup", response_model=schemas.CleanupResult)
async def run_cleanup(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    ensure_superadmin(user)
    return attachments.sweep_expired_files(db)
