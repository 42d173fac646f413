from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..rbac import is_staff
from .. import models, schemas, audit

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("/", response_model=list[schemas.AuditLogOut])
async def list_logs(
    user_id: int | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 200,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    if not is_staff(current_user):
        user_id = current_user.id
    return audit.query_logs(
        db,
        user_id=user_id,
        entity_type=entity_type,
        action=action,
        entity_id=entity_id,
        start=start,
        end=end,
        limit=limit,
    )


@router.get("/report", response_model=list[schemas.AuditReportItem])
async def audit_report(
    start: datetime,
    end: datetime,
    user_id: int | None = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    if user_id is None or not is_staff(current_user):
        user_id = current_user.id
    return audit.generate_report(db, start, end, user_id)
