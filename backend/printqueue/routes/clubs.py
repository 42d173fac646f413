from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from .. import models, schemas

router = APIRouter(prefix="/api/clubs", tags=["clubs"])


@router.get("", response_model=list[schemas.ClubOut])
async def list_clubs(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    query = db.query(models.Club)
    if not include_inactive:
        query = query.filter(models.Club.is_active.is_(True))
    return query.order_by(models.Club.name.asc()).all()
