from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..rbac import ensure_staff
from ..services import users
from .. import models, schemas

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=schemas.UserProfile)
async def read_profile(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    profile = schemas.UserOut.model_validate(user).model_dump()
    profile.update(users.upload_allowance(db, user))
    return profile


@router.get("", response_model=list[schemas.UserOut])
async def list_users(
    role: str | None = None,
    suspended: bool | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    ensure_staff(user)
    return users.list_users(db, role=role, suspended=suspended)


@router.get("/{user_id}", response_model=schemas.UserOut)
async def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    ensure_staff(user)
    return users.get_user(db, user_id)


@router.patch("/{user_id}", response_model=schemas.UserOut)
async def update_user(
    user_id: int,
    payload: schemas.UserUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    updated = users.update_user(db, user_id, payload.model_dump(exclude_unset=True), user)
    db.commit()
    db.refresh(updated)
    return updated
