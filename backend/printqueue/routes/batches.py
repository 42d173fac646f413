from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..rbac import ensure_staff
from ..services import batches
from .. import models, schemas

router = APIRouter(prefix="/api/batches", tags=["batches"])


@router.post("", response_model=schemas.BatchOut)
async def create_batch(
    payload: schemas.BatchCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    batch = batches.create_batch(
        db, payload.name, payload.order_ids, user, payload.estimated_duration
    )
    db.commit()
    db.refresh(batch)
    return batch


@router.get("", response_model=list[schemas.BatchOut])
async def list_batches(
    status: str | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    ensure_staff(user)
    return batches.list_batches(db, status)


@router.get("/{batch_id}", response_model=schemas.BatchOut)
async def get_batch(
    batch_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    ensure_staff(user)
    return batches.get_batch(db, batch_id)


@router.get("/{batch_id}/orders", response_model=list[schemas.OrderOut])
async def list_batch_orders(
    batch_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    ensure_staff(user)
    return batches.list_batch_orders(db, batch_id)


@router.patch("/{batch_id}", response_model=schemas.BatchOut)
async def update_batch(
    batch_id: int,
    payload: schemas.BatchUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    batch = batches.update_batch(db, batch_id, payload.model_dump(exclude_unset=True), user)
    db.commit()
    db.refresh(batch)
    return batch


@router.post("/{batch_id}/start", response_model=schemas.BatchOut)
async def start_batch(
    batch_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    batch = batches.mark_started(db, batch_id, user)
    db.commit()
    db.refresh(batch)
    return batch


@router.post("/{batch_id}/complete", response_model=schemas.BatchOut)
async def complete_batch(
    batch_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    batch = batches.mark_completed(db, batch_id, user)
    db.commit()
    db.refresh(batch)
    return batch
