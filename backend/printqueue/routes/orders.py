from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..rbac import is_staff
from ..services import orders
from .. import models, schemas

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", response_model=schemas.OrderOut)
async def create_order(
    payload: schemas.OrderCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    order = orders.create_order(db, payload.model_dump(), user)
    db.commit()
    db.refresh(order)
    return order


@router.get("", response_model=list[schemas.OrderOut])
async def list_orders(
    status: str | None = None,
    club_id: int | None = None,
    user_id: int | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    # non-staff only ever see their own orders
    if not is_staff(user):
        user_id = user.id
    return orders.list_orders(db, user_id=user_id, club_id=club_id, status=status)


@router.get("/{order_id}", response_model=schemas.OrderOut)
async def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return orders.get_order_for(db, order_id, user)


@router.patch("/{order_id}", response_model=schemas.OrderOut)
async def update_order(
    order_id: int,
    payload: schemas.OrderUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    order = orders.update_order(db, order_id, payload.model_dump(exclude_unset=True), user)
    db.commit()
    db.refresh(order)
    return order


@router.patch("/{order_id}/status", response_model=schemas.OrderOut)
async def update_status(
    order_id: int,
    payload: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    extra = payload.model_dump(
        include={"estimated_completion_time", "staff_notes"},
        exclude_unset=True,
    )
    order = orders.transition(db, order_id, payload.status, user, payload.reason, extra)
    db.commit()
    db.refresh(order)
    return order
