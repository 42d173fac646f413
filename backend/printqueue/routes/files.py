import io
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..ratelimit import rate_limit
from ..services import attachments, orders
from .. import models, schemas

router = APIRouter(prefix="/api/files", tags=["files"])


@router.post("/upload", response_model=schemas.FileOut)
@rate_limit("30/minute")
async def upload_file(
    request: Request,
    upload: UploadFile = File(...),
    order_id: int | None = Form(None),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    data = await upload.read()
    db_file = attachments.upload_file(
        db,
        data,
        upload.filename or "",
        upload.content_type,
        len(data),
        user,
        order_id,
    )
    db.commit()
    db.refresh(db_file)
    return db_file


@router.get("/order/{order_id}", response_model=list[schemas.FileOut])
async def list_order_files(
    order_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    orders.get_order_for(db, order_id, user)
    return attachments.list_by_order(db, order_id)


@router.get("/{file_id}", response_model=schemas.FileOut)
async def get_file_metadata(
    file_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    db_file, _ = attachments.get_file(db, file_id, actor=user, include_data=False)
    return db_file


@router.get("/{file_id}/download")
async def download_file(
    file_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    db_file, data = attachments.get_file(db, file_id, actor=user)
    db.commit()
    return StreamingResponse(
        io.BytesIO(data),
        media_type=db_file.content_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(db_file.filename)}"},
    )


@router.delete("/{file_id}")
async def delete_file(
    file_id: str,
    reason: str | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    deleted = attachments.delete_file(db, file_id, user, reason=reason)
    db.commit()
    return {"deleted": deleted}
