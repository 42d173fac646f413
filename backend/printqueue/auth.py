from datetime import datetime, timedelta, timezone

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, models
from .database import get_db
from .models import UserRole, utcnow

# purpose: resolve the bearer token issued by the identity provider to a local user
# status: active
# related_docs: DESIGN.md

ACCESS_TOKEN_EXPIRE_MINUTES = 60


def create_access_token(data: dict, expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode(to_encode, config.IDENTITY_JWT_SECRET, algorithm=config.IDENTITY_JWT_ALGORITHM)


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            config.IDENTITY_JWT_SECRET,
            algorithms=[config.IDENTITY_JWT_ALGORITHM],
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc


def _provision_user(db: Session, email: str, name: str | None, picture: str | None) -> models.User:
    user = models.User(
        email=email,
        display_name=name or email.split("@")[0],
        photo_url=picture,
        role=UserRole.USER,
        file_uploads_used=0,
        notification_preferences={},
    )
    try:
        with db.begin_nested():
            db.add(user)
            db.flush()
    except IntegrityError:
        # created concurrently by another request
        user = db.query(models.User).filter(models.User.email == email).one()
    return user


def get_current_user(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> models.User:
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_access_token(token)
    email = payload.get("email") or payload.get("sub")
    if not email or "@" not in str(email):
        raise HTTPException(status_code=401, detail="Invalid token")
    email = str(email).strip().lower()

    user = db.query(models.User).filter(models.User.email == email).first()
    if user is None:
        user = _provision_user(db, email, payload.get("name"), payload.get("picture"))
    user.last_login = utcnow()
    db.commit()
    db.refresh(user)
    return user
