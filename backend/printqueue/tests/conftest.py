import os
os.environ["TESTING"] = "1"
os.environ["MINIO_ENDPOINT"] = ""
os.environ.setdefault("IDENTITY_JWT_SECRET", "test-secret")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path
import shutil

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from printqueue.main import app
from printqueue.database import Base, get_db
from printqueue.auth import create_access_token
from printqueue import models, notify

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def upload_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    os.environ["UPLOAD_DIR"] = str(d)
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture(autouse=True)
def clear_outbox():
    notify.EMAIL_OUTBOX.clear()
    yield
    notify.EMAIL_OUTBOX.clear()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_user(db, role: str = models.UserRole.USER, *, email: str | None = None, **fields) -> models.User:
    """Insert a committed user with a unique email."""

    user = models.User(
        email=email or f"user-{uuid.uuid4()}@example.com",
        display_name=fields.pop("display_name", "Test User"),
        role=role,
        file_uploads_used=fields.pop("file_uploads_used", 0),
        notification_preferences=fields.pop("notification_preferences", {}),
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_club(db, code: str | None = None) -> models.Club:
    code = code or uuid.uuid4().hex[:6].upper()
    club = models.Club(name=f"Club {code}", code=code, contact_email=f"{code.lower()}@example.com")
    db.add(club)
    db.commit()
    db.refresh(club)
    return club


def auth_headers(user_or_email) -> dict:
    email = getattr(user_or_email, "email", user_or_email)
    token = create_access_token({"sub": email, "email": email})
    return {"Authorization": f"Bearer {token}"}


STL_BYTES = b"solid cube\n" + b"facet normal 0 0 0\n" * 50 + b"endsolid cube\n"
