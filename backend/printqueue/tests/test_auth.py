import uuid

from .conftest import client, db, auth_headers
from printqueue import models


def test_missing_token_is_rejected(client):
    assert client.get("/api/orders").status_code == 401


def test_invalid_token_is_rejected(client):
    resp = client.get("/api/orders", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_first_request_provisions_user(client, db):
    email = f"new-{uuid.uuid4()}@example.com"
    resp = client.get("/api/clubs", headers=auth_headers(email))
    assert resp.status_code == 200
    user = db.query(models.User).filter(models.User.email == email).one()
    assert user.role == models.UserRole.USER
    assert user.file_uploads_used == 0
    assert user.last_login is not None
