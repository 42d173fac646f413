"""Process-level settings for the print queue service."""

import os

from dotenv import load_dotenv

load_dotenv()

# purpose: single place for environment driven settings
# status: active
# related_docs: DESIGN.md

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./printqueue.db")

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploaded_files")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "").strip()
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "file-uploads")

MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", str(50 * 1024 * 1024)))
ALLOWED_EXTENSIONS = tuple(
    ext.strip().lower()
    for ext in os.getenv("ALLOWED_EXTENSIONS", ".stl,.obj,.3mf").split(",")
    if ext.strip()
)

IDENTITY_JWT_SECRET = os.getenv("IDENTITY_JWT_SECRET", os.getenv("SECRET_KEY", "dev-secret"))
IDENTITY_JWT_ALGORITHM = os.getenv("IDENTITY_JWT_ALGORITHM", "HS256")

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")

SMTP_SERVER = os.getenv("SMTP_SERVER")
EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@example.com")
SITE_URL = os.getenv("SITE_URL", "http://localhost:3000")

SENTRY_DSN = os.getenv("SENTRY_DSN")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]


def testing() -> bool:
    return os.getenv("TESTING") == "1"


def upload_dir() -> str:
    """Return the local upload directory, re-read so tests can redirect it."""

    return os.getenv("UPLOAD_DIR", UPLOAD_DIR)
