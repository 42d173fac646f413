"""Object storage backends holding uploaded model files."""

from __future__ import annotations

import io
import json
import os
import re
from typing import Optional
from uuid import uuid4

from minio import Minio
from minio.error import S3Error

from . import config
from .errors import StorageError

# purpose: centralize object storage reads and writes for attachments
# status: active
# related_docs: DESIGN.md

_MINIO_CLIENT: Optional[Minio] = None
_META_SUFFIX = ".meta.json"
_MINIO_META_PREFIX = "x-amz-meta-"


def build_object_name(namespace: str | None, filename: str) -> str:
    """Construct a normalized storage key within an optional namespace."""

    safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", filename) or "artifact.bin"
    if not namespace:
        return f"{uuid4()}_{safe_name}"
    clean_namespace = re.sub(r"[^A-Za-z0-9/_.-]", "_", namespace).strip("/")
    return f"{clean_namespace}/{uuid4()}_{safe_name}"


class ObjectStore:
    """Key/value blob store with per-object string metadata."""

    def put(self, key: str, data: bytes, metadata: dict[str, str], content_type: str) -> None:
        raise NotImplementedError

    def get(self, key: str) -> tuple[bytes, dict[str, str]]:
        raise NotImplementedError

    def get_metadata(self, key: str) -> dict[str, str]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list(self, prefix: str = "") -> list[str]:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    """Filesystem backend used when no MinIO endpoint is configured."""

    def __init__(self, root: str):
        self.root = root

    def _path(self, key: str) -> str:
        parts = [part for part in key.split("/") if part not in ("", ".", "..")]
        return os.path.join(self.root, *parts)

    def put(self, key, data, metadata, content_type):
        path = self._path(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(data)
            with open(path + _META_SUFFIX, "w", encoding="utf-8") as handle:
                json.dump({**metadata, "content-type": content_type}, handle)
        except OSError as exc:
            raise StorageError(f"could not write object {key}") from exc

    def get(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            raise FileNotFoundError(key)
        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise StorageError(f"could not read object {key}") from exc
        return data, self.get_metadata(key)

    def get_metadata(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            raise FileNotFoundError(key)
        try:
            with open(path + _META_SUFFIX, encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            raise StorageError(f"could not read metadata for {key}") from exc

    def delete(self, key):
        path = self._path(key)
        for target in (path, path + _META_SUFFIX):
            try:
                os.remove(target)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageError(f"could not delete object {key}") from exc

    def list(self, prefix=""):
        keys: list[str] = []
        if not os.path.isdir(self.root):
            return keys
        for dirpath, _, filenames in os.walk(self.root):
            for filename in filenames:
                if filename.endswith(_META_SUFFIX):
                    continue
                relative = os.path.relpath(os.path.join(dirpath, filename), self.root)
                key = relative.replace(os.sep, "/")
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)


class MinioObjectStore(ObjectStore):
    """S3 compatible backend."""

    def __init__(self, client: Minio, bucket: str):
        self.client = client
        self.bucket = bucket

    def put(self, key, data, metadata, content_type):
        try:
            self.client.put_object(
                self.bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata=metadata,
            )
        except S3Error as exc:
            raise StorageError(f"could not write object {key}") from exc

    def get(self, key):
        try:
            response = self.client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code == "NoSuchKey":
                raise FileNotFoundError(key) from exc
            raise StorageError(f"could not read object {key}") from exc
        try:
            data = response.read()
        finally:
            response.close()
            response.release_conn()
        return data, self.get_metadata(key)

    def get_metadata(self, key):
        try:
            stat = self.client.stat_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in {"NoSuchKey", "NoSuchObject"}:
                raise FileNotFoundError(key) from exc
            raise StorageError(f"could not stat object {key}") from exc
        metadata: dict[str, str] = {}
        for header, value in (stat.metadata or {}).items():
            lowered = header.lower()
            if lowered.startswith(_MINIO_META_PREFIX):
                metadata[lowered[len(_MINIO_META_PREFIX):]] = value
        metadata["content-type"] = stat.content_type or "application/octet-stream"
        return metadata

    def delete(self, key):
        try:
            self.client.remove_object(self.bucket, key)
        except S3Error as exc:
            if exc.code == "NoSuchKey":
                return
            raise StorageError(f"could not delete object {key}") from exc

    def list(self, prefix=""):
        try:
            return [obj.object_name for obj in self.client.list_objects(self.bucket, prefix=prefix, recursive=True)]
        except S3Error as exc:
            raise StorageError(f"could not list objects under {prefix}") from exc


def _ensure_minio_client() -> Optional[Minio]:
    """Initialize and return a MinIO client when configuration is present."""

    global _MINIO_CLIENT
    if not config.MINIO_ENDPOINT or not config.MINIO_ACCESS_KEY or not config.MINIO_SECRET_KEY:
        return None
    if _MINIO_CLIENT is None:
        client = Minio(
            config.MINIO_ENDPOINT,
            access_key=config.MINIO_ACCESS_KEY,
            secret_key=config.MINIO_SECRET_KEY,
            secure=config.MINIO_ENDPOINT.startswith("https"),
        )
        try:
            if not client.bucket_exists(config.MINIO_BUCKET):
                client.make_bucket(config.MINIO_BUCKET)
        except S3Error as exc:
            raise StorageError("object storage bucket unavailable") from exc
        _MINIO_CLIENT = client
    return _MINIO_CLIENT


def get_object_store() -> ObjectStore:
    """Return the configured backend: MinIO when set up, local disk otherwise."""

    client = _ensure_minio_client()
    if client:
        return MinioObjectStore(client, config.MINIO_BUCKET)
    root = config.upload_dir()
    os.makedirs(root, exist_ok=True)
    return LocalObjectStore(root)
