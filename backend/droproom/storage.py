"""Blob storage backends for room payloads."""

from __future__ import annotations

import abc
import contextlib
import io
import os
import re
import tempfile
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import uuid4

import urllib3
from minio import Minio
from minio.error import MinioException, S3Error

from .config import Settings, get_settings
from .errors import BlobNotFound, StorageFailure

# purpose: one put/get/delete/list surface over local disk and MinIO/S3
# inputs: room-prefixed keys ("<room code>/<uuid>_<name>"), raw bytes
# outputs: stored payloads; prefix listing drives room purges and orphan reconciliation
# status: pilot

_MINIO_CLIENT: Optional[Minio] = None
_MISSING_CODES = {"NoSuchKey", "NoSuchObject", "ResourceNotFound"}
_TMP_PREFIX = ".tmp-"


def room_prefix(room_code: str) -> str:
    return f"{room_code}/"


def build_blob_key(room_code: str, filename: str) -> str:
    """Construct a sanitized key namespaced under the owning room."""

    safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", os.path.basename(filename or "")) or "artifact.bin"
    return f"{room_prefix(room_code)}{uuid4().hex}_{safe_name[-200:]}"


class BlobStore(abc.ABC):
    """Uniform blob interface; ``delete`` is idempotent on every backend."""

    @abc.abstractmethod
    def put(self, key: str, data: bytes, mime_type: str = "application/octet-stream") -> None: ...

    @abc.abstractmethod
    def get(self, key: str) -> bytes: ...

    @abc.abstractmethod
    def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    def exists(self, key: str) -> bool: ...

    @abc.abstractmethod
    def list_keys(self, prefix: str = "") -> list[str]: ...

    @abc.abstractmethod
    def modified_at(self, key: str) -> datetime: ...

    def delete_prefix(self, prefix: str) -> int:
        """Remove every key under ``prefix``; returns how many were listed."""

        if not prefix:
            raise ValueError("Refusing to delete with an empty prefix")
        keys = self.list_keys(prefix)
        for key in keys:
            self.delete(key)
        return len(keys)


class LocalBlobStore(BlobStore):
    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        parts = [part for part in key.split("/") if part]
        if not parts or any(part in {".", ".."} for part in parts) or key.startswith("/"):
            raise ValueError(f"Invalid blob key {key!r}")
        return os.path.join(self.root, *parts)

    def put(self, key: str, data: bytes, mime_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        directory = os.path.dirname(path)
        try:
            os.makedirs(directory, exist_ok=True)
            # Readers must never observe a half-written payload.
            fd, tmp_path = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=directory)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(tmp_path, path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(tmp_path)
                raise
        except OSError as exc:
            raise StorageFailure(f"Failed to write blob {key}: {exc}") from exc

    def get(self, key: str) -> bytes:
        try:
            with open(self._path(key), "rb") as handle:
                return handle.read()
        except FileNotFoundError as exc:
            raise BlobNotFound(f"Blob {key} not found") from exc
        except OSError as exc:
            raise StorageFailure(f"Failed to read blob {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageFailure(f"Failed to delete blob {key}: {exc}") from exc
        self._prune_empty_parents(os.path.dirname(path))

    def _prune_empty_parents(self, directory: str) -> None:
        while directory != self.root and directory.startswith(self.root):
            # A concurrent writer may repopulate the directory at any moment.
            with contextlib.suppress(OSError):
                os.rmdir(directory)
            if os.path.isdir(directory):
                return
            directory = os.path.dirname(directory)

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def _walk(self, base: str) -> Iterator[str]:
        start = os.path.join(self.root, *[part for part in base.split("/") if part])
        for dirpath, _dirnames, filenames in os.walk(start):
            for filename in filenames:
                if filename.startswith(_TMP_PREFIX):
                    continue
                full = os.path.join(dirpath, filename)
                yield os.path.relpath(full, self.root).replace(os.sep, "/")

    def list_keys(self, prefix: str = "") -> list[str]:
        base = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        if ".." in base.split("/"):
            raise ValueError(f"Invalid blob prefix {prefix!r}")
        return sorted(key for key in self._walk(base) if key.startswith(prefix))

    def modified_at(self, key: str) -> datetime:
        try:
            stamp = os.stat(self._path(key)).st_mtime
        except FileNotFoundError as exc:
            raise BlobNotFound(f"Blob {key} not found") from exc
        return datetime.fromtimestamp(stamp, tz=timezone.utc)


class MinioBlobStore(BlobStore):
    def __init__(self, client: Minio, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    def put(self, key: str, data: bytes, mime_type: str = "application/octet-stream") -> None:
        try:
            self.client.put_object(
                self.bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type=mime_type or "application/octet-stream",
            )
        except (MinioException, urllib3.exceptions.HTTPError) as exc:
            raise StorageFailure(f"Failed to write blob {key}: {exc}") from exc

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                raise BlobNotFound(f"Blob {key} not found") from exc
            raise StorageFailure(f"Failed to read blob {key}: {exc}") from exc
        except (MinioException, urllib3.exceptions.HTTPError) as exc:
            raise StorageFailure(f"Failed to read blob {key}: {exc}") from exc
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def delete(self, key: str) -> None:
        try:
            self.client.remove_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return
            raise StorageFailure(f"Failed to delete blob {key}: {exc}") from exc
        except (MinioException, urllib3.exceptions.HTTPError) as exc:
            raise StorageFailure(f"Failed to delete blob {key}: {exc}") from exc

    def _stat(self, key: str):
        try:
            return self.client.stat_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                raise BlobNotFound(f"Blob {key} not found") from exc
            raise StorageFailure(f"Failed to stat blob {key}: {exc}") from exc
        except (MinioException, urllib3.exceptions.HTTPError) as exc:
            raise StorageFailure(f"Failed to stat blob {key}: {exc}") from exc

    def exists(self, key: str) -> bool:
        try:
            self._stat(key)
        except BlobNotFound:
            return False
        return True

    def list_keys(self, prefix: str = "") -> list[str]:
        try:
            objects = self.client.list_objects(self.bucket, prefix=prefix or None, recursive=True)
            return sorted(obj.object_name for obj in objects if not obj.is_dir)
        except (MinioException, urllib3.exceptions.HTTPError) as exc:
            raise StorageFailure(f"Failed to list blobs under {prefix!r}: {exc}") from exc

    def modified_at(self, key: str) -> datetime:
        stat = self._stat(key)
        stamp = stat.last_modified
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return stamp


def _ensure_minio_client(settings: Settings) -> Minio:
    """Initialize the shared MinIO client and bucket on first use."""

    global _MINIO_CLIENT
    if _MINIO_CLIENT is None:
        endpoint = settings.minio_endpoint
        secure = endpoint.startswith("https")
        client = Minio(
            endpoint.split("://", 1)[-1],
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=secure,
        )
        try:
            if not client.bucket_exists(settings.minio_bucket):
                client.make_bucket(settings.minio_bucket)
        except (MinioException, urllib3.exceptions.HTTPError) as exc:
            raise StorageFailure(f"Object storage unavailable: {exc}") from exc
        _MINIO_CLIENT = client
    return _MINIO_CLIENT


def get_blob_store() -> BlobStore:
    """Return the configured backend: MinIO when credentials are present, else local disk."""

    settings = get_settings()
    if settings.minio_configured:
        return MinioBlobStore(_ensure_minio_client(settings), settings.minio_bucket)
    return LocalBlobStore(settings.upload_dir)
