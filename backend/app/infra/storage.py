"""Object storage for generated dream images."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Protocol
from uuid import uuid4

from ..config import StorageConfig
from .logging import get_logger

__all__ = [
    "InMemoryObjectStorage",
    "LocalObjectStorage",
    "ObjectStorageService",
    "StorageError",
    "StoredObject",
    "build_object_storage",
]

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoredObject:
    storage_key: str
    access_url: str
    size_bytes: int


class StorageError(RuntimeError):
    """Raised when an object cannot be stored, located or deleted."""

    retryable = True

    def __init__(self, message: str, *, code: str = "storage_error") -> None:
        super().__init__(message)
        self.code = code


class ObjectStorageService(Protocol):  # pragma: no cover - interface only
    def store(
        self, data: bytes, *, filename: str, content_type: str
    ) -> StoredObject: ...

    def get_access_url(self, storage_key: str) -> str: ...

    def delete(self, storage_key: str) -> None: ...

    def exists(self, storage_key: str) -> bool: ...


def _generate_storage_key(prefix: str, filename: str, now: datetime) -> str:
    """``{prefix}/{year}/{month}/{uuid}.{ext}``"""

    suffix = PurePosixPath(filename).suffix or ".bin"
    parts = [part for part in (prefix, f"{now.year:04d}", f"{now.month:02d}") if part]
    return "/".join(parts + [f"{uuid4()}{suffix}"])


class LocalObjectStorage(ObjectStorageService):
    """Stores objects as files below ``root_path``."""

    def __init__(
        self,
        root_path: str | Path,
        *,
        public_base_url: str = "",
        key_prefix: str = "dreams",
    ) -> None:
        self._root = Path(root_path).expanduser()
        self._public_base_url = public_base_url.rstrip("/")
        self._key_prefix = key_prefix.strip("/")

    def store(self, data: bytes, *, filename: str, content_type: str) -> StoredObject:
        storage_key = _generate_storage_key(
            self._key_prefix, filename, datetime.now(timezone.utc)
        )
        target = self._resolve(storage_key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(
                f"Failed to store object {storage_key}: {exc}", code="store_failed"
            ) from exc
        logger.info(
            "object_stored",
            extra={
                "storage_key": storage_key,
                "size_bytes": len(data),
                "content_type": content_type,
            },
        )
        return StoredObject(
            storage_key=storage_key,
            access_url=self.get_access_url(storage_key),
            size_bytes=len(data),
        )

    def get_access_url(self, storage_key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{storage_key}"
        return self._resolve(storage_key).resolve().as_uri()

    def delete(self, storage_key: str) -> None:
        target = self._resolve(storage_key)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(
                f"Failed to delete object {storage_key}: {exc}", code="delete_failed"
            ) from exc
        logger.info("object_deleted", extra={"storage_key": storage_key})

    def exists(self, storage_key: str) -> bool:
        return self._resolve(storage_key).is_file()

    def _resolve(self, storage_key: str) -> Path:
        relative = PurePosixPath(storage_key)
        if relative.is_absolute() or ".." in relative.parts:
            raise StorageError(
                f"Invalid storage key {storage_key}", code="invalid_key"
            )
        return self._root.joinpath(*relative.parts)


class InMemoryObjectStorage(ObjectStorageService):
    """Dictionary-backed storage used in tests and local runs."""

    def __init__(
        self, *, public_base_url: str = "memory://objects", key_prefix: str = "dreams"
    ) -> None:
        self._lock = threading.Lock()
        self._public_base_url = public_base_url.rstrip("/")
        self._key_prefix = key_prefix.strip("/")
        self.objects: Dict[str, bytes] = {}
        self.deleted: list[str] = []

    def store(self, data: bytes, *, filename: str, content_type: str) -> StoredObject:
        storage_key = _generate_storage_key(
            self._key_prefix, filename, datetime.now(timezone.utc)
        )
        with self._lock:
            self.objects[storage_key] = bytes(data)
        return StoredObject(
            storage_key=storage_key,
            access_url=self.get_access_url(storage_key),
            size_bytes=len(data),
        )

    def get_access_url(self, storage_key: str) -> str:
        return f"{self._public_base_url}/{storage_key}"

    def delete(self, storage_key: str) -> None:
        with self._lock:
            self.objects.pop(storage_key, None)
            self.deleted.append(storage_key)

    def exists(self, storage_key: str) -> bool:
        with self._lock:
            return storage_key in self.objects


def build_object_storage(config: Optional[StorageConfig] = None) -> ObjectStorageService:
    """Return the storage backend named by ``config.backend``."""

    config = config or StorageConfig()
    if config.backend == "memory":
        return InMemoryObjectStorage(key_prefix=config.key_prefix)
    if config.backend == "local":
        return LocalObjectStorage(
            config.root_path,
            public_base_url=config.public_base_url,
            key_prefix=config.key_prefix,
        )
    raise RuntimeError(f"Unsupported storage backend '{config.backend}'")
