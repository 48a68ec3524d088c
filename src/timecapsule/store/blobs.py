"""
Binary object stores for attachment bytes.

Attachment records in SQLite point at blobs through an opaque storage path
("<capsule_id>/<attachment_id>"). Two implementations:
    - FileBlobStore: one file per blob under a root directory
    - MemoryBlobStore: process-local dict, for tests and ":memory:" setups

Security Note:
    Storage paths are resolved against the root and rejected if they escape
    it, so a tampered attachment record cannot read arbitrary files.
"""

import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from timecapsule.errors import BlobStoreError
from timecapsule.logger import logger


class BlobStore(ABC):
    """
    Abstract key/value store for binary objects.

    Implementations raise BlobStoreError for every I/O failure and for
    missing keys on get().
    """

    @abstractmethod
    def put(self, path: str, data: bytes) -> None:
        """Store bytes under path, replacing any existing object."""
        ...

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Return the bytes stored under path."""
        ...

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Remove path. Returns False if nothing was stored there."""
        ...

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def list_paths(self, prefix: str = "") -> list[str]:
        """All stored paths starting with prefix, sorted."""
        ...


def validate_storage_path(path: str) -> str:
    """Reject empty, absolute or parent-relative storage paths."""
    if not path or not path.strip():
        raise BlobStoreError(operation="validate", storage_path=path, underlying_error="empty path")
    normalized = path.replace("\\", "/")
    parts = normalized.split("/")
    if normalized.startswith("/") or any(part in ("", ".", "..") for part in parts):
        raise BlobStoreError(
            operation="validate",
            storage_path=path,
            underlying_error="path must be relative and may not contain '.' or '..' segments",
        )
    return normalized


class MemoryBlobStore(BlobStore):
    """Thread-safe in-memory blob store."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, path: str, data: bytes) -> None:
        path = validate_storage_path(path)
        with self._lock:
            self._objects[path] = bytes(data)

    def get(self, path: str) -> bytes:
        path = validate_storage_path(path)
        with self._lock:
            try:
                return self._objects[path]
            except KeyError:
                raise BlobStoreError(
                    operation="get",
                    storage_path=path,
                    underlying_error="object not found",
                ) from None

    def delete(self, path: str) -> bool:
        path = validate_storage_path(path)
        with self._lock:
            return self._objects.pop(path, None) is not None

    def exists(self, path: str) -> bool:
        path = validate_storage_path(path)
        with self._lock:
            return path in self._objects

    def list_paths(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(p for p in self._objects if p.startswith(prefix))


class FileBlobStore(BlobStore):
    """
    Filesystem-backed blob store.

    Writes go to a temporary file in the target directory and are renamed
    into place, so readers never observe a partially written blob.

    Attributes:
        root: Directory containing all blobs
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BlobStoreError(
                operation="init",
                storage_path=str(self.root),
                underlying_error=str(e),
            ) from e

    def _resolve(self, path: str) -> Path:
        """Map a storage path to a file under root, refusing escapes."""
        path = validate_storage_path(path)
        resolved = (self.root / path).resolve()
        if not resolved.is_relative_to(self.root):
            raise BlobStoreError(
                operation="resolve",
                storage_path=path,
                underlying_error="path escapes blob root",
            )
        return resolved

    def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise BlobStoreError(operation="put", storage_path=path, underlying_error=str(e)) from e

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise BlobStoreError(
                operation="get",
                storage_path=path,
                underlying_error="object not found",
            ) from None
        except OSError as e:
            raise BlobStoreError(operation="get", storage_path=path, underlying_error=str(e)) from e

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise BlobStoreError(operation="delete", storage_path=path, underlying_error=str(e)) from e

        # Drop the per-capsule directory once it is empty
        parent = target.parent
        if parent != self.root:
            try:
                if not any(parent.iterdir()):
                    parent.rmdir()
            except OSError as e:
                logger.debug("Kept blob directory %s: %s", parent, e)
        return True

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def list_paths(self, prefix: str = "") -> list[str]:
        paths = []
        for file in self.root.rglob("*"):
            if file.is_file() and not file.name.startswith(".upload-"):
                rel = file.relative_to(self.root).as_posix()
                if rel.startswith(prefix):
                    paths.append(rel)
        return sorted(paths)
