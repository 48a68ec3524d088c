"""
Pytest configuration and fixtures for TimeCapsule tests.

This module provides shared fixtures used across unit, integration,
and security tests. Time-dependent fixtures all share one FixedClock that
starts at T0, so tests move time explicitly with clock.advance().
"""

import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Generator

import pytest

from timecapsule.clock import FixedClock
from timecapsule.config import Settings
from timecapsule.errors import BlobStoreError
from timecapsule.schema import AttachmentUpload, Viewer
from timecapsule.service import CapsuleService
from timecapsule.store import CapsuleDB, MemoryBlobStore

T0 = datetime(2030, 1, 1, 12, 0, tzinfo=UTC)


class FailingBlobStore(MemoryBlobStore):
    """MemoryBlobStore that fails puts (or deletes) whose payload/path matches."""

    def __init__(self, fail_data: bytes | None = None, fail_deletes: bool = False) -> None:
        super().__init__()
        self.fail_data = fail_data
        self.fail_deletes = fail_deletes

    def put(self, path: str, data: bytes) -> None:
        if self.fail_data is not None and data == self.fail_data:
            raise BlobStoreError(operation="put", storage_path=path, underlying_error="disk full")
        super().put(path, data)

    def delete(self, path: str) -> bool:
        if self.fail_deletes:
            raise BlobStoreError(operation="delete", storage_path=path, underlying_error="read-only")
        return super().delete(path)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock() -> FixedClock:
    """A clock pinned at T0."""
    return FixedClock(T0)


@pytest.fixture
def settings() -> Settings:
    """In-memory settings that also accept plain text attachments."""
    return Settings(
        db_path=":memory:",
        allowed_content_types=["image/*", "audio/*", "text/plain"],
    )


@pytest.fixture
def db() -> Generator[CapsuleDB, None, None]:
    """In-memory database."""
    database = CapsuleDB(":memory:")
    yield database
    database.close()


@pytest.fixture
def blobs() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def upload_failing_blobs() -> FailingBlobStore:
    """Blob store that rejects any upload whose bytes are b"boom"."""
    return FailingBlobStore(fail_data=b"boom")


@pytest.fixture
def delete_failing_blobs() -> FailingBlobStore:
    """Blob store whose deletes always fail."""
    return FailingBlobStore(fail_deletes=True)


@pytest.fixture
def service(
    db: CapsuleDB,
    blobs: MemoryBlobStore,
    clock: FixedClock,
    settings: Settings,
) -> CapsuleService:
    """Service over in-memory stores and the fixed clock."""
    return CapsuleService(db, blobs, clock=clock, settings=settings)


@pytest.fixture
def make_service(
    db: CapsuleDB,
    clock: FixedClock,
    settings: Settings,
) -> Callable[..., CapsuleService]:
    """Factory for services with a custom blob store or settings overrides."""

    def factory(blob_store: MemoryBlobStore | None = None, **overrides: object) -> CapsuleService:
        return CapsuleService(
            db,
            blob_store if blob_store is not None else MemoryBlobStore(),
            clock=clock,
            settings=settings.model_copy(update=overrides),
        )

    return factory


@pytest.fixture
def alice() -> Viewer:
    """Capsule owner in most tests."""
    return Viewer(user_id="alice", email="alice@example.com")


@pytest.fixture
def bob() -> Viewer:
    return Viewer(user_id="bob", email="bob@example.com")


@pytest.fixture
def carol() -> Viewer:
    return Viewer(user_id="carol", email="carol@example.com")


@pytest.fixture
def photo() -> AttachmentUpload:
    """A small image attachment."""
    return AttachmentUpload(filename="photo.png", content_type="image/png", data=b"\x89PNG fake image")


@pytest.fixture
def voice_note() -> AttachmentUpload:
    return AttachmentUpload(filename="hello.mp3", content_type="audio/mpeg", data=b"ID3 fake audio")
