"""
SQLite storage for TimeCapsule.

This module provides persistent storage for capsules, their attachment
records and the audit log. Attachment bytes live in a BlobStore; only their
locator and checksum are kept here.

Tables:
    - capsules: One row per capsule, indexed by owner and creation time
    - attachments: File records, cascade-deleted with their capsule
    - audit_log: Append-only lifecycle actions (never cascade-deleted)

Concurrency:
    One connection guarded by a re-entrant lock. Lifecycle transitions are
    single-row conditional updates, so racing callers cannot both succeed.
    Methods called inside transaction() join the open transaction instead of
    committing on their own.
"""

import hashlib
import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

from timecapsule.errors import StorageConnectionError, StorageReadError, StorageWriteError
from timecapsule.schema import (
    Attachment,
    AuditAction,
    AuditEntry,
    Capsule,
    CapsuleStatus,
    Privacy,
)

# Schema version for migrations
SCHEMA_VERSION = 1

# SQL for creating tables
CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Capsules table
CREATE TABLE IF NOT EXISTS capsules (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    unlock_at TEXT NOT NULL,
    privacy TEXT NOT NULL,
    recipients_json TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'scheduled',
    created_at TEXT NOT NULL,
    revealed_at TEXT,
    CHECK ((status = 'revealed') = (revealed_at IS NOT NULL))
);

-- Attachments table: file records bound to a capsule
CREATE TABLE IF NOT EXISTS attachments (
    id TEXT PRIMARY KEY,
    capsule_id TEXT NOT NULL,
    filename TEXT NOT NULL,
    content_type TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    checksum TEXT,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (capsule_id) REFERENCES capsules(id) ON DELETE CASCADE
);

-- Audit log: append-only, survives capsule deletion
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    capsule_id TEXT NOT NULL,
    action TEXT NOT NULL,
    performed_by TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_capsules_owner_id ON capsules(owner_id);
CREATE INDEX IF NOT EXISTS idx_capsules_created_at ON capsules(created_at);
CREATE INDEX IF NOT EXISTS idx_attachments_capsule_id ON attachments(capsule_id);
CREATE INDEX IF NOT EXISTS idx_audit_log_capsule_id ON audit_log(capsule_id);
"""


def generate_id() -> str:
    """Generate a unique ID for capsules and attachments."""
    return uuid.uuid4().hex


def compute_hash(data: bytes) -> str:
    """Compute SHA256 hash of attachment bytes."""
    return hashlib.sha256(data).hexdigest()


def to_iso(value: datetime) -> str:
    """Serialize a datetime as sortable UTC ISO text."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return to_iso(datetime.now(UTC))


class CapsuleDB:
    """
    SQLite database for TimeCapsule storage.

    Usage:
        db = CapsuleDB("timecapsule.db")
        db.insert_capsule(capsule)
        changed = db.mark_revealed(capsule.id, now)
        db.close()

    Or use as context manager:
        with CapsuleDB("timecapsule.db") as db:
            with db.transaction():
                db.insert_capsule(capsule)
                db.insert_attachment(attachment)
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
                     Will be created if it doesn't exist.
        """
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else None
        self._target = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._conn = sqlite3.connect(
                self._target,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            # Enable foreign keys
            self._conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=self._target,
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            cursor = self._conn.executescript(CREATE_TABLES_SQL)
            cursor.close()

            # Check/set schema version
            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = cursor.fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now_iso()),
                )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageConnectionError(
                db_path=self._target,
                operation="connect",
                message="Database connection is closed",
            )
        return self._conn

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Group several writes into one atomic transaction.

        Holds the connection lock until the outermost block exits.
        """
        with self._lock:
            self._tx_depth += 1
            try:
                yield
            except Exception:
                self._tx_depth -= 1
                if self._tx_depth == 0 and self._conn is not None:
                    self._conn.rollback()
                raise
            self._tx_depth -= 1
            if self._tx_depth == 0:
                try:
                    self.connection.commit()
                except sqlite3.Error as e:
                    self.connection.rollback()
                    raise StorageWriteError(
                        operation="commit",
                        underlying_error=str(e),
                    ) from e

    def _commit(self) -> None:
        """Commit unless an outer transaction() owns the commit."""
        if self._tx_depth == 0:
            self.connection.commit()

    def _rollback(self) -> None:
        if self._tx_depth == 0:
            self.connection.rollback()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "CapsuleDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Capsule Operations
    # =========================================================================

    def insert_capsule(self, capsule: Capsule) -> None:
        """Insert a new capsule record."""
        with self._lock:
            try:
                self.connection.execute(
                    """
                    INSERT INTO capsules (
                        id, owner_id, title, message, unlock_at, privacy,
                        recipients_json, status, created_at, revealed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        capsule.id,
                        capsule.owner_id,
                        capsule.title,
                        capsule.message,
                        to_iso(capsule.unlock_at),
                        capsule.privacy.value,
                        json.dumps(capsule.recipients),
                        capsule.status.value,
                        to_iso(capsule.created_at),
                        to_iso(capsule.revealed_at) if capsule.revealed_at else None,
                    ),
                )
                self._commit()
            except sqlite3.Error as e:
                self._rollback()
                raise StorageWriteError(
                    operation="insert_capsule",
                    underlying_error=str(e),
                ) from e

    def get_capsule(self, capsule_id: str) -> Capsule | None:
        """
        Get a capsule by ID.

        Returns:
            Capsule object or None if not found
        """
        with self._lock:
            try:
                cursor = self.connection.execute(
                    "SELECT * FROM capsules WHERE id = ?",
                    (capsule_id,),
                )
                row = cursor.fetchone()
                return self._row_to_capsule(row) if row is not None else None
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="get_capsule",
                    underlying_error=str(e),
                ) from e

    def list_capsules_by_owner(self, owner_id: str) -> list[Capsule]:
        """
        List capsules owned by a user.

        Returns:
            List of Capsule objects, most recently created first
        """
        with self._lock:
            try:
                cursor = self.connection.execute(
                    "SELECT * FROM capsules WHERE owner_id = ? ORDER BY created_at DESC, rowid DESC",
                    (owner_id,),
                )
                return [self._row_to_capsule(row) for row in cursor]
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="list_capsules_by_owner",
                    underlying_error=str(e),
                ) from e

    def list_shared_candidates(self, exclude_owner_id: str) -> list[Capsule]:
        """
        List non-private capsules owned by someone else, newest first.

        Recipient matching happens in the caller; this only narrows by tier.
        """
        with self._lock:
            try:
                cursor = self.connection.execute(
                    """
                    SELECT * FROM capsules
                    WHERE privacy IN (?, ?) AND owner_id != ?
                    ORDER BY created_at DESC, rowid DESC
                    """,
                    (Privacy.PUBLIC.value, Privacy.RECIPIENTS.value, exclude_owner_id),
                )
                return [self._row_to_capsule(row) for row in cursor]
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="list_shared_candidates",
                    underlying_error=str(e),
                ) from e

    def mark_revealed(self, capsule_id: str, revealed_at: datetime) -> bool:
        """
        Persist scheduled -> revealed if, and only if, still scheduled.

        Returns:
            True if this call performed the transition, False if it was a no-op
        """
        return self._conditional_status_update(
            capsule_id,
            CapsuleStatus.REVEALED,
            revealed_at=revealed_at,
            operation="mark_revealed",
        )

    def mark_cancelled(self, capsule_id: str) -> bool:
        """
        Persist scheduled -> cancelled if, and only if, still scheduled.

        Returns:
            True if this call performed the transition, False if it was a no-op
        """
        return self._conditional_status_update(
            capsule_id,
            CapsuleStatus.CANCELLED,
            revealed_at=None,
            operation="mark_cancelled",
        )

    def _conditional_status_update(
        self,
        capsule_id: str,
        status: CapsuleStatus,
        revealed_at: datetime | None,
        operation: str,
    ) -> bool:
        with self._lock:
            try:
                cursor = self.connection.execute(
                    """
                    UPDATE capsules SET status = ?, revealed_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        status.value,
                        to_iso(revealed_at) if revealed_at else None,
                        capsule_id,
                        CapsuleStatus.SCHEDULED.value,
                    ),
                )
                changed = cursor.rowcount == 1
                self._commit()
                return changed
            except sqlite3.Error as e:
                self._rollback()
                raise StorageWriteError(
                    operation=operation,
                    underlying_error=str(e),
                ) from e

    def delete_capsule(self, capsule_id: str) -> bool:
        """
        Delete a capsule; its attachment records cascade.

        Returns:
            True if a row was deleted
        """
        with self._lock:
            try:
                cursor = self.connection.execute(
                    "DELETE FROM capsules WHERE id = ?",
                    (capsule_id,),
                )
                deleted = cursor.rowcount == 1
                self._commit()
                return deleted
            except sqlite3.Error as e:
                self._rollback()
                raise StorageWriteError(
                    operation="delete_capsule",
                    underlying_error=str(e),
                ) from e

    def count_capsules(self) -> int:
        with self._lock:
            try:
                row = self.connection.execute("SELECT COUNT(*) AS n FROM capsules").fetchone()
                return int(row["n"])
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="count_capsules",
                    underlying_error=str(e),
                ) from e

    @staticmethod
    def _row_to_capsule(row: sqlite3.Row) -> Capsule:
        return Capsule(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            message=row["message"],
            unlock_at=datetime.fromisoformat(row["unlock_at"]),
            privacy=Privacy(row["privacy"]),
            recipients=json.loads(row["recipients_json"]),
            status=CapsuleStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            revealed_at=from_iso(row["revealed_at"]),
        )

    # =========================================================================
    # Attachment Operations
    # =========================================================================

    def insert_attachment(self, attachment: Attachment) -> None:
        """Insert an attachment record; the capsule must already exist."""
        with self._lock:
            try:
                self.connection.execute(
                    """
                    INSERT INTO attachments (
                        id, capsule_id, filename, content_type, storage_path,
                        checksum, size_bytes, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        attachment.id,
                        attachment.capsule_id,
                        attachment.filename,
                        attachment.content_type,
                        attachment.storage_path,
                        attachment.checksum,
                        attachment.size_bytes,
                        to_iso(attachment.created_at),
                    ),
                )
                self._commit()
            except sqlite3.Error as e:
                self._rollback()
                raise StorageWriteError(
                    operation="insert_attachment",
                    underlying_error=str(e),
                ) from e

    def get_attachment(self, attachment_id: str) -> Attachment | None:
        """Get an attachment record by ID."""
        with self._lock:
            try:
                cursor = self.connection.execute(
                    "SELECT * FROM attachments WHERE id = ?",
                    (attachment_id,),
                )
                row = cursor.fetchone()
                return self._row_to_attachment(row) if row is not None else None
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="get_attachment",
                    underlying_error=str(e),
                ) from e

    def list_attachments(self, capsule_id: str) -> list[Attachment]:
        """
        Get all attachment records for a capsule.

        Returns:
            List of Attachment objects in upload order
        """
        with self._lock:
            try:
                cursor = self.connection.execute(
                    """
                    SELECT * FROM attachments
                    WHERE capsule_id = ?
                    ORDER BY created_at, rowid
                    """,
                    (capsule_id,),
                )
                return [self._row_to_attachment(row) for row in cursor]
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="list_attachments",
                    underlying_error=str(e),
                ) from e

    def count_attachments(self, capsule_id: str) -> int:
        with self._lock:
            try:
                row = self.connection.execute(
                    "SELECT COUNT(*) AS n FROM attachments WHERE capsule_id = ?",
                    (capsule_id,),
                ).fetchone()
                return int(row["n"])
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="count_attachments",
                    underlying_error=str(e),
                ) from e

    @staticmethod
    def _row_to_attachment(row: sqlite3.Row) -> Attachment:
        return Attachment(
            id=row["id"],
            capsule_id=row["capsule_id"],
            filename=row["filename"],
            content_type=row["content_type"],
            storage_path=row["storage_path"],
            checksum=row["checksum"],
            size_bytes=row["size_bytes"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # =========================================================================
    # Audit Log Operations
    # =========================================================================

    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        """
        Append an audit entry.

        Returns:
            The entry with its assigned row id
        """
        with self._lock:
            try:
                cursor = self.connection.execute(
                    """
                    INSERT INTO audit_log (capsule_id, action, performed_by, timestamp)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        entry.capsule_id,
                        entry.action.value,
                        entry.performed_by,
                        to_iso(entry.timestamp),
                    ),
                )
                self._commit()
                return entry.model_copy(update={"id": cursor.lastrowid})
            except sqlite3.Error as e:
                self._rollback()
                raise StorageWriteError(
                    operation="append_audit",
                    underlying_error=str(e),
                ) from e

    def list_audit(self, capsule_id: str) -> list[AuditEntry]:
        """Get audit entries for a capsule, oldest first."""
        with self._lock:
            try:
                cursor = self.connection.execute(
                    """
                    SELECT * FROM audit_log
                    WHERE capsule_id = ?
                    ORDER BY timestamp, id
                    """,
                    (capsule_id,),
                )
                return [
                    AuditEntry(
                        id=row["id"],
                        capsule_id=row["capsule_id"],
                        action=AuditAction(row["action"]),
                        performed_by=row["performed_by"],
                        timestamp=datetime.fromisoformat(row["timestamp"]),
                    )
                    for row in cursor
                ]
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="list_audit",
                    underlying_error=str(e),
                ) from e
