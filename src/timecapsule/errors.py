"""
Exception hierarchy for TimeCapsule.

All TimeCapsule exceptions inherit from CapsuleError, allowing callers to catch
every error raised by the core with a single except clause.

Exception Categories:
    - CapsuleValidationError: Bad input shape or values (never retried)
    - PermissionDeniedError: Authenticated caller not allowed to mutate
    - NotFoundError: Resource absent, or deliberately masked as absent
    - LockedError: Resource exists and is visible, but still time-locked
    - StorageError: Database or blob store operation failed

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors include context (capsule id, attachment id where applicable)
    - Errors are designed to be both human-readable and machine-parseable
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Validation errors: 1xxx
ERROR_VALIDATION = 1001
ERROR_VALIDATION_UNLOCK_TIME = 1002
ERROR_VALIDATION_ATTACHMENT = 1003
ERROR_VALIDATION_STATE = 1004

# Permission errors: 2xxx
ERROR_PERMISSION_DENIED = 2001

# Lookup errors: 3xxx
ERROR_NOT_FOUND = 3001
ERROR_CAPSULE_NOT_FOUND = 3002
ERROR_ATTACHMENT_NOT_FOUND = 3003
ERROR_LOCKED = 3101

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003
ERROR_STORAGE_INTEGRITY = 5004
ERROR_STORAGE_BLOB = 5005


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class CapsuleError(Exception):
    """
    Base exception for all TimeCapsule errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Validation Errors
# =============================================================================


@dataclass
class CapsuleValidationError(CapsuleError):
    """
    Raised when caller input is malformed or violates a constraint.

    Attributes:
        field_name: The offending input field, if known
    """

    field_name: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid value for {self.field_name or 'input'}"
        if self.code == 0:
            self.code = ERROR_VALIDATION
        self.context["field"] = self.field_name


@dataclass
class UnlockTimeError(CapsuleValidationError):
    """Raised when the unlock time is not strictly in the future."""

    unlock_at: str = ""
    now: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unlock time {self.unlock_at} is not in the future"
        if self.code == 0:
            self.code = ERROR_VALIDATION_UNLOCK_TIME
        if not self.suggestion:
            self.suggestion = "Choose an unlock time later than the current time"
        if self.field_name is None:
            self.field_name = "unlock_at"
        super().__post_init__()
        self.context.update({
            "unlock_at": self.unlock_at,
            "now": self.now,
        })


@dataclass
class AttachmentRejectedError(CapsuleValidationError):
    """Raised when an attachment fails size, count or content-type checks."""

    filename: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Attachment {self.filename!r} rejected: {self.reason}"
        if self.code == 0:
            self.code = ERROR_VALIDATION_ATTACHMENT
        if self.field_name is None:
            self.field_name = "attachments"
        super().__post_init__()
        self.context.update({
            "filename": self.filename,
            "reason": self.reason,
        })


@dataclass
class CapsuleStateError(CapsuleValidationError):
    """Raised when a lifecycle transition is not allowed from the current state."""

    capsule_id: str = ""
    current_status: str = ""
    requested_status: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Capsule {self.capsule_id} is {self.current_status}; "
                f"cannot become {self.requested_status}"
            )
        if self.code == 0:
            self.code = ERROR_VALIDATION_STATE
        if self.field_name is None:
            self.field_name = "status"
        super().__post_init__()
        self.context.update({
            "capsule_id": self.capsule_id,
            "current_status": self.current_status,
            "requested_status": self.requested_status,
        })


# =============================================================================
# Permission Errors
# =============================================================================


@dataclass
class PermissionDeniedError(CapsuleError):
    """
    Raised when an authenticated caller attempts a mutation they do not own.

    Attributes:
        capsule_id: The capsule the caller tried to change
        user_id: The caller
        action: The attempted action (e.g. "delete")
    """

    capsule_id: str = ""
    user_id: str = ""
    action: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"User {self.user_id} may not {self.action} capsule {self.capsule_id}"
        if self.code == 0:
            self.code = ERROR_PERMISSION_DENIED
        self.context.update({
            "capsule_id": self.capsule_id,
            "user_id": self.user_id,
            "action": self.action,
        })


# =============================================================================
# Lookup Errors
# =============================================================================


@dataclass
class NotFoundError(CapsuleError):
    """
    Raised when a resource does not exist or is hidden from the caller.

    The two cases are indistinguishable on purpose.
    """

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Resource not found"
        if self.code == 0:
            self.code = ERROR_NOT_FOUND


@dataclass
class CapsuleNotFoundError(NotFoundError):
    """Raised when a capsule is absent or masked."""

    capsule_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Capsule not found: {self.capsule_id}"
        if self.code == 0:
            self.code = ERROR_CAPSULE_NOT_FOUND
        super().__post_init__()
        self.context["capsule_id"] = self.capsule_id


@dataclass
class AttachmentNotFoundError(NotFoundError):
    """Raised when an attachment is absent or its capsule is masked."""

    attachment_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Attachment not found: {self.attachment_id}"
        if self.code == 0:
            self.code = ERROR_ATTACHMENT_NOT_FOUND
        super().__post_init__()
        self.context["attachment_id"] = self.attachment_id


@dataclass
class LockedError(CapsuleError):
    """Raised when content is visible in principle but still time-locked."""

    capsule_id: str = ""
    unlock_at: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Capsule {self.capsule_id} is locked until {self.unlock_at}"
        if self.code == 0:
            self.code = ERROR_LOCKED
        self.context.update({
            "capsule_id": self.capsule_id,
            "unlock_at": self.unlock_at,
        })


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(CapsuleError):
    """
    Base class for storage errors.

    Attributes:
        operation: The operation that failed (e.g., "insert", "put_blob")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Storage operation failed: {self.operation}"
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when database connection fails."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageIntegrityError(StorageError):
    """Raised when stored bytes no longer match their recorded checksum."""

    storage_path: str = ""
    expected_checksum: str = ""
    actual_checksum: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Checksum mismatch for {self.storage_path}: "
                f"expected {self.expected_checksum[:8]}..., got {self.actual_checksum[:8]}..."
            )
        if self.code == 0:
            self.code = ERROR_STORAGE_INTEGRITY
        if not self.suggestion:
            self.suggestion = "The stored object may be corrupted. Restore it from a backup."
        super().__post_init__()
        self.context.update({
            "storage_path": self.storage_path,
            "expected_checksum": self.expected_checksum,
            "actual_checksum": self.actual_checksum,
        })


@dataclass
class BlobStoreError(StorageError):
    """Raised when the binary object store fails."""

    storage_path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Blob {self.operation} failed for {self.storage_path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_BLOB
        super().__post_init__()
        self.context.update({
            "storage_path": self.storage_path,
            "underlying_error": self.underlying_error,
        })
