"""
Unit tests for error hierarchy.

Tests cover:
- Base CapsuleError behavior
- Validation errors with field context
- Permission, lookup and locked errors
- Storage errors
- Error serialization
"""

import pytest

from timecapsule.errors import (
    ERROR_ATTACHMENT_NOT_FOUND,
    ERROR_CAPSULE_NOT_FOUND,
    ERROR_LOCKED,
    ERROR_PERMISSION_DENIED,
    ERROR_STORAGE_BLOB,
    ERROR_STORAGE_CONNECTION,
    ERROR_STORAGE_INTEGRITY,
    ERROR_VALIDATION,
    ERROR_VALIDATION_ATTACHMENT,
    ERROR_VALIDATION_STATE,
    ERROR_VALIDATION_UNLOCK_TIME,
    AttachmentNotFoundError,
    AttachmentRejectedError,
    BlobStoreError,
    CapsuleError,
    CapsuleNotFoundError,
    CapsuleStateError,
    CapsuleValidationError,
    LockedError,
    NotFoundError,
    PermissionDeniedError,
    StorageConnectionError,
    StorageError,
    StorageIntegrityError,
    StorageWriteError,
    UnlockTimeError,
)


class TestCapsuleError:
    """Tests for base CapsuleError."""

    def test_basic_error(self) -> None:
        """Create a basic error with message."""
        err = CapsuleError(message="Something went wrong", code=9999)
        assert err.message == "Something went wrong"
        assert err.code == 9999
        assert err.suggestion is None
        assert err.context == {}

    def test_str_format(self) -> None:
        """String format includes code and message."""
        err = CapsuleError(message="Test error", code=1234)
        assert str(err) == "[E1234] Test error"

    def test_str_includes_suggestion(self) -> None:
        err = CapsuleError(message="Failed", code=1, suggestion="Try again")
        assert str(err) == "[E1] Failed\nSuggestion: Try again"

    def test_repr_format(self) -> None:
        """Repr includes class name and details."""
        err = CapsuleError(message="Test", code=1)
        assert repr(err).startswith("CapsuleError(")
        assert "message='Test'" in repr(err)

    def test_can_be_raised_and_caught(self) -> None:
        with pytest.raises(CapsuleError):
            raise CapsuleError(message="boom", code=1)


# =============================================================================
# Validation Errors
# =============================================================================


class TestValidationErrors:
    """Tests for CapsuleValidationError and subclasses."""

    def test_default_message_and_code(self) -> None:
        err = CapsuleValidationError(field_name="title")
        assert err.code == ERROR_VALIDATION
        assert err.message == "Invalid value for title"
        assert err.context["field"] == "title"

    def test_unlock_time_error(self) -> None:
        err = UnlockTimeError(unlock_at="2030-01-01T11:00:00+00:00", now="2030-01-01T12:00:00+00:00")
        assert isinstance(err, CapsuleValidationError)
        assert err.code == ERROR_VALIDATION_UNLOCK_TIME
        assert err.field_name == "unlock_at"
        assert "is not in the future" in err.message
        assert err.suggestion is not None
        assert err.context["now"] == "2030-01-01T12:00:00+00:00"

    def test_attachment_rejected_error(self) -> None:
        err = AttachmentRejectedError(filename="a.exe", reason="content type not allowed")
        assert err.code == ERROR_VALIDATION_ATTACHMENT
        assert err.context["field"] == "attachments"
        assert err.context["filename"] == "a.exe"
        assert "a.exe" in err.message

    def test_state_error(self) -> None:
        err = CapsuleStateError(capsule_id="c1", current_status="revealed", requested_status="cancelled")
        assert err.code == ERROR_VALIDATION_STATE
        assert err.message == "Capsule c1 is revealed; cannot become cancelled"
        assert isinstance(err, CapsuleValidationError)


# =============================================================================
# Permission / Lookup Errors
# =============================================================================


class TestAccessErrors:
    """Tests for permission, not-found and locked errors."""

    def test_permission_denied(self) -> None:
        err = PermissionDeniedError(capsule_id="c1", user_id="bob", action="delete")
        assert err.code == ERROR_PERMISSION_DENIED
        assert err.message == "User bob may not delete capsule c1"
        assert err.context == {"capsule_id": "c1", "user_id": "bob", "action": "delete"}

    def test_capsule_not_found(self) -> None:
        err = CapsuleNotFoundError(capsule_id="c1")
        assert isinstance(err, NotFoundError)
        assert err.code == ERROR_CAPSULE_NOT_FOUND
        assert err.message == "Capsule not found: c1"

    def test_attachment_not_found(self) -> None:
        err = AttachmentNotFoundError(attachment_id="a1")
        assert isinstance(err, NotFoundError)
        assert err.code == ERROR_ATTACHMENT_NOT_FOUND
        assert err.context["attachment_id"] == "a1"

    def test_locked(self) -> None:
        err = LockedError(capsule_id="c1", unlock_at="2031-01-01T00:00:00+00:00")
        assert err.code == ERROR_LOCKED
        assert err.message == "Capsule c1 is locked until 2031-01-01T00:00:00+00:00"
        assert not isinstance(err, NotFoundError)

    def test_error_kinds_are_distinct(self) -> None:
        """Validation and permission failures never share a type."""
        assert not issubclass(PermissionDeniedError, CapsuleValidationError)
        assert not issubclass(CapsuleValidationError, PermissionDeniedError)
        assert not issubclass(NotFoundError, PermissionDeniedError)


# =============================================================================
# Storage Errors
# =============================================================================


class TestStorageErrors:
    """Tests for storage-related errors."""

    def test_connection_error(self) -> None:
        err = StorageConnectionError(db_path="/nope/db.sqlite")
        assert isinstance(err, StorageError)
        assert err.code == ERROR_STORAGE_CONNECTION
        assert "/nope/db.sqlite" in err.message
        assert err.suggestion is not None

    def test_write_error(self) -> None:
        err = StorageWriteError(operation="insert_capsule", underlying_error="disk I/O error")
        assert err.message == "Database write failed: disk I/O error"
        assert err.context["operation"] == "insert_capsule"

    def test_integrity_error(self) -> None:
        err = StorageIntegrityError(
            storage_path="c1/a1",
            expected_checksum="a" * 64,
            actual_checksum="b" * 64,
        )
        assert err.code == ERROR_STORAGE_INTEGRITY
        assert "aaaaaaaa" in err.message
        assert "bbbbbbbb" in err.message

    def test_blob_store_error(self) -> None:
        err = BlobStoreError(operation="put", storage_path="c1/a1", underlying_error="disk full")
        assert err.code == ERROR_STORAGE_BLOB
        assert err.message == "Blob put failed for c1/a1: disk full"


# =============================================================================
# Serialization
# =============================================================================


class TestErrorSerialization:
    """Tests for to_dict()."""

    def test_to_dict(self) -> None:
        err = CapsuleNotFoundError(capsule_id="c1")
        data = err.to_dict()
        assert data["error_type"] == "CapsuleNotFoundError"
        assert data["code"] == ERROR_CAPSULE_NOT_FOUND
        assert data["message"] == "Capsule not found: c1"
        assert data["context"] == {"capsule_id": "c1"}
        assert data["suggestion"] is None
