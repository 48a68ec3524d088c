"""
Schema definitions for TimeCapsule.

This module defines the Pydantic models used throughout TimeCapsule:
- Capsule: The scheduled message record and its lifecycle state
- Attachment/AttachmentUpload: Stored files and caller-supplied uploads
- AuditEntry: Append-only record of lifecycle actions
- Viewer: The resolved identity of whoever is asking
- CapsuleView/AttachmentView: What a viewer is allowed to see

Design Decisions:
    - Privacy tier, status and audit action are closed enums
    - Stored records are immutable (frozen=True); transitions produce new copies
    - All timestamps are timezone-aware UTC
"""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Enums
# =============================================================================


class Privacy(str, Enum):
    """
    Who may learn that a capsule exists.

    PRIVATE capsules are invisible to everyone but the owner.
    RECIPIENTS capsules are readable by the listed email addresses.
    PUBLIC capsules are readable by anyone once unlocked.
    """

    PRIVATE = "private"
    RECIPIENTS = "recipients"
    PUBLIC = "public"


class CapsuleStatus(str, Enum):
    """Lifecycle state of a capsule."""

    SCHEDULED = "scheduled"
    REVEALED = "revealed"
    CANCELLED = "cancelled"


class AuditAction(str, Enum):
    """Lifecycle actions recorded in the audit log."""

    CREATED = "created"
    REVEALED = "revealed"
    CANCELLED = "cancelled"
    DELETED = "deleted"


class Visibility(str, Enum):
    """How much of a capsule a viewer may see."""

    HIDDEN = "hidden"
    LOCKED = "locked"
    FULL = "full"


# =============================================================================
# Helpers
# =============================================================================


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_recipients(value: Any) -> list[str]:
    """
    Normalize a recipient list.

    Accepts a list of addresses or a single comma-separated string. Entries are
    stripped and lower-cased; blanks and duplicates are dropped, first
    occurrence wins.
    """
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    seen: set[str] = set()
    result: list[str] = []
    for item in value:
        if not isinstance(item, str):
            msg = f"Recipient must be a string, got {type(item).__name__}"
            raise ValueError(msg)
        email = normalize_email(item)
        if email and email not in seen:
            seen.add(email)
            result.append(email)
    return result


_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|\x00-\x1f\x7f]')


def sanitize_filename(filename: str) -> str:
    """Strip path separators, control characters and leading dots."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("", filename).strip()
    cleaned = cleaned.lstrip(".")
    return cleaned[:255]


# =============================================================================
# Identity
# =============================================================================


class Viewer(BaseModel):
    """
    A resolved, already-authenticated caller.

    Attributes:
        user_id: Stable user identifier
        email: The caller's email address, used for recipient matching
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    user_id: str = Field(..., min_length=1, description="Stable user identifier")
    email: str | None = Field(default=None, description="Caller email address")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = normalize_email(v)
        return v or None


# =============================================================================
# Stored Records
# =============================================================================


class Capsule(BaseModel):
    """
    A scheduled message gated by time and privacy tier.

    Attributes:
        id: Unique identifier, assigned at creation
        owner_id: The creating user
        title: Short display string
        message: Opaque content payload
        unlock_at: When the capsule becomes readable by time alone
        privacy: Privacy tier
        recipients: Normalized recipient emails (used by the RECIPIENTS tier)
        status: Lifecycle state
        created_at: Creation timestamp
        revealed_at: Set exactly once, when status becomes REVEALED
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Capsule identifier")
    owner_id: str = Field(..., min_length=1, description="Owning user")
    title: str = Field(..., min_length=1, max_length=200, description="Display title")
    message: str = Field(default="", description="Opaque content payload")
    unlock_at: datetime = Field(..., description="Unlock instant")
    privacy: Privacy = Field(default=Privacy.PRIVATE, description="Privacy tier")
    recipients: list[str] = Field(default_factory=list, description="Recipient emails")
    status: CapsuleStatus = Field(default=CapsuleStatus.SCHEDULED, description="Lifecycle state")
    created_at: datetime = Field(default_factory=utc_now, description="Creation time")
    revealed_at: datetime | None = Field(default=None, description="Reveal time")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            msg = "Title cannot be blank"
            raise ValueError(msg)
        return v

    @field_validator("recipients", mode="before")
    @classmethod
    def validate_recipients(cls, v: Any) -> list[str]:
        return normalize_recipients(v)

    @field_validator("unlock_at", "created_at", "revealed_at")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_lifecycle(self) -> "Capsule":
        """revealed_at is present exactly when status is REVEALED."""
        if (self.revealed_at is not None) != (self.status == CapsuleStatus.REVEALED):
            msg = "revealed_at must be set if and only if status is 'revealed'"
            raise ValueError(msg)
        if self.unlock_at < self.created_at:
            msg = "unlock_at cannot be earlier than created_at"
            raise ValueError(msg)
        return self

    def is_owned_by(self, user_id: str) -> bool:
        return self.owner_id == user_id


class Attachment(BaseModel):
    """
    A file bound to a capsule.

    Attributes:
        id: Attachment identifier
        capsule_id: Owning capsule
        filename: Sanitized display filename
        content_type: MIME type supplied at upload
        storage_path: Opaque key into the blob store
        checksum: SHA256 hex digest of the stored bytes (advisory, may be absent)
        size_bytes: Size of the stored bytes
        created_at: When the attachment was stored
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    capsule_id: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    content_type: str = Field(default="application/octet-stream")
    storage_path: str = Field(..., min_length=1)
    checksum: str | None = Field(default=None)
    size_bytes: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class AttachmentUpload(BaseModel):
    """Caller-supplied file to store alongside a new capsule."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    filename: str = Field(..., min_length=1)
    content_type: str = Field(default="application/octet-stream", min_length=1)
    data: bytes = Field(..., description="Raw file bytes")

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        cleaned = sanitize_filename(v)
        if not cleaned:
            msg = f"Invalid filename: {v!r}"
            raise ValueError(msg)
        return cleaned

    @field_validator("content_type")
    @classmethod
    def validate_content_type(cls, v: str) -> str:
        return v.strip().lower()


class AuditEntry(BaseModel):
    """An append-only record of a lifecycle action."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: int | None = Field(default=None, description="Row id, assigned by the store")
    capsule_id: str = Field(..., min_length=1)
    action: AuditAction
    performed_by: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


# =============================================================================
# Views
# =============================================================================


class AttachmentView(BaseModel):
    """Attachment metadata as returned to a viewer who may see content."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    filename: str
    content_type: str
    size_bytes: int
    checksum: str | None = None

    @classmethod
    def from_attachment(cls, attachment: Attachment) -> "AttachmentView":
        return cls(
            id=attachment.id,
            filename=attachment.filename,
            content_type=attachment.content_type,
            size_bytes=attachment.size_bytes,
            checksum=attachment.checksum,
        )


class CapsuleView(BaseModel):
    """
    A capsule shaped by an access decision.

    LOCKED views carry only the placeholder fields; message, preview,
    recipients and attachments stay None.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    title: str
    privacy: Privacy
    status: CapsuleStatus
    unlock_at: datetime
    created_at: datetime
    revealed_at: datetime | None = None
    visibility: Visibility
    is_owner: bool = False
    is_unlocked: bool = False
    attachment_count: int = 0
    message: str | None = None
    preview: str | None = None
    recipients: list[str] | None = None
    attachments: list[AttachmentView] | None = None


class AttachmentContent(BaseModel):
    """Bytes of an attachment released after the access check."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    attachment: AttachmentView
    data: bytes
