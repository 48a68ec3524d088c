"""
Configuration for TimeCapsule.

Settings are plain Pydantic models loaded from YAML, the same way the CLI
accepts every other structured input. Every key has a working default, so an
empty file (or no file at all) is a valid configuration.

Example settings.yaml:
    db_path: ./capsules.db
    blob_dir: ./blobs
    max_attachment_bytes: 10485760
    allowed_content_types:
      - "image/*"
      - "audio/*"
      - "application/pdf"
"""

import logging
from fnmatch import fnmatch
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Settings(BaseModel):
    """
    Runtime settings for the capsule service and CLI.

    Attributes:
        db_path: SQLite database file (":memory:" for a throwaway store)
        blob_dir: Directory holding attachment bytes
        max_attachment_bytes: Per-file size limit
        max_attachments: Maximum files per capsule
        allowed_content_types: Glob patterns matched against MIME types
        upload_workers: Parallel blob uploads during create
        persist_reveal_on_read: Record the reveal the first time an unlocked capsule is read
        verify_checksums: Check stored bytes against their checksum on download
        preview_length: Characters of message shown in previews
        log_level: Level name for the timecapsule logger
        log_file: Optional log file path
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    db_path: str = Field(default="timecapsule.db", min_length=1)
    blob_dir: str = Field(default="blobs", min_length=1)
    max_attachment_bytes: int = Field(default=50 * 1024 * 1024, gt=0)  # 50 MB
    max_attachments: int = Field(default=20, ge=0)
    allowed_content_types: list[str] = Field(
        default_factory=lambda: ["image/*", "audio/*"],
    )
    upload_workers: int = Field(default=4, gt=0, le=32)
    persist_reveal_on_read: bool = True
    verify_checksums: bool = True
    preview_length: int = Field(default=100, ge=0)
    log_level: str = Field(default="INFO")
    log_file: str | None = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in logging.getLevelNamesMapping():
            msg = f"Unknown log level: {v}"
            raise ValueError(msg)
        return level

    @field_validator("allowed_content_types")
    @classmethod
    def validate_content_types(cls, v: list[str]) -> list[str]:
        return [pattern.strip().lower() for pattern in v if pattern.strip()]

    def content_type_allowed(self, content_type: str) -> bool:
        """Whether a MIME type matches any allowed pattern."""
        content_type = content_type.strip().lower()
        return any(fnmatch(content_type, pattern) for pattern in self.allowed_content_types)


def load_settings(path: Path | str) -> Settings:
    """
    Load settings from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return Settings.model_validate(data or {})


def load_settings_from_string(content: str) -> Settings:
    """Load settings from a YAML string."""
    data = yaml.safe_load(content)
    return Settings.model_validate(data or {})
