"""
Capsule Service for TimeCapsule.

The service is the orchestration layer every caller goes through. It
coordinates between:
- Access Evaluator: decides what a viewer may see
- CapsuleDB: capsule and attachment records
- BlobStore: attachment bytes
- AuditLog: append-only lifecycle record

Read Flow (get, download_attachment):
    1. Load capsule (and attachment) records
    2. Evaluate access at clock.now()
    3. HIDDEN -> NotFoundError, LOCKED -> placeholder / LockedError, FULL -> content
    4. Optionally persist the observed reveal (conditional, idempotent)

Create Flow:
    1. Validate input (unlock time, attachments against settings)
    2. Upload all blobs in parallel; on any failure delete them all
    3. Write capsule, attachment rows and the 'created' audit entry in one
       transaction; on failure delete the blobs

Design Principles:
    - Unlock is computed on read; there is no scheduler
    - Errors are never retried here; retrying is the caller's decision
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Iterable

from pydantic import ValidationError as PydanticValidationError

from timecapsule.access import evaluate, is_recipient, is_unlocked
from timecapsule.access.evaluator import AccessDecision
from timecapsule.audit import AuditLog, DatabaseAuditLog
from timecapsule.clock import Clock, SystemClock
from timecapsule.config import Settings
from timecapsule.errors import (
    AttachmentNotFoundError,
    AttachmentRejectedError,
    BlobStoreError,
    CapsuleNotFoundError,
    CapsuleStateError,
    CapsuleValidationError,
    LockedError,
    PermissionDeniedError,
    StorageError,
    StorageIntegrityError,
    UnlockTimeError,
)
from timecapsule.logger import logger
from timecapsule.schema import (
    Attachment,
    AttachmentContent,
    AttachmentUpload,
    AttachmentView,
    AuditAction,
    AuditEntry,
    Capsule,
    CapsuleStatus,
    CapsuleView,
    Privacy,
    Viewer,
    ensure_utc,
)
from timecapsule.store import BlobStore, CapsuleDB, FileBlobStore, MemoryBlobStore
from timecapsule.store.db import compute_hash, generate_id

# performed_by value for reveals recorded on read
SYSTEM_ACTOR = "system"


def validation_error_from_pydantic(error: PydanticValidationError) -> CapsuleValidationError:
    """Convert a Pydantic ValidationError into the first offending field."""
    details = error.errors()
    first = details[0] if details else {"loc": (), "msg": str(error)}
    field_name = ".".join(str(part) for part in first.get("loc", ())) or None
    return CapsuleValidationError(
        message=f"Invalid {field_name or 'input'}: {first.get('msg', 'invalid value')}",
        field_name=field_name,
        context={
            "errors": [
                {
                    "loc": [str(part) for part in d.get("loc", ())],
                    "msg": d.get("msg", ""),
                }
                for d in details
            ],
        },
    )


class CapsuleService:
    """
    Main entry point for capsule operations.

    Usage:
        service = CapsuleService(CapsuleDB("timecapsule.db"), FileBlobStore("blobs"))
        capsule = service.create("alice", "Hello", "...", unlock_at)
        view = service.get(capsule.id, Viewer(user_id="bob", email="bob@x.com"))

    Attributes:
        db: Capsule, attachment and audit storage
        blobs: Attachment bytes
        clock: Source of "now" for every decision
        audit: Audit log sink
        settings: Limits and behaviour switches
    """

    def __init__(
        self,
        db: CapsuleDB,
        blobs: BlobStore,
        clock: Clock | None = None,
        audit: AuditLog | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.blobs = blobs
        self.clock = clock or SystemClock()
        self.audit = audit or DatabaseAuditLog(db)
        self.settings = settings or Settings()

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock | None = None) -> "CapsuleService":
        """Build a service with the stores named in settings."""
        db = CapsuleDB(settings.db_path)
        if settings.db_path == ":memory:":
            blobs: BlobStore = MemoryBlobStore()
        else:
            blobs = FileBlobStore(settings.blob_dir)
        return cls(db, blobs, clock=clock, settings=settings)

    def close(self) -> None:
        """Close database connection."""
        self.db.close()

    def __enter__(self) -> "CapsuleService":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Create
    # =========================================================================

    def create(
        self,
        owner_id: str,
        title: str,
        message: str,
        unlock_at: datetime,
        privacy: Privacy | str = Privacy.PRIVATE,
        recipients: Iterable[str] | str | None = None,
        attachments: Iterable[AttachmentUpload | dict[str, Any]] | None = None,
    ) -> Capsule:
        """
        Create a capsule and store its attachments.

        Args:
            owner_id: The creating user
            title: Display title
            message: Content payload
            unlock_at: Must be strictly after clock.now()
            privacy: Privacy tier
            recipients: Emails (list or comma-separated string)
            attachments: Files to store with the capsule

        Returns:
            The persisted Capsule

        Raises:
            CapsuleValidationError: Bad input (UnlockTimeError, AttachmentRejectedError, ...)
            StorageError: Database or blob store failure, after rollback
        """
        now = self.clock.now()

        if not isinstance(unlock_at, datetime):
            raise CapsuleValidationError(
                message="unlock_at must be a datetime",
                field_name="unlock_at",
            )
        unlock_at = ensure_utc(unlock_at)
        if unlock_at <= now:
            raise UnlockTimeError(unlock_at=unlock_at.isoformat(), now=now.isoformat())

        try:
            tier = Privacy(privacy)
        except ValueError:
            raise CapsuleValidationError(
                message=f"Unknown privacy tier: {privacy!r}",
                field_name="privacy",
                suggestion="Use one of: private, recipients, public",
            ) from None

        try:
            capsule = Capsule(
                id=generate_id(),
                owner_id=owner_id,
                title=title,
                message=message,
                unlock_at=unlock_at,
                privacy=tier,
                recipients=recipients if recipients is None or isinstance(recipients, str) else list(recipients),
                status=CapsuleStatus.SCHEDULED,
                created_at=now,
            )
            uploads = [
                u if isinstance(u, AttachmentUpload) else AttachmentUpload.model_validate(u)
                for u in (attachments or [])
            ]
        except PydanticValidationError as e:
            raise validation_error_from_pydantic(e) from e

        self._check_uploads(uploads)

        if capsule.privacy == Privacy.RECIPIENTS and not capsule.recipients:
            logger.warning(
                "Capsule %s uses the recipients tier with no recipients; only the owner can view it",
                capsule.id,
            )

        records = []
        for upload in uploads:
            attachment_id = generate_id()
            records.append(
                Attachment(
                    id=attachment_id,
                    capsule_id=capsule.id,
                    filename=upload.filename,
                    content_type=upload.content_type,
                    storage_path=f"{capsule.id}/{attachment_id}",
                    checksum=compute_hash(upload.data),
                    size_bytes=len(upload.data),
                    created_at=now,
                )
            )

        self._upload_all(records, uploads)

        try:
            with self.db.transaction():
                self.db.insert_capsule(capsule)
                for record in records:
                    self.db.insert_attachment(record)
                self.audit.append(
                    AuditEntry(
                        capsule_id=capsule.id,
                        action=AuditAction.CREATED,
                        performed_by=owner_id,
                        timestamp=now,
                    )
                )
        except Exception:
            logger.warning("Rolling back capsule %s: record write failed", capsule.id)
            self._discard_blobs(r.storage_path for r in records)
            raise

        logger.info(
            "Created capsule %s owner=%s privacy=%s attachments=%d unlock_at=%s",
            capsule.id,
            owner_id,
            capsule.privacy.value,
            len(records),
            capsule.unlock_at.isoformat(),
        )
        return capsule

    def _check_uploads(self, uploads: list[AttachmentUpload]) -> None:
        """Apply configured count, size and content-type limits."""
        if len(uploads) > self.settings.max_attachments:
            raise AttachmentRejectedError(
                filename="",
                reason=f"{len(uploads)} attachments exceed the limit of {self.settings.max_attachments}",
            )
        for upload in uploads:
            if len(upload.data) > self.settings.max_attachment_bytes:
                raise AttachmentRejectedError(
                    filename=upload.filename,
                    reason=(
                        f"size {len(upload.data)} exceeds the limit of "
                        f"{self.settings.max_attachment_bytes} bytes"
                    ),
                )
            if not self.settings.content_type_allowed(upload.content_type):
                raise AttachmentRejectedError(
                    filename=upload.filename,
                    reason=f"content type {upload.content_type} is not allowed",
                    suggestion=f"Allowed types: {', '.join(self.settings.allowed_content_types)}",
                )

    def _upload_all(self, records: list[Attachment], uploads: list[AttachmentUpload]) -> None:
        """Store every blob, or none of them."""
        if not records:
            return

        failure: Exception | None = None
        workers = min(self.settings.upload_workers, len(records))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="blob-upload") as pool:
            futures = {
                pool.submit(self.blobs.put, record.storage_path, upload.data): record
                for record, upload in zip(records, uploads)
            }
            for future in as_completed(futures):
                error = future.exception()
                if error is not None and failure is None:
                    failure = error

        if failure is None:
            return

        logger.warning(
            "Upload failed for capsule %s; discarding %d blob(s)",
            records[0].capsule_id,
            len(records),
        )
        self._discard_blobs(r.storage_path for r in records)
        if isinstance(failure, StorageError):
            raise failure
        raise BlobStoreError(
            operation="put",
            storage_path=records[0].capsule_id,
            underlying_error=str(failure),
        ) from failure

    def _discard_blobs(self, paths: Iterable[str]) -> None:
        """Best-effort compensating cleanup; failures are logged."""
        for path in paths:
            try:
                self.blobs.delete(path)
            except Exception as e:
                logger.warning("Could not delete blob %s during cleanup: %s", path, e)

    # =========================================================================
    # Read
    # =========================================================================

    def get(self, capsule_id: str, viewer: Viewer) -> CapsuleView:
        """
        Get a capsule as the viewer is allowed to see it.

        Raises:
            CapsuleNotFoundError: Absent, or private and not owned by the viewer
        """
        capsule = self.db.get_capsule(capsule_id)
        if capsule is None:
            raise CapsuleNotFoundError(capsule_id=capsule_id)

        now = self.clock.now()
        decision = evaluate(capsule, viewer, now)
        if decision.hidden:
            logger.debug("Masking capsule %s from %s: %s", capsule_id, viewer.user_id, decision.reason)
            raise CapsuleNotFoundError(capsule_id=capsule_id)

        capsule = self._observe_reveal(capsule, now)
        return self._build_view(capsule, decision)

    def list_capsules(self, owner_id: str) -> list[CapsuleView]:
        """List the owner's capsules, newest first, with content visible."""
        owner = Viewer(user_id=owner_id)
        now = self.clock.now()
        return [
            self._build_view(capsule, evaluate(capsule, owner, now))
            for capsule in self.db.list_capsules_by_owner(owner_id)
        ]

    def list_shared(self, viewer: Viewer) -> list[CapsuleView]:
        """
        List capsules shared with the viewer: public ones plus recipient
        capsules addressed to their email. Cancelled capsules are left out.
        """
        now = self.clock.now()
        views = []
        for capsule in self.db.list_shared_candidates(viewer.user_id):
            if capsule.status == CapsuleStatus.CANCELLED:
                continue
            if capsule.privacy == Privacy.RECIPIENTS and not is_recipient(capsule, viewer):
                continue
            views.append(self._build_view(capsule, evaluate(capsule, viewer, now)))
        return views

    def download_attachment(self, attachment_id: str, viewer: Viewer) -> AttachmentContent:
        """
        Release attachment bytes after re-checking the parent capsule.

        Raises:
            AttachmentNotFoundError: Absent, or the capsule is hidden from the viewer
            LockedError: The capsule is visible but its content is still locked
            StorageIntegrityError: Stored bytes no longer match the checksum
        """
        attachment = self.db.get_attachment(attachment_id)
        if attachment is None:
            raise AttachmentNotFoundError(attachment_id=attachment_id)

        capsule = self.db.get_capsule(attachment.capsule_id)
        if capsule is None:
            raise AttachmentNotFoundError(attachment_id=attachment_id)

        now = self.clock.now()
        decision = evaluate(capsule, viewer, now)
        if decision.hidden:
            logger.debug("Masking attachment %s from %s", attachment_id, viewer.user_id)
            raise AttachmentNotFoundError(attachment_id=attachment_id)
        if not decision.content_visible:
            raise LockedError(capsule_id=capsule.id, unlock_at=capsule.unlock_at.isoformat())

        self._observe_reveal(capsule, now)

        data = self.blobs.get(attachment.storage_path)
        if self.settings.verify_checksums and attachment.checksum:
            actual = compute_hash(data)
            if actual != attachment.checksum:
                raise StorageIntegrityError(
                    operation="download_attachment",
                    storage_path=attachment.storage_path,
                    expected_checksum=attachment.checksum,
                    actual_checksum=actual,
                )

        return AttachmentContent(attachment=AttachmentView.from_attachment(attachment), data=data)

    def _build_view(self, capsule: Capsule, decision: AccessDecision) -> CapsuleView:
        attachments = self.db.list_attachments(capsule.id)
        fields: dict[str, Any] = {
            "id": capsule.id,
            "title": capsule.title,
            "privacy": capsule.privacy,
            "status": capsule.status,
            "unlock_at": capsule.unlock_at,
            "created_at": capsule.created_at,
            "revealed_at": capsule.revealed_at,
            "visibility": decision.visibility,
            "is_owner": decision.is_owner,
            "is_unlocked": decision.is_unlocked,
            "attachment_count": len(attachments),
        }
        if decision.content_visible:
            fields["message"] = capsule.message
            fields["preview"] = capsule.message[: self.settings.preview_length]
            fields["attachments"] = [AttachmentView.from_attachment(a) for a in attachments]
            if decision.is_owner:
                fields["recipients"] = list(capsule.recipients)
        return CapsuleView(**fields)

    def _observe_reveal(self, capsule: Capsule, now: datetime) -> Capsule:
        """Persist a time-based reveal seen during a read, if configured."""
        if not self.settings.persist_reveal_on_read:
            return capsule
        if capsule.status != CapsuleStatus.SCHEDULED or not is_unlocked(capsule, now):
            return capsule
        try:
            self.persist_reveal(capsule.id, SYSTEM_ACTOR)
        except StorageError as e:
            logger.warning("Could not persist reveal of capsule %s: %s", capsule.id, e)
            return capsule
        return self.db.get_capsule(capsule.id) or capsule

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def persist_reveal(self, capsule_id: str, performed_by: str = SYSTEM_ACTOR) -> bool:
        """
        Apply scheduled -> revealed once.

        The conditional update and its audit entry share a transaction, so
        concurrent callers produce exactly one 'revealed' entry.

        Returns:
            True if this call performed the transition
        """
        now = self.clock.now()
        with self.db.transaction():
            changed = self.db.mark_revealed(capsule_id, now)
            if changed:
                self.audit.append(
                    AuditEntry(
                        capsule_id=capsule_id,
                        action=AuditAction.REVEALED,
                        performed_by=performed_by,
                        timestamp=now,
                    )
                )
        if changed:
            logger.info("Revealed capsule %s (by %s)", capsule_id, performed_by)
        return changed

    def reveal(self, capsule_id: str, requester_id: str) -> Capsule:
        """
        Explicitly reveal a capsule (owner only), even before unlock time.

        Revealing an already revealed capsule is a no-op.

        Raises:
            CapsuleStateError: The capsule was cancelled
        """
        capsule = self._require_owner(capsule_id, requester_id, "reveal")
        if capsule.status == CapsuleStatus.CANCELLED:
            raise CapsuleStateError(
                capsule_id=capsule_id,
                current_status=capsule.status.value,
                requested_status=CapsuleStatus.REVEALED.value,
            )

        self.persist_reveal(capsule_id, requester_id)
        return self._reload_expecting(capsule_id, CapsuleStatus.REVEALED)

    def cancel(self, capsule_id: str, requester_id: str) -> Capsule:
        """
        Cancel a scheduled capsule (owner only). Its content is then withheld
        from everyone but the owner, permanently.

        Cancelling an already cancelled capsule is a no-op.

        Raises:
            CapsuleStateError: The capsule was already revealed
        """
        capsule = self._require_owner(capsule_id, requester_id, "cancel")
        if capsule.status == CapsuleStatus.REVEALED:
            raise CapsuleStateError(
                capsule_id=capsule_id,
                current_status=capsule.status.value,
                requested_status=CapsuleStatus.CANCELLED.value,
            )

        now = self.clock.now()
        with self.db.transaction():
            changed = self.db.mark_cancelled(capsule_id)
            if changed:
                self.audit.append(
                    AuditEntry(
                        capsule_id=capsule_id,
                        action=AuditAction.CANCELLED,
                        performed_by=requester_id,
                        timestamp=now,
                    )
                )
        if changed:
            logger.info("Cancelled capsule %s", capsule_id)
        return self._reload_expecting(capsule_id, CapsuleStatus.CANCELLED)

    def delete(self, capsule_id: str, requester_id: str) -> None:
        """
        Delete a capsule, its attachment records and their blobs (owner only).

        Raises:
            CapsuleNotFoundError: No such capsule
            PermissionDeniedError: Requester is not the owner; nothing changes
            BlobStoreError: Records are gone but some bytes could not be removed
        """
        self._require_owner(capsule_id, requester_id, "delete", mask_hidden=False)
        attachments = self.db.list_attachments(capsule_id)
        now = self.clock.now()

        with self.db.transaction():
            if not self.db.delete_capsule(capsule_id):
                raise CapsuleNotFoundError(capsule_id=capsule_id)
            self.audit.append(
                AuditEntry(
                    capsule_id=capsule_id,
                    action=AuditAction.DELETED,
                    performed_by=requester_id,
                    timestamp=now,
                )
            )

        failed: list[str] = []
        for attachment in attachments:
            try:
                self.blobs.delete(attachment.storage_path)
            except StorageError as e:
                logger.warning("Could not delete blob %s: %s", attachment.storage_path, e)
                failed.append(attachment.storage_path)

        logger.info("Deleted capsule %s (%d attachment(s))", capsule_id, len(attachments))
        if failed:
            raise BlobStoreError(
                operation="delete",
                storage_path=", ".join(failed),
                underlying_error=f"{len(failed)} blob(s) left behind after deleting capsule {capsule_id}",
            )

    def audit_trail(self, capsule_id: str, requester_id: str) -> list[AuditEntry]:
        """Audit entries for a capsule, oldest first (owner only)."""
        self._require_owner(capsule_id, requester_id, "audit")
        return self.db.list_audit(capsule_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_owner(
        self,
        capsule_id: str,
        requester_id: str,
        action: str,
        mask_hidden: bool = True,
    ) -> Capsule:
        """
        Load a capsule the requester must own.

        A non-owner gets the same not-found error as for a missing id when the
        capsule is hidden from them, unless mask_hidden is off (delete).
        """
        capsule = self.db.get_capsule(capsule_id)
        if capsule is None:
            raise CapsuleNotFoundError(capsule_id=capsule_id)
        if not capsule.is_owned_by(requester_id):
            if mask_hidden and evaluate(capsule, Viewer(user_id=requester_id), self.clock.now()).hidden:
                logger.debug("Masked %s of hidden capsule %s from %s", action, capsule_id, requester_id)
                raise CapsuleNotFoundError(capsule_id=capsule_id)
            logger.debug("Denied %s of capsule %s to %s", action, capsule_id, requester_id)
            raise PermissionDeniedError(capsule_id=capsule_id, user_id=requester_id, action=action)
        return capsule

    def _reload_expecting(self, capsule_id: str, status: CapsuleStatus) -> Capsule:
        """Re-read after a conditional update; a concurrent transition shows up here."""
        capsule = self.db.get_capsule(capsule_id)
        if capsule is None:
            raise CapsuleNotFoundError(capsule_id=capsule_id)
        if capsule.status != status:
            raise CapsuleStateError(
                capsule_id=capsule_id,
                current_status=capsule.status.value,
                requested_status=status.value,
            )
        return capsule

