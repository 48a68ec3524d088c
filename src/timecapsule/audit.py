"""
Audit log sinks.

The capsule service appends one AuditEntry per lifecycle action. Sinks are
write-only from the service's point of view: nothing it decides depends on
what the log contains.

DatabaseAuditLog writes through the same CapsuleDB connection as the
capsule tables, so an append issued inside CapsuleDB.transaction() commits
or rolls back together with the change it records.
"""

from abc import ABC, abstractmethod

from timecapsule.logger import logger
from timecapsule.schema import AuditEntry
from timecapsule.store.db import CapsuleDB


class AuditLog(ABC):
    """Append-only sink for lifecycle actions."""

    @abstractmethod
    def append(self, entry: AuditEntry) -> AuditEntry:
        """Record an entry and return it as stored."""
        ...


class DatabaseAuditLog(AuditLog):
    """Writes entries to the audit_log table."""

    def __init__(self, db: CapsuleDB) -> None:
        self.db = db

    def append(self, entry: AuditEntry) -> AuditEntry:
        stored = self.db.append_audit(entry)
        logger.debug(
            "audit capsule=%s action=%s by=%s",
            entry.capsule_id,
            entry.action.value,
            entry.performed_by,
        )
        return stored
