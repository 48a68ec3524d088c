"""
Storage module for TimeCapsule.

This module provides SQLite-based persistence for capsules, attachment
records and the audit log, plus the blob stores that hold attachment bytes.

Tables:
    - capsules: Capsule records (indexed by owner and creation time)
    - attachments: Attachment records (indexed by capsule, cascade on delete)
    - audit_log: Append-only lifecycle actions

Design principles:
    - Conditional writes: lifecycle transitions only apply from 'scheduled'
    - Atomic: multi-row writes share one transaction
    - Integrity: attachment checksums allow verification of stored bytes
"""

from timecapsule.store.blobs import BlobStore, FileBlobStore, MemoryBlobStore
from timecapsule.store.db import CapsuleDB, compute_hash, generate_id

__all__ = [
    "BlobStore",
    "CapsuleDB",
    "FileBlobStore",
    "MemoryBlobStore",
    "compute_hash",
    "generate_id",
]
