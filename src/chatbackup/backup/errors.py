"""
Error types for backup and restore jobs.

Every failure a job can report to its delegate is a BackupError subclass
tagged with a BackupErrorKind, so hosts can branch on the kind without
matching on exception classes.
"""

from __future__ import annotations

from enum import Enum


class BackupErrorKind(Enum):
    """Kinds of backup failure."""

    GENERIC = "generic"
    TEMP_DIR_CREATION_FAILED = "temp_dir_creation_failed"
    ENUMERATION_FAILED = "enumeration_failed"
    ENCRYPTION_FAILED = "encryption_failed"
    TRANSFER_FAILED = "transfer_failed"
    MANIFEST_DECODE_FAILED = "manifest_decode_failed"
    CANCELLED = "cancelled"


class BackupError(Exception):
    """Base exception for backup and restore errors."""

    kind: BackupErrorKind = BackupErrorKind.GENERIC

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class TempDirCreationError(BackupError):
    """Raised when the job staging directory cannot be created."""

    kind = BackupErrorKind.TEMP_DIR_CREATION_FAILED


class EnumerationError(BackupError):
    """Raised when the data store's files cannot be listed."""

    kind = BackupErrorKind.ENUMERATION_FAILED


class EncryptionError(BackupError):
    """Raised when encryption, decryption or (de)compression fails."""

    kind = BackupErrorKind.ENCRYPTION_FAILED


class TransferError(BackupError):
    """
    Raised when an upload or download fails.

    Attributes:
        record_name: Remote record involved, if known.
    """

    kind = BackupErrorKind.TRANSFER_FAILED

    def __init__(self, message: str, record_name: str | None = None) -> None:
        super().__init__(message)
        self.record_name = record_name


class ManifestDecodeError(BackupError):
    """Raised when a manifest is malformed or was encrypted with another key."""

    kind = BackupErrorKind.MANIFEST_DECODE_FAILED


class BackupCancelledError(BackupError):
    """
    Raised inside a job when it notices it was cancelled.

    Never passed to a delegate's failure callback.
    """

    kind = BackupErrorKind.CANCELLED


class BackupStateError(BackupError):
    """Raised when a job is driven out of order (e.g. started twice)."""

    pass
