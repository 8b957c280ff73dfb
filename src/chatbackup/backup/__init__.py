"""
Backup and restore engine for chatbackup.

Jobs back up a client's database and attachment files to a remote store as
individually encrypted blobs, and restore them from the encrypted manifest
that lists them.

Usage:
    from chatbackup.backup import (
        BackupExportJob,
        BackupIO,
        LocalDirectoryRemoteStore,
        LocalStorage,
    )

    backup_io = BackupIO(LocalDirectoryRemoteStore("/mnt/backups"))
    job = BackupExportJob(delegate, LocalStorage("~/.chat"))
    job.start(backup_io)
"""

from chatbackup.backup.backup_io import BackupIO
from chatbackup.backup.errors import (
    BackupCancelledError,
    BackupError,
    BackupErrorKind,
    BackupStateError,
    EncryptionError,
    EnumerationError,
    ManifestDecodeError,
    TempDirCreationError,
    TransferError,
)
from chatbackup.backup.export_job import BackupExportJob
from chatbackup.backup.import_job import BackupImportJob
from chatbackup.backup.job import BackupJob, BackupJobDelegate, JobState
from chatbackup.backup.manifest import (
    ManifestContents,
    ManifestItem,
    decode_manifest,
    encode_manifest,
)
from chatbackup.backup.remote import HttpRemoteStore, LocalDirectoryRemoteStore, RemoteStore
from chatbackup.backup.storage import LocalStorage, StorageHandle

__all__ = [
    # Jobs
    "BackupJob",
    "BackupJobDelegate",
    "BackupExportJob",
    "BackupImportJob",
    "JobState",
    # Manifest
    "ManifestItem",
    "ManifestContents",
    "encode_manifest",
    "decode_manifest",
    # Collaborators
    "BackupIO",
    "RemoteStore",
    "LocalDirectoryRemoteStore",
    "HttpRemoteStore",
    "StorageHandle",
    "LocalStorage",
    # Errors
    "BackupError",
    "BackupErrorKind",
    "BackupCancelledError",
    "BackupStateError",
    "EncryptionError",
    "EnumerationError",
    "ManifestDecodeError",
    "TempDirCreationError",
    "TransferError",
]
