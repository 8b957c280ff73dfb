"""
Import (restore) job.

Steps:
    1. Download, decrypt and validate the manifest.
    2. Download every item, database items first, and decrypt it into the
       staging directory. Compressed items are inflated and their size is
       checked against the manifest.
    3. Hand the staged manifest to the storage handle to put files in place.

The manifest is decrypted with the delegate's backup key.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from chatbackup.backup.errors import BackupError, ManifestDecodeError
from chatbackup.backup.job import BackupJob
from chatbackup.backup.manifest import ManifestContents, ManifestItem

if TYPE_CHECKING:
    from chatbackup.backup.backup_io import BackupIO

logger = logging.getLogger(__name__)


class BackupImportJob(BackupJob):
    """
    Restores a data store from a remote store.

    Attributes:
        manifest: The downloaded manifest, set once it has been processed.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.manifest: ManifestContents | None = None

    def _run(self, backup_io: BackupIO) -> None:
        self.update_progress("Downloading manifest", 0.0)

        received: list[ManifestContents] = []
        errors: list[BackupError] = []
        self.download_and_process_manifest(received.append, errors.append, backup_io)
        if errors:
            # A BackupCancelledError here leaves the job cancelled
            raise errors[0]

        manifest = received[0]
        self.manifest = manifest

        try:
            self._download_items(manifest, backup_io)

            self.check_cancelled()
            self.update_progress(
                "Restoring files", manifest.item_count / (manifest.item_count + 1)
            )
            try:
                self.storage.apply_restore(manifest)
            except BackupError:
                raise
            except Exception as e:
                raise BackupError(f"Could not apply restore: {e}") from e
        finally:
            # Staged files go away with the staging directory
            for item in manifest.all_items():
                item.download_file_path = None

        self.succeed()

    def _download_items(self, manifest: ManifestContents, backup_io: BackupIO) -> None:
        total = manifest.item_count
        for index, item in enumerate(manifest.all_items(), start=1):
            self.check_cancelled()
            self.download_item(item, backup_io)
            self.update_progress(f"Restored {index} of {total} files", index / (total + 1))

    def download_item(self, item: ManifestItem, backup_io: BackupIO) -> None:
        """
        Download and decrypt one item, setting its download_file_path.

        Raises:
            TransferError: If the download fails.
            EncryptionError: If decryption or decompression fails.
            ManifestDecodeError: If the inflated size does not match the manifest.
        """
        stage_base = self.job_temp_dir_path / uuid.uuid4().hex
        encrypted_path = stage_base.with_suffix(".enc")
        decrypted_path = stage_base.with_suffix(".dec")

        backup_io.download_file(item.record_name, encrypted_path)
        try:
            backup_io.decrypt_file(encrypted_path, decrypted_path, item.encryption_key)
        finally:
            encrypted_path.unlink(missing_ok=True)

        if not item.is_compressed:
            item.download_file_path = str(decrypted_path)
            return

        inflated_path = stage_base.with_suffix(".bin")
        try:
            size = backup_io.decompress_file(decrypted_path, inflated_path)
        finally:
            decrypted_path.unlink(missing_ok=True)

        if size != item.uncompressed_data_length:
            raise ManifestDecodeError(
                f"Item {item.record_name} inflated to {size} bytes, "
                f"manifest says {item.uncompressed_data_length}"
            )
        item.download_file_path = str(inflated_path)
        logger.debug(f"Downloaded {item.record_name} ({size} bytes)")
