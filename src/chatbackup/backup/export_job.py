"""
Export (backup) job.

Steps:
    1. Enumerate database and attachment files from the storage handle.
    2. For each file: generate a per-item key, compress if configured for
       that kind of file, encrypt into the staging directory, upload.
    3. Build the manifest, database items first, in enumeration order.
    4. Encrypt the manifest with the job-level key and upload it under the
       configured manifest record name.

The job-level key comes from the delegate. If the delegate has none, the
job generates one; the host must read it from job.backup_encryption_key
after success, or the backup cannot be restored.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from chatbackup.backup.errors import EncryptionError, EnumerationError
from chatbackup.backup.job import BackupJob
from chatbackup.backup.manifest import ManifestContents, ManifestItem, encode_manifest

if TYPE_CHECKING:
    from chatbackup.backup.backup_io import BackupIO

logger = logging.getLogger(__name__)

MANIFEST_UPLOAD_FILE = "manifest.enc"


@dataclass
class ExportSource:
    """A local file scheduled for export."""

    path: Path
    relative_file_path: str | None
    is_database: bool
    compress: bool


class BackupExportJob(BackupJob):
    """
    Backs up a data store to a remote store.

    Attributes:
        manifest: The committed manifest, set once the job succeeds.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.manifest: ManifestContents | None = None

    def _run(self, backup_io: BackupIO) -> None:
        self.update_progress("Preparing backup", 0.0)

        key = self.manifest_encryption_key()
        if key is None:
            logger.info(f"No backup key supplied; job {self.job_id} generated one")
            key = backup_io.generate_encryption_key()
        self.backup_encryption_key = key

        sources = self.enumerate_sources()
        logger.info(f"Backing up {len(sources)} files")

        items = self._export_items(sources, backup_io)
        manifest = ManifestContents(
            database_items=[item for item, src in zip(items, sources) if src.is_database],
            attachments_items=[item for item, src in zip(items, sources) if not src.is_database],
        )

        self.check_cancelled()
        self.update_progress("Uploading manifest", len(sources) / (len(sources) + 1))
        self._upload_manifest(manifest, key, backup_io)
        self.manifest = manifest

        self.succeed()

    def enumerate_sources(self) -> list[ExportSource]:
        """
        List the files to export, database files first.

        Raises:
            EnumerationError: If the storage handle cannot list its files.
        """
        compression = self.settings.compression
        try:
            database_files = self.storage.database_files()
            attachment_files = self.storage.attachment_files()
        except Exception as e:
            raise EnumerationError(f"Could not list files to back up: {e}") from e

        sources = [
            ExportSource(
                path=Path(path),
                relative_file_path=Path(path).name,
                is_database=True,
                compress=compression.database_files,
            )
            for path in database_files
        ]
        sources.extend(
            ExportSource(
                path=Path(path),
                relative_file_path=relative_path,
                is_database=False,
                compress=compression.attachments,
            )
            for path, relative_path in attachment_files
        )
        return sources

    def _export_items(self, sources: list[ExportSource], backup_io: BackupIO) -> list[ManifestItem]:
        """Export every source, returning items in the same order."""
        total = len(sources)
        results: list[ManifestItem | None] = [None] * total
        completed = 0
        counter_lock = threading.Lock()

        def export_one(index: int) -> None:
            nonlocal completed
            self.check_cancelled()
            results[index] = self.export_file(sources[index], backup_io)
            with counter_lock:
                completed += 1
                done = completed
            self.update_progress(f"Backed up {done} of {total} files", done / (total + 1))

        max_workers = self.settings.transfer.max_workers
        if max_workers <= 1 or total <= 1:
            for index in range(total):
                export_one(index)
        else:
            with ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix=f"backup-export-{self.job_id[:8]}",
            ) as executor:
                futures = [executor.submit(export_one, index) for index in range(total)]
                try:
                    for future in as_completed(futures):
                        future.result()
                except Exception:
                    # First failure stops the rest
                    for future in futures:
                        future.cancel()
                    raise

        return [item for item in results if item is not None]

    def export_file(self, source: ExportSource, backup_io: BackupIO) -> ManifestItem:
        """
        Compress, encrypt and upload one file.

        Staged files are removed once the upload finishes.

        Raises:
            EncryptionError: If compression or encryption fails.
            TransferError: If the upload fails.
        """
        key = backup_io.generate_encryption_key()
        stage_base = self.job_temp_dir_path / uuid.uuid4().hex
        staged: list[Path] = []

        try:
            plaintext_path = source.path
            uncompressed_length = None
            if source.compress:
                compressed_path = stage_base.with_suffix(".gz")
                staged.append(compressed_path)
                uncompressed_length = backup_io.compress_file(source.path, compressed_path)
                plaintext_path = compressed_path

            encrypted_path = stage_base.with_suffix(".enc")
            staged.append(encrypted_path)
            backup_io.encrypt_file(plaintext_path, encrypted_path, key)

            item = ManifestItem(
                record_name="",
                encryption_key=key,
                relative_file_path=source.relative_file_path,
                download_file_path=str(encrypted_path),
                uncompressed_data_length=uncompressed_length,
            )
            item.record_name = backup_io.upload_file(encrypted_path)
            item.download_file_path = None
        finally:
            for path in staged:
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"Could not remove staged file {path}: {e}")

        logger.debug(f"Exported {source.path} as {item.record_name}")
        return item

    def _upload_manifest(self, manifest: ManifestContents, key: bytes, backup_io: BackupIO) -> None:
        manifest_path = self.job_temp_dir_path / MANIFEST_UPLOAD_FILE
        record_name = self.settings.transfer.manifest_record_name

        try:
            manifest_path.write_bytes(backup_io.encrypt_data(encode_manifest(manifest), key))
        except OSError as e:
            raise EncryptionError(f"Could not stage manifest: {e}") from e

        backup_io.upload_file(manifest_path, record_name)
        logger.info(
            f"Committed manifest {record_name}: {len(manifest.database_items)} database files, "
            f"{len(manifest.attachments_items)} attachments"
        )
