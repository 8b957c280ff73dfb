"""
File-level operations used by backup jobs.

BackupIO bundles everything a job does to a single file: compression,
encryption, and transfer to or from a remote store. Jobs decide which files
to process and in what order; BackupIO only knows how.
"""

from __future__ import annotations

import gzip
import logging
import shutil
import zlib
from pathlib import Path
from typing import TYPE_CHECKING

from chatbackup.backup import crypto
from chatbackup.backup.errors import EncryptionError
from chatbackup.backup.remote import RemoteStore, new_record_name, validate_record_name

if TYPE_CHECKING:
    from chatbackup.config.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_COMPRESSION_LEVEL = 6


class BackupIO:
    """
    Encrypts, compresses and transfers individual backup files.

    Attributes:
        remote_store: Store that holds the encrypted blobs.
        compression_level: gzip level used by compress_file().
    """

    def __init__(
        self,
        remote_store: RemoteStore,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
    ) -> None:
        self.remote_store = remote_store
        self.compression_level = compression_level

    @classmethod
    def from_settings(cls, remote_store: RemoteStore, settings: Settings) -> BackupIO:
        """Create a BackupIO using the configured compression level."""
        return cls(remote_store, compression_level=settings.compression.level)

    def generate_encryption_key(self) -> bytes:
        return crypto.generate_key()

    def encrypt_data(self, data: bytes, key: bytes) -> bytes:
        return crypto.encrypt_data(data, key)

    def decrypt_data(self, data: bytes, key: bytes) -> bytes:
        return crypto.decrypt_data(data, key)

    def encrypt_file(self, src: Path, dst: Path, key: bytes) -> Path:
        return crypto.encrypt_file(src, dst, key)

    def decrypt_file(self, src: Path, dst: Path, key: bytes) -> Path:
        return crypto.decrypt_file(src, dst, key)

    def compress_file(self, src: Path, dst: Path) -> int:
        """
        gzip the file at src into dst.

        Returns:
            Size of the uncompressed file in bytes.

        Raises:
            EncryptionError: If either file cannot be accessed.
        """
        try:
            with open(src, "rb") as f_in, gzip.open(
                dst, "wb", compresslevel=self.compression_level
            ) as f_out:
                shutil.copyfileobj(f_in, f_out)
            return Path(src).stat().st_size
        except OSError as e:
            raise EncryptionError(f"Could not compress {src}: {e}") from e

    def decompress_file(self, src: Path, dst: Path) -> int:
        """
        Inflate a gzip file at src into dst.

        Returns:
            Size of the decompressed file in bytes.

        Raises:
            EncryptionError: If src is not valid gzip data or cannot be accessed.
        """
        try:
            with gzip.open(src, "rb") as f_in, open(dst, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            return Path(dst).stat().st_size
        except (OSError, EOFError, zlib.error) as e:
            # gzip.BadGzipFile is an OSError
            raise EncryptionError(f"Could not decompress {src}: {e}") from e

    def upload_file(self, path: Path, record_name: str | None = None) -> str:
        """
        Upload an (already encrypted) file.

        Args:
            path: Local file to upload.
            record_name: Record to store it under. A fresh name is generated
                when omitted.

        Returns:
            The record name of the uploaded blob.

        Raises:
            TransferError: If the upload fails.
        """
        record_name = validate_record_name(record_name) if record_name else new_record_name()
        stored_name = self.remote_store.upload(Path(path), record_name)
        logger.debug(f"Uploaded {Path(path).name} as {stored_name}")
        return stored_name

    def download_file(self, record_name: str, dst: Path) -> Path:
        """
        Download a blob into dst.

        Raises:
            TransferError: If the record is missing or the download fails.
        """
        path = self.remote_store.download(record_name, Path(dst))
        logger.debug(f"Downloaded {record_name} to {path}")
        return path
