"""
Tests for the export and import jobs.

Tests cover:
- Exporting a data store to a remote store
- Restoring a data store from a remote store
- Cancellation during transfers
- Failure reporting for each error kind
"""

import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from chatbackup.backup import (
    BackupErrorKind,
    BackupExportJob,
    BackupImportJob,
    BackupIO,
    JobState,
    LocalDirectoryRemoteStore,
    LocalStorage,
    ManifestDecodeError,
    TempDirCreationError,
    TransferError,
    decode_manifest,
    encode_manifest,
)
from chatbackup.backup.crypto import decrypt_data, encrypt_data, generate_key
from chatbackup.config.settings import Settings


class RecordingDelegate:
    """Delegate that records every callback."""

    def __init__(self, key: bytes | None = None) -> None:
        self.key = key
        self.successes: list = []
        self.failures: list = []
        self.updates: list = []

    def backup_encryption_key(self):
        return self.key

    def backup_job_did_succeed(self, job):
        self.successes.append(job)

    def backup_job_did_fail(self, job, error):
        self.failures.append((job, error))

    def backup_job_did_update(self, job, description, progress):
        self.updates.append((description, progress))


class CancellingRemoteStore(LocalDirectoryRemoteStore):
    """Remote store that cancels a job after a number of transfers."""

    def __init__(self, root, cancel_after: int) -> None:
        super().__init__(root)
        self.cancel_after = cancel_after
        self.job = None
        self.uploads = 0
        self.downloads = 0

    def upload(self, path, record_name):
        self.uploads += 1
        if self.uploads == self.cancel_after:
            self.job.cancel()
        return super().upload(path, record_name)

    def download(self, record_name, dst):
        self.downloads += 1
        if self.downloads == self.cancel_after:
            self.job.cancel()
        return super().download(record_name, dst)


class BackupTestCase(unittest.TestCase):
    """Shared fixtures: a populated data store and an empty remote store."""

    DATABASE_FILES = {
        "chat.db": b"SQLite format 3\x00" + b"\x01" * 8000,
        "chat.db-shm": b"\x00" * 1024,
        "chat.db-wal": b"wal" * 700,
    }
    ATTACHMENT_FILES = {
        "0a/photo1.jpg": b"\xff\xd8\xff" + b"a" * 3000,
        "0a/photo2.jpg": b"\xff\xd8\xff" + b"b" * 2000,
        "1f/voice.m4a": b"m4a" * 900,
        "9c/doc.pdf": b"%PDF-1.7" + b"c" * 500,
        "sticker.webp": b"RIFF" + b"d" * 100,
    }

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        root = Path(self.temp_dir)
        self.settings = Settings(temp_root=str(root / "staging"))
        self.storage = LocalStorage(root / "source")
        self.remote_store = LocalDirectoryRemoteStore(root / "remote")
        self.backup_io = BackupIO(self.remote_store)
        self.key = generate_key()

        self._populate(self.storage)

    def tearDown(self):
        """Clean up temporary directories."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _populate(self, storage: LocalStorage) -> None:
        storage.database_dir.mkdir(parents=True)
        for name, data in self.DATABASE_FILES.items():
            (storage.database_dir / name).write_bytes(data)
        for relative_path, data in self.ATTACHMENT_FILES.items():
            path = storage.attachments_dir / relative_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

    def _export(self, delegate=None, backup_io=None) -> BackupExportJob:
        delegate = delegate or RecordingDelegate(self.key)
        job = BackupExportJob(delegate, self.storage, settings=self.settings)
        job.start(backup_io or self.backup_io)
        job.flush_callbacks(timeout=5)
        return job

    def _read_remote_manifest(self, key: bytes):
        path = self.remote_store.root / self.settings.transfer.manifest_record_name
        return decode_manifest(decrypt_data(path.read_bytes(), key))

    def _write_remote_manifest(self, manifest, key: bytes) -> None:
        path = self.remote_store.root / self.settings.transfer.manifest_record_name
        path.write_bytes(encrypt_data(encode_manifest(manifest), key))


class TestBackupExportJob(BackupTestCase):
    """Tests for BackupExportJob."""

    def test_export_database_and_attachments(self):
        """Test exporting 3 database files and 5 attachments."""
        delegate = RecordingDelegate(self.key)

        job = self._export(delegate)

        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertEqual(delegate.successes, [job])
        self.assertEqual(delegate.failures, [])
        self.assertGreaterEqual(len(delegate.updates), 8)

        self.assertEqual(len(job.manifest.database_items), 3)
        self.assertEqual(len(job.manifest.attachments_items), 5)

    def test_manifest_committed_to_remote(self):
        """Test that the uploaded manifest matches the job's manifest."""
        job = self._export()

        remote_manifest = self._read_remote_manifest(self.key)

        self.assertEqual(
            [i.record_name for i in remote_manifest.all_items()],
            [i.record_name for i in job.manifest.all_items()],
        )
        for item in remote_manifest.all_items():
            self.assertTrue(self.remote_store.exists(item.record_name))

    def test_items_in_enumeration_order(self):
        """Test that items keep the storage handle's order."""
        job = self._export()

        self.assertEqual(
            [i.relative_file_path for i in job.manifest.database_items],
            sorted(self.DATABASE_FILES),
        )
        self.assertEqual(
            [i.relative_file_path for i in job.manifest.attachments_items],
            sorted(self.ATTACHMENT_FILES),
        )

    def test_per_item_keys_are_distinct(self):
        """Test that no two items share a key, nor the job key."""
        job = self._export()

        keys = [item.encryption_key for item in job.manifest.all_items()]

        self.assertEqual(len(set(keys)), len(keys))
        self.assertNotIn(self.key, keys)

    def test_database_files_compressed(self):
        """Test that only database items record an uncompressed size by default."""
        job = self._export()

        for item in job.manifest.database_items:
            self.assertEqual(
                item.uncompressed_data_length,
                len(self.DATABASE_FILES[item.relative_file_path]),
            )
        for item in job.manifest.attachments_items:
            self.assertIsNone(item.uncompressed_data_length)

    def test_compression_settings(self):
        """Test that compression follows the settings per item kind."""
        self.settings.compression.database_files = False
        self.settings.compression.attachments = True

        job = self._export()

        self.assertTrue(all(not i.is_compressed for i in job.manifest.database_items))
        self.assertTrue(all(i.is_compressed for i in job.manifest.attachments_items))

    def test_remote_blobs_are_encrypted(self):
        """Test that no plaintext reaches the remote store."""
        job = self._export()

        for item in job.manifest.attachments_items:
            blob = (self.remote_store.root / item.record_name).read_bytes()
            self.assertNotEqual(blob, self.ATTACHMENT_FILES[item.relative_file_path])
            self.assertNotIn(b"\xff\xd8\xff", blob)

    def test_items_not_staged_after_export(self):
        """Test that staged files are cleaned up."""
        job = self._export()

        self.assertTrue(all(not i.is_staged for i in job.manifest.all_items()))
        self.assertFalse(job.job_temp_dir_path.exists())

    def test_generates_key_without_delegate_key(self):
        """Test that the job owns a new key when the delegate has none."""
        delegate = RecordingDelegate(None)

        job = self._export(delegate)

        self.assertEqual(delegate.successes, [job])
        self.assertEqual(len(job.backup_encryption_key), 32)
        manifest = self._read_remote_manifest(job.backup_encryption_key)
        self.assertEqual(manifest.item_count, 8)

    def test_uses_delegate_key(self):
        """Test that the delegate's key protects the manifest."""
        job = self._export()

        self.assertEqual(job.backup_encryption_key, self.key)

    def test_empty_store(self):
        """Test that an empty data store produces an empty manifest."""
        self.storage = LocalStorage(Path(self.temp_dir) / "empty")

        job = self._export()

        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertEqual(job.manifest.item_count, 0)

    def test_parallel_transfers_keep_order(self):
        """Test that bounded parallel transfers keep enumeration order."""
        self.settings.transfer.max_workers = 4

        job = self._export()

        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertEqual(
            [i.relative_file_path for i in job.manifest.attachments_items],
            sorted(self.ATTACHMENT_FILES),
        )

    def test_cancel_mid_transfer(self):
        """Test that cancelling during uploads suppresses all callbacks."""
        remote_store = CancellingRemoteStore(self.remote_store.root, cancel_after=3)
        delegate = RecordingDelegate(self.key)
        job = BackupExportJob(delegate, self.storage, settings=self.settings)
        remote_store.job = job

        job.start(BackupIO(remote_store))
        job.flush_callbacks(timeout=5)

        self.assertTrue(job.is_complete)
        self.assertEqual(job.state, JobState.CANCELLED)
        self.assertEqual(delegate.successes, [])
        self.assertEqual(delegate.failures, [])
        self.assertEqual(remote_store.uploads, 3)
        self.assertFalse(remote_store.exists(self.settings.transfer.manifest_record_name))
        self.assertIsNone(job.manifest)

    def test_upload_failure(self):
        """Test that a failed upload fails the job once."""
        remote_store = MagicMock()
        remote_store.upload.side_effect = TransferError("503 from blob service")
        delegate = RecordingDelegate(self.key)

        job = self._export(delegate, BackupIO(remote_store))

        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(delegate.successes, [])
        self.assertEqual(len(delegate.failures), 1)
        self.assertEqual(delegate.failures[0][1].kind, BackupErrorKind.TRANSFER_FAILED)
        self.assertEqual(remote_store.upload.call_count, 1)

    def test_enumeration_failure(self):
        """Test that a storage handle that cannot list files fails the job."""
        self.storage = MagicMock()
        self.storage.database_files.side_effect = OSError("database locked")
        delegate = RecordingDelegate(self.key)

        job = self._export(delegate)

        self.assertEqual(len(delegate.failures), 1)
        self.assertEqual(delegate.failures[0][1].kind, BackupErrorKind.ENUMERATION_FAILED)

    def test_missing_source_file(self):
        """Test that a file vanishing mid-backup is an encryption failure."""
        self.storage = MagicMock()
        self.storage.database_files.return_value = [Path(self.temp_dir) / "gone.db"]
        self.storage.attachment_files.return_value = []
        delegate = RecordingDelegate(self.key)

        job = self._export(delegate)

        self.assertEqual(len(delegate.failures), 1)
        self.assertEqual(delegate.failures[0][1].kind, BackupErrorKind.ENCRYPTION_FAILED)

    def test_temp_dir_failure_before_transfer(self):
        """Test that staging failure stops the job before any upload."""
        blocker = Path(self.temp_dir) / "blocker"
        blocker.write_text("file")
        self.settings.temp_root = str(blocker)
        remote_store = MagicMock()
        delegate = RecordingDelegate(self.key)

        job = self._export(delegate, BackupIO(remote_store))

        self.assertEqual(job.state, JobState.FAILED)
        self.assertIsInstance(delegate.failures[0][1], TempDirCreationError)
        remote_store.upload.assert_not_called()


class TestBackupImportJob(BackupTestCase):
    """Tests for BackupImportJob."""

    def setUp(self):
        super().setUp()
        self.export_job = self._export()
        self.target = LocalStorage(Path(self.temp_dir) / "restored")

    def _import(self, key=None, backup_io=None, target=None):
        delegate = RecordingDelegate(key or self.key)
        job = BackupImportJob(delegate, target or self.target, settings=self.settings)
        job.start(backup_io or self.backup_io)
        job.flush_callbacks(timeout=5)
        return job, delegate

    def test_restore_round_trip(self):
        """Test that a restore reproduces every file byte-for-byte."""
        job, delegate = self._import()

        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertEqual(delegate.successes, [job])
        self.assertGreaterEqual(len(delegate.updates), 8)
        for name, data in self.DATABASE_FILES.items():
            self.assertEqual((self.target.database_dir / name).read_bytes(), data)
        for relative_path, data in self.ATTACHMENT_FILES.items():
            self.assertEqual((self.target.attachments_dir / relative_path).read_bytes(), data)

    def test_restore_replaces_database(self):
        """Test that stale database files are removed on restore."""
        self.target.database_dir.mkdir(parents=True)
        (self.target.database_dir / "old.db").write_bytes(b"stale")

        job, _ = self._import()

        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertFalse((self.target.database_dir / "old.db").exists())

    def test_restore_manifest_available(self):
        """Test that the job exposes the processed manifest."""
        job, _ = self._import()

        self.assertEqual(job.manifest.item_count, 8)
        self.assertFalse(job.job_temp_dir_path.exists())
        for item in job.manifest.all_items():
            self.assertFalse(item.is_staged)

    def test_wrong_key(self):
        """Test that restoring with another key fails to decode the manifest."""
        job, delegate = self._import(key=generate_key())

        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(delegate.successes, [])
        self.assertIsInstance(delegate.failures[0][1], ManifestDecodeError)
        self.assertFalse(self.target.database_dir.exists())

    def test_missing_manifest(self):
        """Test that an empty remote store fails with a transfer error."""
        empty_io = BackupIO(LocalDirectoryRemoteStore(Path(self.temp_dir) / "empty-remote"))

        job, delegate = self._import(backup_io=empty_io)

        self.assertEqual(delegate.failures[0][1].kind, BackupErrorKind.TRANSFER_FAILED)

    def test_missing_item(self):
        """Test that a missing item blob fails the restore."""
        item = self.export_job.manifest.attachments_items[2]
        self.remote_store.delete(item.record_name)

        job, delegate = self._import()

        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(delegate.failures[0][1].kind, BackupErrorKind.TRANSFER_FAILED)
        self.assertFalse(any(i.is_staged for i in job.manifest.all_items()))

    def test_size_mismatch(self):
        """Test that a compressed item inflating to the wrong size is rejected."""
        manifest = self._read_remote_manifest(self.key)
        manifest.database_items[0].uncompressed_data_length += 1
        self._write_remote_manifest(manifest, self.key)

        job, delegate = self._import()

        self.assertEqual(job.state, JobState.FAILED)
        self.assertIsInstance(delegate.failures[0][1], ManifestDecodeError)

    def test_swapped_item_key(self):
        """Test that an item encrypted with another key fails to decrypt."""
        manifest = self._read_remote_manifest(self.key)
        manifest.attachments_items[0].encryption_key = generate_key()
        self._write_remote_manifest(manifest, self.key)

        job, delegate = self._import()

        self.assertEqual(delegate.failures[0][1].kind, BackupErrorKind.ENCRYPTION_FAILED)

    def test_cancel_mid_download(self):
        """Test that cancelling during downloads suppresses all callbacks."""
        remote_store = CancellingRemoteStore(self.remote_store.root, cancel_after=4)
        delegate = RecordingDelegate(self.key)
        job = BackupImportJob(delegate, self.target, settings=self.settings)
        remote_store.job = job

        job.start(BackupIO(remote_store))
        job.flush_callbacks(timeout=5)

        self.assertEqual(job.state, JobState.CANCELLED)
        self.assertEqual(delegate.successes, [])
        self.assertEqual(delegate.failures, [])
        self.assertFalse(self.target.attachments_dir.exists())

    def test_cancel_during_manifest_download(self):
        """Test that cancelling while the manifest downloads stops the job."""
        remote_store = CancellingRemoteStore(self.remote_store.root, cancel_after=1)
        delegate = RecordingDelegate(self.key)
        job = BackupImportJob(delegate, self.target, settings=self.settings)
        remote_store.job = job

        job.start(BackupIO(remote_store))
        job.flush_callbacks(timeout=5)

        self.assertEqual(job.state, JobState.CANCELLED)
        self.assertEqual(remote_store.downloads, 1)
        self.assertIsNone(job.manifest)
        self.assertEqual(delegate.failures, [])


if __name__ == "__main__":
    unittest.main()
