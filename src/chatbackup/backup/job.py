"""
Backup job lifecycle.

BackupJob is the base of the export and import jobs. It owns the job's
staging directory, the state machine, and delivery of delegate callbacks.

State Machine:
    NOT_STARTED -> RUNNING -> SUCCEEDED | FAILED | CANCELLED
    NOT_STARTED -> CANCELLED

    Terminal states are absorbing. Every transition is a compare-and-set
    under the job lock, so among concurrent succeed(), fail_with_error() and
    cancel() calls exactly one wins and the others are no-ops.

Delegate Contract:
    Exactly one of backup_job_did_succeed() or backup_job_did_fail() is
    called, UNLESS the job was never started or was cancelled. Progress
    updates are accepted only while the job is running and are queued ahead
    of any terminal callback.

    All delegate calls go through one callback executor. The default is a
    process-wide single-worker thread pool, so callbacks are serialized and
    never reentrant no matter which thread produced them. A custom executor
    must also be single-threaded.

    The job holds only a weak reference to its delegate. Once the delegate
    is garbage collected, callbacks are dropped.

Cancellation:
    cancel() may be called from any thread. It is cooperative: running jobs
    check for it before each file transfer and before committing or applying
    a manifest. In-flight BackupIO calls are not interrupted.
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
import weakref
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from chatbackup.backup.errors import (
    BackupCancelledError,
    BackupError,
    BackupStateError,
    EncryptionError,
    ManifestDecodeError,
    TempDirCreationError,
    TransferError,
)
from chatbackup.backup.manifest import ManifestContents, decode_manifest
from chatbackup.config.settings import Settings

if TYPE_CHECKING:
    from chatbackup.backup.backup_io import BackupIO
    from chatbackup.backup.storage import StorageHandle

logger = logging.getLogger(__name__)

ManifestSuccess = Callable[[ManifestContents], None]
ManifestFailure = Callable[[BackupError], None]

MANIFEST_DOWNLOAD_FILE = "manifest.enc"


class JobState(Enum):
    """Lifecycle states of a backup job."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


class BackupJobDelegate(Protocol):
    """Callbacks a host implements to drive and observe backup jobs."""

    def backup_encryption_key(self) -> bytes | None:
        """Return the host's backup key, or None to let an export job make one."""
        ...

    def backup_job_did_succeed(self, job: BackupJob) -> None: ...

    def backup_job_did_fail(self, job: BackupJob, error: BackupError) -> None: ...

    def backup_job_did_update(
        self,
        job: BackupJob,
        description: str | None,
        progress: float | None,
    ) -> None: ...


_default_executor: ThreadPoolExecutor | None = None
_default_executor_lock = threading.Lock()


def default_callback_executor() -> Executor:
    """Get the process-wide executor that delivers delegate callbacks."""
    global _default_executor
    with _default_executor_lock:
        if _default_executor is None:
            _default_executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="backup-callbacks",
            )
        return _default_executor


class _ManifestCompletion:
    """Success/failure continuation pair of which exactly one may fire."""

    def __init__(self, success: ManifestSuccess, failure: ManifestFailure) -> None:
        self._success = success
        self._failure = failure
        self._fired = False
        self._lock = threading.Lock()

    def _claim(self) -> bool:
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            return True

    def succeed(self, manifest: ManifestContents) -> None:
        if self._claim():
            self._success(manifest)

    def fail(self, error: BackupError) -> None:
        if self._claim():
            self._failure(error)


class BackupJob:
    """
    Base class for backup and restore jobs.

    Subclasses implement _run(), which performs the job's steps and calls
    succeed() when done. Any BackupError raised from _run() fails the job.

    Attributes:
        storage: Data store being backed up or restored into.
        settings: Settings the job was created with.
        job_id: Unique identifier of this job.
        job_temp_dir_path: Staging directory owned by this job.
        backup_encryption_key: Job-level key protecting the manifest.
        error: Error reported to the delegate, if the job failed.
    """

    def __init__(
        self,
        delegate: BackupJobDelegate,
        storage: StorageHandle,
        settings: Settings | None = None,
        callback_executor: Executor | None = None,
    ) -> None:
        self._delegate_ref = weakref.ref(delegate)
        self.storage = storage
        self.settings = settings or Settings()
        self.job_id = uuid.uuid4().hex
        self.job_temp_dir_path = Path(self.settings.temp_root) / self.job_id
        self.backup_encryption_key: bytes | None = None
        self.error: BackupError | None = None

        self._callback_executor = callback_executor or default_callback_executor()
        self._lock = threading.RLock()
        self._state = JobState.NOT_STARTED

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.job_id} {self.state.value}>"

    @property
    def delegate(self) -> BackupJobDelegate | None:
        return self._delegate_ref()

    @property
    def state(self) -> JobState:
        with self._lock:
            return self._state

    @property
    def is_complete(self) -> bool:
        """True once the job succeeded, failed or was cancelled."""
        with self._lock:
            return self._state.is_terminal

    def is_cancelled(self) -> bool:
        with self._lock:
            return self._state is JobState.CANCELLED

    def check_cancelled(self) -> None:
        """
        Stop the current step if the job was cancelled.

        Raises:
            BackupCancelledError: If cancel() has been called.
        """
        if self.is_cancelled():
            raise BackupCancelledError(f"Job {self.job_id} was cancelled")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, backup_io: BackupIO) -> None:
        """
        Run the job on the calling thread.

        Returns when the job reaches a terminal state. Delegate callbacks may
        still be pending on the callback executor; see flush_callbacks().

        Raises:
            BackupStateError: If the job was already started.
        """
        with self._lock:
            if self._state is JobState.CANCELLED:
                logger.info(f"Job {self.job_id} was cancelled before it started")
                return
            if self._state is not JobState.NOT_STARTED:
                raise BackupStateError(f"Job {self.job_id} was already started")
            self._state = JobState.RUNNING

        logger.info(f"Starting {type(self).__name__} {self.job_id}")

        try:
            if not self.ensure_job_temp_dir():
                raise TempDirCreationError(
                    f"Could not create staging directory {self.job_temp_dir_path}"
                )
            self._run(backup_io)
        except BackupCancelledError:
            self.cancel()
        except BackupError as e:
            self.fail_with_error(e)
        except Exception as e:
            logger.exception(f"Job {self.job_id} failed unexpectedly")
            self.fail_with_error(BackupError(str(e)))
        finally:
            # A cancel() racing with directory creation can leave it behind
            if self.is_complete:
                self._cleanup_temp_dir()

    def _run(self, backup_io: BackupIO) -> None:
        raise NotImplementedError

    def ensure_job_temp_dir(self) -> bool:
        """
        Create the staging directory if it does not exist yet.

        Returns:
            True if the directory exists afterwards.
        """
        try:
            self.job_temp_dir_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not create staging directory {self.job_temp_dir_path}: {e}")
            return False
        return True

    def cancel(self) -> None:
        """
        Cancel the job.

        Safe to call from any thread and any number of times. The delegate is
        not notified.
        """
        if not self._finish(JobState.CANCELLED):
            return
        logger.info(f"Job {self.job_id} cancelled")

    def succeed(self) -> None:
        """Mark the running job as succeeded and notify the delegate."""
        if not self._finish(JobState.SUCCEEDED):
            return
        logger.info(f"Job {self.job_id} succeeded")

        def notify(delegate: BackupJobDelegate) -> None:
            delegate.backup_job_did_succeed(self)

        self._dispatch(notify)

    def fail_with_error(self, error: BaseException) -> None:
        """
        Mark the running job as failed and notify the delegate.

        Non-BackupError exceptions are wrapped in a generic BackupError.
        Cancellation errors cancel the job instead.
        """
        if isinstance(error, BackupCancelledError):
            self.cancel()
            return
        if not isinstance(error, BackupError):
            error = BackupError(str(error))

        if not self._finish(JobState.FAILED):
            return
        self.error = error
        logger.error(f"Job {self.job_id} failed ({error.kind.value}): {error}")

        def notify(delegate: BackupJobDelegate) -> None:
            delegate.backup_job_did_fail(self, error)

        self._dispatch(notify)

    def fail_with_error_description(self, description: str) -> None:
        self.fail_with_error(BackupError(description))

    def update_progress(
        self,
        description: str | None = None,
        progress: float | None = None,
    ) -> None:
        """
        Report progress to the delegate.

        Args:
            description: Human-readable step description.
            progress: Fraction complete, clamped to 0.0-1.0.
        """
        if progress is not None:
            progress = max(0.0, min(1.0, float(progress)))

        def notify(delegate: BackupJobDelegate) -> None:
            delegate.backup_job_did_update(self, description, progress)

        # Queued under the lock so no terminal transition can come between
        # the state check and the submit
        with self._lock:
            if self._state is not JobState.RUNNING:
                return
            self._dispatch(notify)

    def flush_callbacks(self, timeout: float | None = None) -> None:
        """Block until every delegate callback queued so far has run."""
        self._callback_executor.submit(lambda: None).result(timeout=timeout)

    def _finish(self, terminal_state: JobState) -> bool:
        """
        Move to a terminal state if no other terminal transition won.

        Success and failure require a running job; cancellation is allowed
        from NOT_STARTED as well.
        """
        with self._lock:
            if self._state.is_terminal:
                return False
            if terminal_state is not JobState.CANCELLED and self._state is not JobState.RUNNING:
                logger.warning(
                    f"Ignoring {terminal_state.value} for job {self.job_id} in state {self._state.value}"
                )
                return False
            self._state = terminal_state

        self._cleanup_temp_dir()
        return True

    def _cleanup_temp_dir(self) -> None:
        if self.job_temp_dir_path.exists():
            shutil.rmtree(self.job_temp_dir_path, ignore_errors=True)

    def _dispatch(self, callback: Callable[[BackupJobDelegate], None]) -> None:
        def deliver() -> None:
            delegate = self.delegate
            if delegate is None:
                return
            try:
                callback(delegate)
            except Exception:
                logger.exception(f"Delegate callback for job {self.job_id} raised")

        self._callback_executor.submit(deliver)

    # -------------------------------------------------------------------------
    # Manifest
    # -------------------------------------------------------------------------

    def manifest_encryption_key(self) -> bytes | None:
        """Key protecting the manifest: the job's own, else the delegate's."""
        if self.backup_encryption_key is not None:
            return self.backup_encryption_key
        delegate = self.delegate
        if delegate is None:
            return None
        return delegate.backup_encryption_key()

    def download_and_process_manifest(
        self,
        success: ManifestSuccess,
        failure: ManifestFailure,
        backup_io: BackupIO,
    ) -> None:
        """
        Download, decrypt and parse the backup's manifest.

        Exactly one of success or failure is called, on the calling thread.
        Job state is not changed; callers decide whether a failure fails the
        job. Item contents are not downloaded.

        Failures passed to failure():
            EncryptionError: No backup key is available.
            TransferError: The manifest could not be downloaded.
            ManifestDecodeError: Wrong key, or the manifest is malformed.
            BackupCancelledError: The job was cancelled meanwhile.
            BackupError: Any other unexpected exception, wrapped.
        """
        completion = _ManifestCompletion(success, failure)
        manifest_path = self.job_temp_dir_path / MANIFEST_DOWNLOAD_FILE

        try:
            key = self.manifest_encryption_key()
            if key is None:
                raise EncryptionError("No backup encryption key available")
            self.check_cancelled()
            if not self.ensure_job_temp_dir():
                raise TempDirCreationError(
                    f"Could not create staging directory {self.job_temp_dir_path}"
                )
            self.check_cancelled()

            record_name = self.settings.transfer.manifest_record_name
            logger.info(f"Downloading manifest {record_name}")
            backup_io.download_file(record_name, manifest_path)
            self.check_cancelled()

            try:
                ciphertext = manifest_path.read_bytes()
            except OSError as e:
                raise TransferError(f"Could not read downloaded manifest: {e}", record_name) from e

            try:
                plaintext = backup_io.decrypt_data(ciphertext, key)
            except EncryptionError as e:
                raise ManifestDecodeError(
                    "Could not decrypt manifest: key mismatch or corrupted manifest"
                ) from e

            manifest = decode_manifest(plaintext)
        except BackupError as e:
            logger.warning(f"Manifest processing failed for job {self.job_id}: {e}")
            completion.fail(e)
            return
        except Exception as e:
            logger.exception(f"Manifest processing failed unexpectedly for job {self.job_id}")
            completion.fail(BackupError(str(e)))
            return
        finally:
            try:
                manifest_path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Could not remove {manifest_path}: {e}")
            if self.is_complete:
                self._cleanup_temp_dir()

        logger.info(
            f"Manifest lists {len(manifest.database_items)} database files and "
            f"{len(manifest.attachments_items)} attachments"
        )
        completion.succeed(manifest)
