"""
Remote stores for encrypted backup blobs.

A remote store only moves opaque files: it never sees plaintext and knows
nothing about manifests. Two implementations are provided:

    - LocalDirectoryRemoteStore: blobs are files in a directory (a mounted
      volume, a synced folder, or a test fixture).
    - HttpRemoteStore: blobs are resources under <base_url>/records/ and are
      written with PUT and read with GET.

Retry Policy:
    Stores do not retry. A failed transfer raises TransferError and the job
    that issued it fails; the host decides whether to run a new job.
"""

from __future__ import annotations

import logging
import re
import shutil
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote

import requests

from chatbackup.backup.errors import TransferError

logger = logging.getLogger(__name__)

# Record names end up in file names and URLs
_RECORD_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

DOWNLOAD_CHUNK_SIZE = 64 * 1024


def new_record_name() -> str:
    """Generate a fresh, unguessable record name."""
    return uuid.uuid4().hex


def validate_record_name(record_name: str) -> str:
    """
    Check that a record name is safe to use as a file name and URL segment.

    Raises:
        TransferError: If the name is empty or contains unsafe characters.
    """
    if not record_name or not _RECORD_NAME_PATTERN.match(record_name) or ".." in record_name:
        raise TransferError(f"Invalid record name: {record_name!r}", record_name=record_name)
    return record_name


class RemoteStore(ABC):
    """Interface for stores holding encrypted backup blobs."""

    @abstractmethod
    def upload(self, path: Path, record_name: str) -> str:
        """
        Upload a local file as the given record.

        Returns:
            The record name the blob was stored under.

        Raises:
            TransferError: If the upload fails.
        """

    @abstractmethod
    def download(self, record_name: str, dst: Path) -> Path:
        """
        Download a record into a local file.

        Raises:
            TransferError: If the record is missing or the download fails.
        """

    @abstractmethod
    def exists(self, record_name: str) -> bool:
        """Check whether a record exists."""

    @abstractmethod
    def delete(self, record_name: str) -> None:
        """Delete a record. Deleting a missing record is not an error."""


class LocalDirectoryRemoteStore(RemoteStore):
    """
    Remote store backed by a local directory.

    Each record is a single file named after its record name. Writes go to a
    temporary file first and are renamed into place.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def _record_path(self, record_name: str) -> Path:
        return self.root / validate_record_name(record_name)

    def upload(self, path: Path, record_name: str) -> str:
        dest = self._record_path(record_name)
        temp_path = dest.with_name(dest.name + ".tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, temp_path)
            temp_path.replace(dest)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise TransferError(f"Upload of {record_name} failed: {e}", record_name) from e

        logger.debug(f"Stored record {record_name} in {self.root}")
        return record_name

    def download(self, record_name: str, dst: Path) -> Path:
        source = self._record_path(record_name)
        if not source.exists():
            raise TransferError(f"Record not found: {record_name}", record_name)
        try:
            shutil.copyfile(source, dst)
        except OSError as e:
            raise TransferError(f"Download of {record_name} failed: {e}", record_name) from e
        return Path(dst)

    def exists(self, record_name: str) -> bool:
        return self._record_path(record_name).exists()

    def delete(self, record_name: str) -> None:
        self._record_path(record_name).unlink(missing_ok=True)


class HttpRemoteStore(RemoteStore):
    """
    Remote store speaking plain HTTP.

    Records live at <base_url>/records/<record_name>:
        PUT     upload (body is the encrypted blob)
        GET     download
        HEAD    existence check
        DELETE  removal

    Attributes:
        base_url: Root URL of the blob service.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._session: requests.Session | None = None

    def _get_session(self) -> requests.Session:
        if self._session is not None:
            return self._session

        self._session = requests.Session()
        self._session.headers.update({"Accept": "application/octet-stream"})
        if self._token:
            self._session.headers["Authorization"] = f"Bearer {self._token}"
        return self._session

    def _record_url(self, record_name: str) -> str:
        return f"{self.base_url}/records/{quote(validate_record_name(record_name))}"

    def _request(self, method: str, record_name: str, **kwargs) -> requests.Response:
        """
        Issue a request for a record and map failures to TransferError.

        Raises:
            TransferError: On connection errors, timeouts, and error statuses
                other than 404 (which callers interpret themselves).
        """
        session = self._get_session()
        url = self._record_url(record_name)

        start_time = time.time()
        try:
            response = session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise TransferError(f"Failed to connect to {self.base_url}: {e}", record_name) from e
        except requests.exceptions.Timeout as e:
            raise TransferError(f"Request for {record_name} timed out: {e}", record_name) from e
        except requests.exceptions.RequestException as e:
            raise TransferError(f"{method} {record_name} failed: {e}", record_name) from e

        duration_ms = (time.time() - start_time) * 1000
        logger.debug(f"{method} {record_name} -> {response.status_code} ({duration_ms:.0f}ms)")

        if response.status_code in (401, 403):
            raise TransferError(
                f"Blob service rejected credentials ({response.status_code})",
                record_name,
            )
        if response.status_code == 404:
            return response

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise TransferError(f"{method} {record_name} failed: {e}", record_name) from e
        return response

    def upload(self, path: Path, record_name: str) -> str:
        try:
            with open(path, "rb") as f:
                response = self._request("PUT", record_name, data=f)
        except OSError as e:
            raise TransferError(f"Could not read {path}: {e}", record_name) from e

        if response.status_code == 404:
            raise TransferError(f"Blob service has no records endpoint at {self.base_url}", record_name)
        return record_name

    def download(self, record_name: str, dst: Path) -> Path:
        response = self._request("GET", record_name, stream=True)
        if response.status_code == 404:
            raise TransferError(f"Record not found: {record_name}", record_name)

        try:
            with open(dst, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        except OSError as e:
            raise TransferError(f"Could not write {dst}: {e}", record_name) from e
        except requests.exceptions.RequestException as e:
            raise TransferError(f"Download of {record_name} interrupted: {e}", record_name) from e
        finally:
            response.close()
        return Path(dst)

    def exists(self, record_name: str) -> bool:
        response = self._request("HEAD", record_name)
        return response.status_code != 404

    def delete(self, record_name: str) -> None:
        self._request("DELETE", record_name)
