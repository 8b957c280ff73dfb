"""
Data store handles for backup jobs.

A storage handle is the job's view of the client's local data: it lists the
files to back up and, on restore, puts downloaded files back in place. Jobs
never write to the data store except through apply_restore().

Storage Structure (LocalStorage):
    root/
        database/
            chat.db
            chat.db-wal
        attachments/
            {relative path}/{file}
"""

from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from chatbackup.backup.errors import BackupError

if TYPE_CHECKING:
    from chatbackup.backup.manifest import ManifestContents, ManifestItem

logger = logging.getLogger(__name__)


class StorageHandle(ABC):
    """Interface between backup jobs and the data store being backed up."""

    @abstractmethod
    def database_files(self) -> list[Path]:
        """List database files in backup order."""

    @abstractmethod
    def attachment_files(self) -> list[tuple[Path, str]]:
        """List attachment files as (path, relative path) pairs in backup order."""

    @abstractmethod
    def apply_restore(self, manifest: ManifestContents) -> None:
        """
        Move the staged files of a downloaded manifest into the data store.

        Raises:
            BackupError: If an item is not staged or cannot be placed.
        """


class LocalStorage(StorageHandle):
    """
    Data store kept in a plain directory tree.

    Attributes:
        root: Root directory of the data store.
        database_dir: Directory holding the database files.
        attachments_dir: Directory holding attachment files.
    """

    DATABASE_DIR = "database"
    ATTACHMENTS_DIR = "attachments"

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.database_dir = self.root / self.DATABASE_DIR
        self.attachments_dir = self.root / self.ATTACHMENTS_DIR

    def database_files(self) -> list[Path]:
        if not self.database_dir.exists():
            return []
        return sorted(p for p in self.database_dir.iterdir() if p.is_file())

    def attachment_files(self) -> list[tuple[Path, str]]:
        if not self.attachments_dir.exists():
            return []
        return [
            (path, path.relative_to(self.attachments_dir).as_posix())
            for path in sorted(self.attachments_dir.rglob("*"))
            if path.is_file()
        ]

    def has_existing_data(self) -> bool:
        """Check if the store holds any files."""
        return bool(self.database_files() or self.attachment_files())

    def apply_restore(self, manifest: ManifestContents) -> None:
        # Nothing in the store is touched until every item has a valid target
        database_plan = [
            self._plan_item(item, self.database_dir) for item in manifest.database_items
        ]
        attachment_plan = [
            self._plan_item(item, self.attachments_dir) for item in manifest.attachments_items
        ]

        # Database first so attachments are only linked into a complete database
        for source, dest in database_plan:
            self._copy_into_place(source, dest)
        for source, dest in attachment_plan:
            self._copy_into_place(source, dest)

        restored = {dest for _, dest in database_plan}
        for existing in self.database_files():
            if existing.resolve() not in restored:
                logger.debug(f"Removing stale database file {existing}")
                existing.unlink()

        logger.info(
            f"Restored {len(manifest.database_items)} database files and "
            f"{len(manifest.attachments_items)} attachments into {self.root}"
        )

    def _plan_item(self, item: ManifestItem, base_dir: Path) -> tuple[Path, Path]:
        """Pair an item's staged file with its destination."""
        if item.download_file_path is None:
            raise BackupError(f"Item {item.record_name} was not downloaded")
        source = Path(item.download_file_path)
        if not source.is_file():
            raise BackupError(f"Staged file for {item.record_name} is missing: {source}")
        return source, self._destination(item, base_dir)

    def _copy_into_place(self, source: Path, dest: Path) -> None:
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as e:
            raise BackupError(f"Could not restore {dest}: {e}") from e

    def _destination(self, item: ManifestItem, base_dir: Path) -> Path:
        """Resolve where an item goes, refusing paths that escape base_dir."""
        relative = item.relative_file_path or item.record_name
        dest = (base_dir / relative).resolve()
        if not dest.is_relative_to(base_dir.resolve()):
            raise BackupError(f"Item {item.record_name} has an unsafe path: {relative}")
        return dest
