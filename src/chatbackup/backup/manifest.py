"""
Manifest data model for chat backups.

A manifest lists every file in a backup: the remote record that holds its
encrypted blob, the key that blob was encrypted with, and enough metadata to
put it back in place on restore.

Serialized Form:
    {
        "database_files": [
            {"record_name": "...", "encryption_key": "<base64>",
             "relative_file_path": "chat.db", "data_size": 40960}
        ],
        "attachment_files": [
            {"record_name": "...", "encryption_key": "<base64>",
             "relative_file_path": "ab/cd/photo.jpg"}
        ]
    }

    relative_file_path and data_size are omitted when absent. data_size is
    only present for compressed blobs and holds the uncompressed length.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from chatbackup.backup.errors import ManifestDecodeError

MANIFEST_KEY_DATABASE_FILES = "database_files"
MANIFEST_KEY_ATTACHMENT_FILES = "attachment_files"
MANIFEST_KEY_RECORD_NAME = "record_name"
MANIFEST_KEY_ENCRYPTION_KEY = "encryption_key"
MANIFEST_KEY_RELATIVE_FILE_PATH = "relative_file_path"
MANIFEST_KEY_DATA_SIZE = "data_size"


@dataclass
class ManifestItem:
    """
    One backed-up file.

    Attributes:
        record_name: Remote identifier of the encrypted blob.
        encryption_key: Key used for this item only.
        relative_file_path: Logical path of the file, for items that need one.
        download_file_path: Local path while the item is materialized on disk.
        uncompressed_data_length: Original size, set only for compressed blobs.
    """

    record_name: str
    encryption_key: bytes
    relative_file_path: str | None = None
    download_file_path: str | None = None
    uncompressed_data_length: int | None = None

    @property
    def is_staged(self) -> bool:
        """True while the item's bytes are present in a local file."""
        return self.download_file_path is not None

    @property
    def is_compressed(self) -> bool:
        return self.uncompressed_data_length is not None

    @property
    def has_relative_path(self) -> bool:
        return self.relative_file_path is not None

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the item to its manifest entry.

        The local staging path is never serialized.

        Raises:
            ValueError: If the item has no record name.
        """
        if not self.record_name:
            raise ValueError("Manifest item has no record name")

        data: dict[str, Any] = {
            MANIFEST_KEY_RECORD_NAME: self.record_name,
            MANIFEST_KEY_ENCRYPTION_KEY: base64.b64encode(self.encryption_key).decode("ascii"),
        }
        if self.relative_file_path is not None:
            data[MANIFEST_KEY_RELATIVE_FILE_PATH] = self.relative_file_path
        if self.uncompressed_data_length is not None:
            data[MANIFEST_KEY_DATA_SIZE] = self.uncompressed_data_length
        return data

    @classmethod
    def from_dict(cls, data: Any) -> ManifestItem:
        """
        Create an item from a manifest entry.

        Raises:
            ManifestDecodeError: If the entry is missing fields or has bad values.
        """
        if not isinstance(data, dict):
            raise ManifestDecodeError("Manifest entry is not an object")

        record_name = data.get(MANIFEST_KEY_RECORD_NAME)
        if not isinstance(record_name, str) or not record_name:
            raise ManifestDecodeError("Manifest entry has no record name")

        encoded_key = data.get(MANIFEST_KEY_ENCRYPTION_KEY)
        if not isinstance(encoded_key, str) or not encoded_key:
            raise ManifestDecodeError(f"Manifest entry {record_name} has no encryption key")
        try:
            encryption_key = base64.b64decode(encoded_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ManifestDecodeError(
                f"Manifest entry {record_name} has an invalid encryption key"
            ) from e

        relative_file_path = data.get(MANIFEST_KEY_RELATIVE_FILE_PATH)
        if relative_file_path is not None and not isinstance(relative_file_path, str):
            raise ManifestDecodeError(f"Manifest entry {record_name} has an invalid file path")

        data_size = data.get(MANIFEST_KEY_DATA_SIZE)
        # bool is an int subclass
        if data_size is not None and (
            isinstance(data_size, bool) or not isinstance(data_size, int) or data_size < 0
        ):
            raise ManifestDecodeError(f"Manifest entry {record_name} has an invalid data size")

        return cls(
            record_name=record_name,
            encryption_key=encryption_key,
            relative_file_path=relative_file_path,
            uncompressed_data_length=data_size,
        )


@dataclass
class ManifestContents:
    """
    Items of a backup, split by kind.

    Database items are always restored before attachment items.
    """

    database_items: list[ManifestItem] = field(default_factory=list)
    attachments_items: list[ManifestItem] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.database_items) + len(self.attachments_items)

    def all_items(self) -> Iterator[ManifestItem]:
        """Iterate database items, then attachment items."""
        yield from self.database_items
        yield from self.attachments_items

    def to_dict(self) -> dict[str, Any]:
        """Convert the manifest to its serialized form."""
        return {
            MANIFEST_KEY_DATABASE_FILES: [item.to_dict() for item in self.database_items],
            MANIFEST_KEY_ATTACHMENT_FILES: [item.to_dict() for item in self.attachments_items],
        }

    @classmethod
    def from_dict(cls, data: Any) -> ManifestContents:
        """
        Create a manifest from its serialized form.

        Raises:
            ManifestDecodeError: If the document does not have the expected shape.
        """
        if not isinstance(data, dict):
            raise ManifestDecodeError("Manifest is not an object")

        database_files = data.get(MANIFEST_KEY_DATABASE_FILES)
        attachment_files = data.get(MANIFEST_KEY_ATTACHMENT_FILES, [])
        if not isinstance(database_files, list):
            raise ManifestDecodeError("Manifest has no database files list")
        if not isinstance(attachment_files, list):
            raise ManifestDecodeError("Manifest attachment files is not a list")

        return cls(
            database_items=[ManifestItem.from_dict(entry) for entry in database_files],
            attachments_items=[ManifestItem.from_dict(entry) for entry in attachment_files],
        )


def encode_manifest(contents: ManifestContents) -> bytes:
    """Serialize a manifest to UTF-8 JSON."""
    return json.dumps(contents.to_dict(), indent=2).encode("utf-8")


def decode_manifest(data: bytes) -> ManifestContents:
    """
    Parse a manifest from UTF-8 JSON.

    Raises:
        ManifestDecodeError: If the data is not valid JSON or not a manifest.
    """
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestDecodeError(f"Manifest is not valid JSON: {e}") from e
    return ManifestContents.from_dict(document)
