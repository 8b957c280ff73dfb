"""
Encryption primitives for backup blobs.

Every file in a backup gets its own random 256-bit key. The manifest is
encrypted with the job-level key, which may be supplied by the host or
generated by the job.

Keys are raw bytes. A Fernet key is derived from them with HKDF-SHA256, so
any high-entropy key material (including a host-supplied key of another
length) maps to a valid Fernet key. Fernet authenticates every token, so a
blob decrypted with the wrong key fails instead of yielding garbage.
"""

from __future__ import annotations

import base64
import secrets
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from chatbackup.backup.errors import EncryptionError

KEY_LENGTH = 32  # 256 bits
HKDF_INFO = b"chatbackup-blob-v1"


def generate_key() -> bytes:
    """Generate a fresh random key for one item or one job."""
    return secrets.token_bytes(KEY_LENGTH)


def _fernet_for_key(key: bytes) -> Fernet:
    if not key:
        raise EncryptionError("Encryption key is empty")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,  # Fernet requires 32-byte keys
        salt=None,
        info=HKDF_INFO,
    )
    return Fernet(base64.urlsafe_b64encode(hkdf.derive(key)))


def encrypt_data(data: bytes, key: bytes) -> bytes:
    """
    Encrypt bytes with the given key.

    Raises:
        EncryptionError: If the key is unusable.
    """
    return _fernet_for_key(key).encrypt(data)


def decrypt_data(data: bytes, key: bytes) -> bytes:
    """
    Decrypt bytes produced by encrypt_data().

    Raises:
        EncryptionError: If the key does not match or the data was tampered with.
    """
    try:
        return _fernet_for_key(key).decrypt(data)
    except InvalidToken as e:
        raise EncryptionError("Could not decrypt data: wrong key or corrupted blob") from e


def encrypt_file(src: Path, dst: Path, key: bytes) -> Path:
    """
    Encrypt the file at src into dst.

    Raises:
        EncryptionError: If the source cannot be read or dst cannot be written.
    """
    try:
        plaintext = Path(src).read_bytes()
        Path(dst).write_bytes(encrypt_data(plaintext, key))
    except OSError as e:
        raise EncryptionError(f"Could not encrypt {src}: {e}") from e
    return Path(dst)


def decrypt_file(src: Path, dst: Path, key: bytes) -> Path:
    """
    Decrypt the file at src into dst.

    Raises:
        EncryptionError: If the file cannot be read, written, or decrypted.
    """
    try:
        ciphertext = Path(src).read_bytes()
    except OSError as e:
        raise EncryptionError(f"Could not read {src}: {e}") from e

    plaintext = decrypt_data(ciphertext, key)

    try:
        Path(dst).write_bytes(plaintext)
    except OSError as e:
        raise EncryptionError(f"Could not write {dst}: {e}") from e
    return Path(dst)
