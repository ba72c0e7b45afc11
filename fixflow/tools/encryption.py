"""AES-256-GCM encryption for stored provider keys.

Stored records keep three hex strings: the ciphertext, the IV and the
authentication tag. The cipher key is a 32-byte value supplied once at
startup (``ENCRYPTION_KEY``, 64 hex chars) and passed around explicitly.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from fixflow.errors import DecryptionFailure


KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 16  # 128 bits
AUTH_TAG_LENGTH = 16

# Known key prefixes per provider
_KEY_PREFIXES: dict[str, str] = {
    "openai": "sk-",
    "anthropic": "sk-ant-",
    "google": "AIza",
    "huggingface": "hf_",
}


@dataclass(frozen=True)
class EncryptedRecord:
    """Hex-encoded ciphertext, IV and tag as stored in the database."""
    encrypted_key: str
    iv: str
    auth_tag: str


class KeyCipher:
    """Encrypts and decrypts secrets with a single process-wide key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> KeyCipher:
        """Build a cipher from a 64-character hex string."""
        if not hex_key:
            raise ValueError("ENCRYPTION_KEY is not set")
        if len(hex_key) != KEY_LENGTH * 2:
            raise ValueError("ENCRYPTION_KEY must be a 64-character hex string (32 bytes)")
        return cls(bytes.fromhex(hex_key))

    def encrypt(self, plaintext: str) -> EncryptedRecord:
        """Encrypt ``plaintext`` with a fresh random IV."""
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return EncryptedRecord(
            encrypted_key=ciphertext.hex(),
            iv=iv.hex(),
            auth_tag=tag.hex(),
        )

    def decrypt(self, encrypted_key: str, iv: str, auth_tag: str) -> str:
        """Decrypt a stored record.

        Raises:
            DecryptionFailure: if any field is malformed or the tag does not verify.
        """
        try:
            ciphertext = bytes.fromhex(encrypted_key)
            iv_bytes = bytes.fromhex(iv)
            tag = bytes.fromhex(auth_tag)
        except (TypeError, ValueError) as exc:
            raise DecryptionFailure("Encrypted record is not valid hex") from exc

        if len(tag) != AUTH_TAG_LENGTH:
            raise DecryptionFailure(f"Auth tag must be {AUTH_TAG_LENGTH} bytes, got {len(tag)}")

        try:
            plaintext = self._aead.decrypt(iv_bytes, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionFailure("Auth tag mismatch") from exc
        except ValueError as exc:
            # Raised for an out-of-range IV length
            raise DecryptionFailure(str(exc)) from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailure("Decrypted key is not valid UTF-8") from exc

    def decrypt_record(self, record: EncryptedRecord) -> str:
        return self.decrypt(record.encrypted_key, record.iv, record.auth_tag)


def generate_encryption_key() -> str:
    """Generate a new random key suitable for ``ENCRYPTION_KEY``."""
    return secrets.token_hex(KEY_LENGTH)


def looks_like_provider_key(decrypted_key: str, provider: str) -> bool:
    """Basic format check of a decrypted key. Does not call the provider."""
    if not decrypted_key or len(decrypted_key) < 20:
        return False
    prefix = _KEY_PREFIXES.get(provider)
    if prefix is None:
        return False
    return decrypted_key.startswith(prefix)
