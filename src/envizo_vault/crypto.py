"""
AES-256-GCM and HKDF primitives used by the secret envelope.

This module provides:
- SecureKey: 32-byte key holder with redacted repr and best-effort zeroization
- EncryptedData: (nonce, ciphertext) pair as produced by AES-GCM
- AesGcmCipher: encrypt/decrypt with associated data
- derive_key: HKDF-SHA256 subkey derivation from master key material

Nothing here knows about projects or secrets; identity binding is the
envelope's job (see envelope.py).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import CryptoError, DecryptionError

AES_256_KEY_SIZE: int = 32
NONCE_SIZE: int = 12  # 96-bit GCM nonce
TAG_SIZE: int = 16  # Appended to every ciphertext by AESGCM


def _require_key_size(key: SecureKey) -> None:
    if len(key) != AES_256_KEY_SIZE:
        raise CryptoError(f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}")


class SecureKey:
    """
    Holder for raw key bytes.

    The bytes live in a bytearray that is overwritten when the object is
    collected. CPython gives no timing guarantee for that, and as_bytes()
    hands out immutable copies, so this limits exposure rather than
    preventing it.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise CryptoError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    @classmethod
    def from_base64(cls, encoded: str) -> SecureKey:
        """
        Parse a master key from its base64 form (as stored in ENVIZO_MASTER_KEY).

        Raises:
            CryptoError: If the text is not base64 or does not decode to 32 bytes
        """
        try:
            raw = base64.b64decode(encoded.strip(), validate=True)
        except (binascii.Error, ValueError, AttributeError) as e:
            raise CryptoError(f"Master key is not valid base64: {e}")
        if len(raw) != AES_256_KEY_SIZE:
            raise CryptoError(f"Master key must decode to {AES_256_KEY_SIZE} bytes, got {len(raw)}")
        return cls(raw)

    def as_bytes(self) -> bytes:
        return bytes(self._bytes)

    def fingerprint(self) -> str:
        """Truncated SHA-256 of the key; identifies a key without revealing it."""
        return hashlib.sha256(self._bytes).hexdigest()[:16]

    def __len__(self) -> int:
        return len(self._bytes)

    def __repr__(self) -> str:
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


@dataclass(frozen=True)
class EncryptedData:
    """Output of one AES-GCM encryption. `ciphertext` ends with the 16-byte tag."""

    nonce: bytes
    ciphertext: bytes


class AesGcmCipher:
    """Stateless AES-256-GCM operations."""

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        aad: Optional[bytes] = None,
        nonce: Optional[bytes] = None,
    ) -> EncryptedData:
        """
        Encrypt and authenticate `plaintext`, binding `aad` into the tag.

        Args:
            key: 32-byte key
            plaintext: Data to encrypt (may be empty)
            aad: Associated data that must be presented again to decrypt
            nonce: 12-byte nonce; a random one is drawn when omitted

        Raises:
            CryptoError: Wrong key or nonce size
        """
        _require_key_size(key)
        if nonce is None:
            nonce = secrets.token_bytes(NONCE_SIZE)
        elif len(nonce) != NONCE_SIZE:
            raise CryptoError(f"Invalid nonce size: expected {NONCE_SIZE}, got {len(nonce)}")

        try:
            ciphertext = AESGCM(key.as_bytes()).encrypt(nonce, plaintext, aad)
        except (TypeError, ValueError, OverflowError) as e:
            raise CryptoError(f"Encryption failed: {e}")
        return EncryptedData(nonce=nonce, ciphertext=ciphertext)

    @staticmethod
    def decrypt(
        key: SecureKey,
        encrypted: EncryptedData,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Verify and decrypt.

        Raises:
            CryptoError: Wrong key size
            DecryptionError: Tag mismatch, malformed nonce or truncated ciphertext
        """
        _require_key_size(key)
        if len(encrypted.nonce) != NONCE_SIZE or len(encrypted.ciphertext) < TAG_SIZE:
            raise DecryptionError("Decryption failed")
        try:
            return AESGCM(key.as_bytes()).decrypt(encrypted.nonce, encrypted.ciphertext, aad)
        except (InvalidTag, ValueError):
            # Same message for every failure mode
            raise DecryptionError("Decryption failed") from None


def derive_key(material: SecureKey, info: bytes, salt: Optional[bytes] = None) -> SecureKey:
    """
    HKDF-SHA256 subkey of `material` for the context label `info`.

    Distinct labels give independent keys; the same label always gives the
    same key, so nothing derived here needs to be stored.
    """
    _require_key_size(material)
    hkdf = HKDF(algorithm=hashes.SHA256(), length=AES_256_KEY_SIZE, salt=salt, info=info)
    return SecureKey(hkdf.derive(material.as_bytes()))


def generate_random_bytes(length: int) -> bytes:
    return secrets.token_bytes(length)
