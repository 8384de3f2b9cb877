"""
Secret envelope: per-context encryption of individual secret values.

This module provides:
- KeyProvider: Abstract source of master key material per project
- StaticKeyProvider: Single master key shared by all projects
- Envelope: seal/open of secret values bound to their SecretRef

Architecture:
- Master key material is supplied externally (KMS, config) and never persisted
- A subkey is derived per (project, environment) with HKDF-SHA256
- The full (project, environment, key) triple is the AEAD associated data, so a
  ciphertext cannot be replayed under another secret's identity even when the
  derived key is the same
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Dict, Optional, Set, Tuple

from .crypto import NONCE_SIZE, AesGcmCipher, EncryptedData, SecureKey, derive_key, generate_random_bytes
from .errors import NonceReuseError
from .models import SecretRef

KDF_LABEL = "envizo-vault/v1"
DEFAULT_NONCE_WINDOW = 65536


class KeyProvider(ABC):
    """External key-management seam."""

    @abstractmethod
    def material(self, project_id: str) -> SecureKey:
        """Return the 32-byte master key material for a project."""
        ...


class StaticKeyProvider(KeyProvider):
    """Uses one master key for every project."""

    def __init__(self, master_key: SecureKey) -> None:
        self._master_key = master_key

    def material(self, project_id: str) -> SecureKey:
        return self._master_key


class _NonceLedger:
    """Bounded record of recently issued nonces for one derived key."""

    __slots__ = ("_seen", "_order", "_window")

    def __init__(self, window: int) -> None:
        self._seen: Set[bytes] = set()
        self._order: Deque[bytes] = deque()
        self._window = window

    def claim(self, nonce: bytes) -> bool:
        if nonce in self._seen:
            return False
        self._seen.add(nonce)
        self._order.append(nonce)
        if len(self._order) > self._window:
            self._seen.discard(self._order.popleft())
        return True


class Envelope:
    """
    Seals and opens secret values.

    Nonces are random per seal call. Each nonce issued for a derived key is
    remembered (within a bounded window) and a repeat is rejected with
    NonceReuseError before any ciphertext is produced.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        nonce_source: Optional[Callable[[], bytes]] = None,
        nonce_window: int = DEFAULT_NONCE_WINDOW,
    ) -> None:
        self._key_provider = key_provider
        self._nonce_source = nonce_source or (lambda: generate_random_bytes(NONCE_SIZE))
        self._nonce_window = nonce_window
        self._ledgers: Dict[str, _NonceLedger] = {}
        # seal() is synchronous and may be called from worker threads
        self._lock = threading.Lock()

    def context_key(self, ref: SecretRef) -> SecureKey:
        """Derive the encryption key for a secret's (project, environment)."""
        info = f"{KDF_LABEL}/{ref.project_id}/{ref.environment.value}".encode("utf-8")
        return derive_key(self._key_provider.material(ref.project_id), info)

    def seal(self, plaintext: str | bytes, ref: SecretRef) -> Tuple[bytes, bytes]:
        """
        Encrypt a value for the given secret identity.

        Returns:
            (ciphertext, nonce); the ciphertext includes the auth tag

        Raises:
            NonceReuseError: If the nonce source repeats a nonce for this key
            CryptoError: If key material is invalid
        """
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        key = self.context_key(ref)
        nonce = self._nonce_source()

        with self._lock:
            ledger = self._ledgers.get(key.fingerprint())
            if ledger is None:
                ledger = self._ledgers[key.fingerprint()] = _NonceLedger(self._nonce_window)
            if not ledger.claim(nonce):
                raise NonceReuseError(f"Nonce reused for context {ref.project_id}/{ref.environment}")

        encrypted = AesGcmCipher.encrypt(key, data, ref.associated_data(), nonce=nonce)
        return encrypted.ciphertext, encrypted.nonce

    def open(self, ciphertext: bytes, nonce: bytes, ref: SecretRef) -> bytes:
        """
        Decrypt a value sealed for the given secret identity.

        Raises:
            DecryptionError: If the ciphertext, nonce or identity does not authenticate
        """
        key = self.context_key(ref)
        encrypted = EncryptedData(nonce=nonce, ciphertext=ciphertext)
        return AesGcmCipher.decrypt(key, encrypted, ref.associated_data())
