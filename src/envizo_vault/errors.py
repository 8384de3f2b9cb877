"""
Exception classes for secret store operations.

Every failure surfaced by the vault is one of the typed errors below so that
callers can branch on the kind instead of parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class DenialReason(Enum):
    """Reason code attached to a denied operation (stored in the audit log)."""

    NOT_MEMBER = "not_member"  # Actor is not assigned to the project
    ROLE_INSUFFICIENT = "role_insufficient"  # Role does not permit the operation
    INSECURE_VALUE = "insecure_value"  # Plaintext withheld from viewers
    NOT_FOUND = "not_found"  # Project, environment, key or version absent
    INVALID_INPUT = "invalid_input"  # Key, value or comment failed validation
    CONFLICT = "conflict"  # Version precondition or lock wait failed
    CORRUPTED = "corrupted_secret"  # Ciphertext failed authentication; value withheld

    def __str__(self) -> str:
        return self.value


class VaultError(Exception):
    """Base exception for all secret store operations."""

    pass


class CryptoError(VaultError):
    """Cryptographic operation failed (encryption, key derivation, key size)."""

    pass


class DecryptionError(CryptoError):
    """Ciphertext failed authentication under the supplied key and context."""

    pass


class NonceReuseError(CryptoError):
    """A nonce was issued twice for the same derived key."""

    pass


class NotFoundError(VaultError):
    """Project, environment, secret or version does not exist."""

    pass


class ForbiddenError(VaultError):
    """Access policy denied the operation."""

    def __init__(self, message: str, reason: DenialReason) -> None:
        super().__init__(message)
        self.reason = reason


class CorruptedSecretError(VaultError):
    """Stored ciphertext could not be decrypted; fatal for that read only."""

    pass


class ParseError(VaultError):
    """Malformed import payload."""

    def __init__(self, message: str, line: Optional[int] = None) -> None:
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
        self.line = line


class ConflictError(VaultError):
    """Write raced another write or its version precondition failed. Retryable."""

    pass


class ValidationError(VaultError):
    """Key, value, comment or identifier failed validation."""

    pass


class StorageError(VaultError):
    """Storage backend error (database, in-memory, etc.)."""

    pass


class ConfigError(VaultError):
    """Configuration error."""

    pass


class AnalysisError(VaultError):
    """Analyzer output failed validation."""

    pass
