"""
Configuration for the secret store.

All configuration is loaded from environment variables, after reading a
.env file if one is present.

Variables:
    ENVIZO_MASTER_KEY       base64 of 32 random bytes (required)
    DATABASE_URL            PostgreSQL DSN; selects the Postgres backend when set
    ENVIZO_AUDIT_BACKEND    "memory" or "postgres" (defaults to the storage backend)
    ENVIZO_LOCK_TIMEOUT     seconds to wait for a per-key write lock (default 10)
    ENVIZO_MAX_VALUE_BYTES  maximum encoded secret size (default 65536)

Usage:
    from envizo_vault.config import load_config
    cfg = load_config()
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

from .crypto import SecureKey
from .errors import ConfigError, CryptoError
from .validation import DEFAULT_MAX_VALUE_BYTES

DEFAULT_LOCK_TIMEOUT = 10.0
_BACKENDS = ("memory", "postgres")


@dataclass(frozen=True)
class VaultConfig:
    master_key: SecureKey = field(repr=False)
    database_url: Optional[str] = field(default=None, repr=False)
    audit_backend: str = "memory"
    lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT
    max_value_bytes: int = DEFAULT_MAX_VALUE_BYTES

    @property
    def storage_backend(self) -> str:
        return "postgres" if self.database_url else "memory"

    def __post_init__(self) -> None:
        if self.audit_backend not in _BACKENDS:
            raise ConfigError(f"Invalid audit backend: {self.audit_backend!r}")
        if self.audit_backend == "postgres" and not self.database_url:
            raise ConfigError("Postgres audit backend requires DATABASE_URL")
        if self.lock_timeout is not None and self.lock_timeout <= 0:
            raise ConfigError("Lock timeout must be positive")
        if self.max_value_bytes <= 0:
            raise ConfigError("Max value size must be positive")


def _number(env: Mapping[str, str], name: str, default, kind):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def load_config(
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[str] = None,
) -> VaultConfig:
    """
    Build a VaultConfig.

    Args:
        env: Mapping to read instead of os.environ (no .env loading then)
        dotenv_path: Explicit .env path; defaults to searching from the cwd

    Raises:
        ConfigError: If a variable is missing or invalid
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    encoded = env.get("ENVIZO_MASTER_KEY")
    if not encoded:
        raise ConfigError("ENVIZO_MASTER_KEY must be set (base64 of 32 bytes)")
    try:
        master_key = SecureKey.from_base64(encoded)
    except CryptoError as e:
        raise ConfigError(f"Invalid ENVIZO_MASTER_KEY: {e}")

    database_url = env.get("DATABASE_URL") or None
    audit_backend = (env.get("ENVIZO_AUDIT_BACKEND") or ("postgres" if database_url else "memory")).lower()

    return VaultConfig(
        master_key=master_key,
        database_url=database_url,
        audit_backend=audit_backend,
        lock_timeout=_number(env, "ENVIZO_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT, float),
        max_value_bytes=_number(env, "ENVIZO_MAX_VALUE_BYTES", DEFAULT_MAX_VALUE_BYTES, int),
    )
