"""
Envizo Vault

Versioned, encrypted secret storage for project environments with role-based
access control and an append-only audit log.

Overview
--------
- **Secrets** are addressed by (project, environment, key) and never
  overwritten: every put or delete appends a new version
- **Envelope**: each value is sealed with AES-256-GCM under a key derived per
  (project, environment); the full secret identity is bound as AAD
- **Access policy**: owner / editor / viewer memberships per project
- **Audit log**: every attempt, allowed or denied, is appended in order

Quick Start
-----------
```python
import asyncio
from envizo_vault import Actor, load_config, open_vault

async def main():
    async with await open_vault(load_config()) as vault:
        owner = Actor("alice")  # becomes owner of the projects it creates
        await vault.store.create_project("proj-1", "WebApp", owner, ["development"])
        await vault.store.put("proj-1", "development", "DATABASE_URL", "postgresql://...", owner)
        current = await vault.store.get("proj-1", "development", "DATABASE_URL", owner)
        print(current.version, current.plaintext)

        payload = await vault.codec.export("proj-1", "development", "dotenv", owner)

asyncio.run(main())
```

Modules
-------
- `crypto`: AES-256-GCM and HKDF primitives
- `envelope`: per-secret seal/open and key providers
- `store`: versioned secret store
- `policy`: role-based access policy
- `audit`: append-only audit log
- `codec`: dotenv / json / yaml export and import
- `storage`, `postgres_storage`: in-memory and PostgreSQL backends
- `analysis`: pluggable configuration analysis
- `config`, `vault`: configuration and lifecycle
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    EncryptedData,
    SecureKey,
    derive_key,
    generate_random_bytes,
)
from .envelope import (
    Envelope,
    KeyProvider,
    StaticKeyProvider,
)

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    AnalysisError,
    ConfigError,
    ConflictError,
    CorruptedSecretError,
    CryptoError,
    DecryptionError,
    DenialReason,
    ForbiddenError,
    NonceReuseError,
    NotFoundError,
    ParseError,
    StorageError,
    ValidationError,
    VaultError,
)

# =============================================================================
# Model Exports
# =============================================================================

from .models import (
    Actor,
    AuditEntry,
    AuditFilter,
    Environment,
    EnvironmentId,
    Membership,
    Operation,
    Outcome,
    Project,
    Role,
    SecretRef,
    SecretStatus,
    SecretVersion,
)

# =============================================================================
# Service Exports
# =============================================================================

from .analysis import AnalysisReport, AnalysisRequest, Analyzer, HeuristicAnalyzer
from .audit import AuditLog, InMemoryAuditLog
from .classification import classify
from .codec import ExportFormat, SecretCodec
from .policy import AccessPolicy
from .storage import InMemorySecretStorage, SecretStorage
from .store import SecretStore

# =============================================================================
# PostgreSQL and Lifecycle Exports
# =============================================================================

from .config import VaultConfig, load_config
from .postgres_storage import PostgresAuditLog, PostgresSecretStorage, ensure_schema
from .vault import Vault, build_vault, open_vault

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "EncryptedData",
    "SecureKey",
    "derive_key",
    "generate_random_bytes",
    "Envelope",
    "KeyProvider",
    "StaticKeyProvider",
    # Errors
    "VaultError",
    "CryptoError",
    "DecryptionError",
    "NonceReuseError",
    "NotFoundError",
    "ForbiddenError",
    "DenialReason",
    "CorruptedSecretError",
    "ParseError",
    "ConflictError",
    "ValidationError",
    "StorageError",
    "ConfigError",
    "AnalysisError",
    # Models
    "Actor",
    "AuditEntry",
    "AuditFilter",
    "Environment",
    "EnvironmentId",
    "Membership",
    "Operation",
    "Outcome",
    "Project",
    "Role",
    "SecretRef",
    "SecretStatus",
    "SecretVersion",
    # Services
    "SecretStore",
    "SecretStorage",
    "InMemorySecretStorage",
    "AccessPolicy",
    "AuditLog",
    "InMemoryAuditLog",
    "SecretCodec",
    "ExportFormat",
    "classify",
    "Analyzer",
    "AnalysisRequest",
    "AnalysisReport",
    "HeuristicAnalyzer",
    # PostgreSQL and lifecycle
    "PostgresSecretStorage",
    "PostgresAuditLog",
    "ensure_schema",
    "VaultConfig",
    "load_config",
    "Vault",
    "build_vault",
    "open_vault",
]
