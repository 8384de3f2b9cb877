"""
Vault handle: one owner for the storage, audit log, envelope and services.

Components are built once by open_vault() and passed by reference; closing
the vault releases the database pool if one was opened.

Usage:
    async with await open_vault(load_config()) as vault:
        await vault.store.put("proj-1", "development", "API_URL", "...", actor)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import asyncpg

from .analysis import AnalysisReport, Analyzer, HeuristicAnalyzer, analyze_environment
from .audit import AuditLog, InMemoryAuditLog
from .codec import SecretCodec
from .config import VaultConfig
from .envelope import Envelope, KeyProvider, StaticKeyProvider
from .errors import StorageError
from .models import Actor
from .policy import AccessPolicy
from .postgres_storage import PostgresAuditLog, PostgresSecretStorage, ensure_schema
from .storage import InMemorySecretStorage, SecretStorage
from .store import EnvironmentLike, SecretStore

logger = logging.getLogger(__name__)


@dataclass
class Vault:
    store: SecretStore
    codec: SecretCodec
    audit: AuditLog
    analyzer: Analyzer
    pool: Optional[asyncpg.Pool] = None

    async def analyze(self, project_id: str, environment: EnvironmentLike, actor: Actor) -> AnalysisReport:
        return await analyze_environment(self.store, self.analyzer, project_id, environment, actor)

    async def close(self) -> None:
        await self.store.close()
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def __aenter__(self) -> Vault:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def build_vault(
    storage: SecretStorage,
    audit: AuditLog,
    key_provider: KeyProvider,
    policy: Optional[AccessPolicy] = None,
    analyzer: Optional[Analyzer] = None,
    lock_timeout: Optional[float] = None,
    max_value_bytes: Optional[int] = None,
    pool: Optional[asyncpg.Pool] = None,
) -> Vault:
    """Wire already-constructed backends into a Vault."""
    kwargs = {} if max_value_bytes is None else {"max_value_bytes": max_value_bytes}
    store = SecretStore(
        storage=storage,
        envelope=Envelope(key_provider),
        audit=audit,
        policy=policy,
        lock_timeout=lock_timeout,
        **kwargs,
    )
    return Vault(
        store=store,
        codec=SecretCodec(store, **kwargs),
        audit=audit,
        analyzer=analyzer or HeuristicAnalyzer(),
        pool=pool,
    )


async def open_vault(
    config: VaultConfig,
    key_provider: Optional[KeyProvider] = None,
    policy: Optional[AccessPolicy] = None,
    analyzer: Optional[Analyzer] = None,
) -> Vault:
    """
    Build a Vault from configuration.

    Opens (and owns) an asyncpg pool when DATABASE_URL is configured and
    creates the schema if missing.
    """
    pool = None
    if config.database_url:
        try:
            pool = await asyncpg.create_pool(config.database_url)
        except Exception as e:
            raise StorageError(f"Failed to connect to PostgreSQL: {e}") from e
        if pool is None:
            raise StorageError("Failed to create connection pool")
        await ensure_schema(pool)

    storage: SecretStorage = PostgresSecretStorage(pool) if pool is not None else InMemorySecretStorage()
    audit: AuditLog = PostgresAuditLog(pool) if config.audit_backend == "postgres" else InMemoryAuditLog()
    logger.info("Opened vault (storage=%s, audit=%s)", config.storage_backend, config.audit_backend)

    return build_vault(
        storage=storage,
        audit=audit,
        key_provider=key_provider or StaticKeyProvider(config.master_key),
        policy=policy,
        analyzer=analyzer,
        lock_timeout=config.lock_timeout,
        max_value_bytes=config.max_value_bytes,
        pool=pool,
    )
