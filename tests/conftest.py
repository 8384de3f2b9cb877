"""
Pytest configuration and fixtures for secret store tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
from dotenv import load_dotenv

from envizo_vault import (
    Actor,
    Envelope,
    EnvironmentId,
    InMemoryAuditLog,
    InMemorySecretStorage,
    Project,
    Role,
    SecretStore,
    SecureKey,
    StaticKeyProvider,
)
from envizo_vault.postgres_storage import PostgresAuditLog, PostgresSecretStorage, ensure_schema

PROJECT_ID = "proj-1"


@pytest.fixture
def master_key() -> SecureKey:
    return SecureKey(bytes(range(32)))


@pytest.fixture
def envelope(master_key: SecureKey) -> Envelope:
    return Envelope(StaticKeyProvider(master_key))


@pytest.fixture
def memory_storage() -> InMemorySecretStorage:
    """Create an in-memory storage instance for testing."""
    return InMemorySecretStorage()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def store(
    memory_storage: InMemorySecretStorage, envelope: Envelope, audit_log: InMemoryAuditLog
) -> SecretStore:
    return SecretStore(memory_storage, envelope, audit_log, lock_timeout=5)


@pytest.fixture
def owner() -> Actor:
    return Actor("alice")


@pytest.fixture
def editor() -> Actor:
    return Actor("bob")


@pytest.fixture
def viewer() -> Actor:
    return Actor("carol")


@pytest.fixture
def outsider() -> Actor:
    return Actor("mallory")


@pytest.fixture
async def project(store: SecretStore, owner: Actor, editor: Actor, viewer: Actor) -> Project:
    """proj-1 with all three environments, owned by alice; bob edits, carol views."""
    created = await store.create_project(
        PROJECT_ID,
        "WebApp_Frontend",
        owner,
        [EnvironmentId.DEVELOPMENT, EnvironmentId.STAGING, EnvironmentId.PRODUCTION],
    )
    await store.add_member(PROJECT_ID, editor.actor_id, Role.EDITOR, owner)
    await store.add_member(PROJECT_ID, viewer.actor_id, Role.VIEWER, owner)
    return created


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    await ensure_schema(pool)
    await pool.execute(
        "TRUNCATE TABLE vault_audit_log, vault_secret_versions, vault_project_members, vault_environments, vault_projects"
    )

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_store(pg_pool: asyncpg.Pool, envelope: Envelope) -> SecretStore:
    """SecretStore backed by PostgreSQL for both storage and audit."""
    return SecretStore(PostgresSecretStorage(pg_pool), envelope, PostgresAuditLog(pg_pool), lock_timeout=5)
