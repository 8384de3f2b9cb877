"""
PostgreSQL storage backend for secrets and audit entries.

This module provides:
- PostgresSecretStorage: asyncpg-backed SecretStorage
- PostgresAuditLog: asyncpg-backed append-only AuditLog
- SCHEMA: DDL for the tables both classes use

Architecture:
- Database: Stores sealed secret versions (ciphertext + nonce), never plaintext
- Version monotonicity: (project_id, environment, key, version) is the primary
  key; two writers racing for the same version number collide on it and the
  loser gets ConflictError
- Audit: BIGSERIAL sequence gives insertion order per log. When both classes
  share a pool, a batch of versions and its audit entries commit in one
  transaction
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import AsyncIterator, List, Optional, Sequence

import asyncpg

from .audit import AuditLog
from .errors import ConflictError, NotFoundError, StorageError, VaultError
from .models import (
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
    SecretVersion,
)
from .storage import SecretStorage

SCHEMA = """
CREATE TABLE IF NOT EXISTS vault_projects (
    project_id  TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS vault_environments (
    project_id  TEXT NOT NULL REFERENCES vault_projects (project_id),
    environment TEXT NOT NULL CHECK (environment IN ('development', 'staging', 'production')),
    created_at  TIMESTAMPTZ NOT NULL,
    deleted_at  TIMESTAMPTZ,
    PRIMARY KEY (project_id, environment)
);

CREATE TABLE IF NOT EXISTS vault_project_members (
    project_id  TEXT NOT NULL REFERENCES vault_projects (project_id),
    actor_id    TEXT NOT NULL,
    role        TEXT NOT NULL CHECK (role IN ('owner', 'editor', 'viewer')),
    created_at  TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (project_id, actor_id)
);

CREATE INDEX IF NOT EXISTS vault_project_members_actor_idx ON vault_project_members (actor_id);

CREATE TABLE IF NOT EXISTS vault_secret_versions (
    project_id  TEXT NOT NULL,
    environment TEXT NOT NULL,
    key         TEXT NOT NULL,
    version     INTEGER NOT NULL CHECK (version >= 1),
    ciphertext  BYTEA NOT NULL,
    nonce       BYTEA NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL,
    author_id   TEXT NOT NULL,
    comment     TEXT,
    deleted     BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (project_id, environment, key, version),
    FOREIGN KEY (project_id, environment) REFERENCES vault_environments (project_id, environment)
);

CREATE TABLE IF NOT EXISTS vault_audit_log (
    sequence    BIGSERIAL PRIMARY KEY,
    timestamp   TIMESTAMPTZ NOT NULL,
    actor_id    TEXT NOT NULL,
    operation   TEXT NOT NULL,
    outcome     TEXT NOT NULL,
    project_id  TEXT,
    environment TEXT,
    key         TEXT,
    reason      TEXT,
    version     INTEGER,
    subject     TEXT
);

ALTER TABLE vault_audit_log ADD COLUMN IF NOT EXISTS subject TEXT;

CREATE INDEX IF NOT EXISTS vault_audit_log_project_idx ON vault_audit_log (project_id, sequence);
"""

_VERSION_COLUMNS = """
    project_id, environment, key, version, ciphertext, nonce,
    created_at, author_id, comment, deleted
"""

_MEMBER_COLUMNS = "project_id, actor_id, role, created_at"


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create tables if they do not exist."""
    try:
        await pool.execute(SCHEMA)
    except Exception as e:
        raise StorageError(f"Failed to create schema: {e}") from e


class PostgresSecretStorage(SecretStorage):
    """PostgreSQL storage backend for projects, memberships and secret versions."""

    def __init__(self, pool: asyncpg.Pool, owns_pool: bool = False) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
            owns_pool: Close the pool in close()
        """
        self._pool = pool
        self._owns_pool = owns_pool

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def create_project(self, project: Project, owner: Membership) -> None:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "INSERT INTO vault_projects (project_id, name, created_at) VALUES ($1, $2, $3)",
                        project.project_id,
                        project.name,
                        project.created_at,
                    )
                    for env in project.environments:
                        await conn.execute(
                            """
                            INSERT INTO vault_environments (project_id, environment, created_at, deleted_at)
                            VALUES ($1, $2, $3, $4)
                            """,
                            env.project_id,
                            env.environment.value,
                            env.created_at,
                            env.deleted_at,
                        )
                    await conn.execute(
                        """
                        INSERT INTO vault_project_members (project_id, actor_id, role, created_at)
                        VALUES ($1, $2, $3, $4)
                        """,
                        owner.project_id,
                        owner.actor_id,
                        owner.role.value,
                        owner.created_at,
                    )
        except asyncpg.UniqueViolationError:
            raise ConflictError(f"Project {project.project_id} already exists") from None
        except Exception as e:
            raise StorageError(f"Failed to create project: {e}") from e

    async def get_project(self, project_id: str) -> Optional[Project]:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT project_id, name, created_at FROM vault_projects WHERE project_id = $1",
                    project_id,
                )
                if row is None:
                    return None
                env_rows = await conn.fetch(
                    """
                    SELECT project_id, environment, created_at, deleted_at
                    FROM vault_environments WHERE project_id = $1
                    ORDER BY created_at, environment
                    """,
                    project_id,
                )
        except Exception as e:
            raise StorageError(f"Failed to get project: {e}") from e
        return self._row_to_project(row, env_rows)

    async def list_projects(self) -> List[Project]:
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch("SELECT project_id, name, created_at FROM vault_projects")
                env_rows = await conn.fetch(
                    """
                    SELECT project_id, environment, created_at, deleted_at
                    FROM vault_environments ORDER BY created_at, environment
                    """
                )
        except Exception as e:
            raise StorageError(f"Failed to list projects: {e}") from e
        projects = [
            self._row_to_project(row, [e for e in env_rows if e["project_id"] == row["project_id"]])
            for row in rows
        ]
        return sorted(projects, key=lambda p: p.project_id)

    async def create_environment(self, environment: Environment) -> None:
        try:
            await self._pool.execute(
                """
                INSERT INTO vault_environments (project_id, environment, created_at, deleted_at)
                VALUES ($1, $2, $3, $4)
                """,
                environment.project_id,
                environment.environment.value,
                environment.created_at,
                environment.deleted_at,
            )
        except asyncpg.UniqueViolationError:
            raise ConflictError(
                f"Environment {environment.environment} already exists in {environment.project_id}"
            ) from None
        except asyncpg.ForeignKeyViolationError:
            raise NotFoundError(f"Project {environment.project_id}") from None
        except Exception as e:
            raise StorageError(f"Failed to create environment: {e}") from e

    async def tombstone_environment(
        self, project_id: str, environment: EnvironmentId, deleted_at: datetime
    ) -> None:
        try:
            status = await self._pool.execute(
                """
                UPDATE vault_environments SET deleted_at = $3
                WHERE project_id = $1 AND environment = $2 AND deleted_at IS NULL
                """,
                project_id,
                environment.value,
                deleted_at,
            )
        except Exception as e:
            raise StorageError(f"Failed to delete environment: {e}") from e
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        if status.split()[-1] == "0":
            raise NotFoundError(f"Environment {project_id}/{environment}")

    # =========================================================================
    # Memberships
    # =========================================================================

    async def add_member(self, membership: Membership) -> None:
        try:
            await self._pool.execute(
                """
                INSERT INTO vault_project_members (project_id, actor_id, role, created_at)
                VALUES ($1, $2, $3, $4)
                """,
                membership.project_id,
                membership.actor_id,
                membership.role.value,
                membership.created_at,
            )
        except asyncpg.UniqueViolationError:
            raise ConflictError(
                f"Actor {membership.actor_id} is already a member of {membership.project_id}"
            ) from None
        except asyncpg.ForeignKeyViolationError:
            raise NotFoundError(f"Project {membership.project_id}") from None
        except Exception as e:
            raise StorageError(f"Failed to add member: {e}") from e

    async def get_member(self, project_id: str, actor_id: str) -> Optional[Membership]:
        try:
            row = await self._pool.fetchrow(
                f"SELECT {_MEMBER_COLUMNS} FROM vault_project_members WHERE project_id = $1 AND actor_id = $2",
                project_id,
                actor_id,
            )
        except Exception as e:
            raise StorageError(f"Failed to get member: {e}") from e
        return self._row_to_member(row) if row else None

    async def list_members(self, project_id: str) -> List[Membership]:
        try:
            rows = await self._pool.fetch(
                f"SELECT {_MEMBER_COLUMNS} FROM vault_project_members WHERE project_id = $1",
                project_id,
            )
        except Exception as e:
            raise StorageError(f"Failed to list members: {e}") from e
        return sorted((self._row_to_member(row) for row in rows), key=lambda m: m.actor_id)

    async def memberships_of(self, actor_id: str) -> List[Membership]:
        try:
            rows = await self._pool.fetch(
                f"SELECT {_MEMBER_COLUMNS} FROM vault_project_members WHERE actor_id = $1",
                actor_id,
            )
        except Exception as e:
            raise StorageError(f"Failed to list memberships: {e}") from e
        return sorted((self._row_to_member(row) for row in rows), key=lambda m: m.project_id)

    @staticmethod
    async def _lock_changeable_member(
        conn: asyncpg.Connection, project_id: str, actor_id: str
    ) -> asyncpg.Record:
        row = await conn.fetchrow(
            f"""
            SELECT {_MEMBER_COLUMNS} FROM vault_project_members
            WHERE project_id = $1 AND actor_id = $2 FOR UPDATE
            """,
            project_id,
            actor_id,
        )
        if row is None:
            raise NotFoundError(f"Actor {actor_id} is not a member of {project_id}")
        if row["role"] == Role.OWNER.value:
            raise ConflictError(f"The owner of {project_id} cannot be changed or removed")
        return row

    async def update_member(self, project_id: str, actor_id: str, role: Role) -> Membership:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await self._lock_changeable_member(conn, project_id, actor_id)
                    if row["role"] == role.value:
                        raise ConflictError(f"Actor {actor_id} already has role {role} in {project_id}")
                    await conn.execute(
                        "UPDATE vault_project_members SET role = $3 WHERE project_id = $1 AND actor_id = $2",
                        project_id,
                        actor_id,
                        role.value,
                    )
        except VaultError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update member: {e}") from e
        return replace(self._row_to_member(row), role=role)

    async def remove_member(self, project_id: str, actor_id: str) -> None:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await self._lock_changeable_member(conn, project_id, actor_id)
                    await conn.execute(
                        "DELETE FROM vault_project_members WHERE project_id = $1 AND actor_id = $2",
                        project_id,
                        actor_id,
                    )
        except VaultError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to remove member: {e}") from e

    # =========================================================================
    # Secret versions
    # =========================================================================

    async def append_versions(
        self,
        versions: Sequence[SecretVersion],
        audit: Optional[AuditLog] = None,
        entries: Sequence[AuditEntry] = (),
    ) -> None:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    for version in versions:
                        await self._insert_version(conn, version)
                    if entries:
                        if isinstance(audit, PostgresAuditLog) and audit.pool is self._pool:
                            # Same database: the entries share this transaction
                            await audit.append_many(entries, conn)
                        else:
                            await audit.append_many(entries)
        except VaultError:
            raise
        except asyncpg.UniqueViolationError:
            raise ConflictError("Secret version was written concurrently") from None
        except Exception as e:
            raise StorageError(f"Failed to append versions: {e}") from e

    @staticmethod
    async def _insert_version(conn: asyncpg.Connection, version: SecretVersion) -> None:
        # FOR SHARE blocks a concurrent tombstone until this transaction ends
        live = await conn.fetchval(
            """
            SELECT deleted_at IS NULL FROM vault_environments
            WHERE project_id = $1 AND environment = $2 FOR SHARE
            """,
            version.project_id,
            version.environment.value,
        )
        if not live:
            raise NotFoundError(f"Environment {version.project_id}/{version.environment}")
        latest = await conn.fetchval(
            """
            SELECT MAX(version) FROM vault_secret_versions
            WHERE project_id = $1 AND environment = $2 AND key = $3
            """,
            version.project_id,
            version.environment.value,
            version.key,
        )
        expected = (latest or 0) + 1
        if version.version != expected:
            raise ConflictError(
                f"Version conflict on {version.ref}: expected {expected}, got {version.version}"
            )
        await conn.execute(
            f"INSERT INTO vault_secret_versions ({_VERSION_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
            version.project_id,
            version.environment.value,
            version.key,
            version.version,
            version.ciphertext,
            version.nonce,
            version.created_at,
            version.author_id,
            version.comment,
            version.deleted,
        )

    async def latest_version(self, ref: SecretRef) -> Optional[SecretVersion]:
        query = f"""
            SELECT {_VERSION_COLUMNS} FROM vault_secret_versions
            WHERE project_id = $1 AND environment = $2 AND key = $3
            ORDER BY version DESC LIMIT 1
        """
        try:
            row = await self._pool.fetchrow(query, ref.project_id, ref.environment.value, ref.key)
        except Exception as e:
            raise StorageError(f"Failed to get latest version: {e}") from e
        return self._row_to_version(row) if row else None

    async def get_version(self, ref: SecretRef, version: int) -> Optional[SecretVersion]:
        query = f"""
            SELECT {_VERSION_COLUMNS} FROM vault_secret_versions
            WHERE project_id = $1 AND environment = $2 AND key = $3 AND version = $4
        """
        try:
            row = await self._pool.fetchrow(query, ref.project_id, ref.environment.value, ref.key, version)
        except Exception as e:
            raise StorageError(f"Failed to get version: {e}") from e
        return self._row_to_version(row) if row else None

    async def history(self, ref: SecretRef) -> List[SecretVersion]:
        query = f"""
            SELECT {_VERSION_COLUMNS} FROM vault_secret_versions
            WHERE project_id = $1 AND environment = $2 AND key = $3
            ORDER BY version
        """
        try:
            rows = await self._pool.fetch(query, ref.project_id, ref.environment.value, ref.key)
        except Exception as e:
            raise StorageError(f"Failed to get history: {e}") from e
        return [self._row_to_version(row) for row in rows]

    async def current_versions(
        self, project_id: str, environment: EnvironmentId
    ) -> List[SecretVersion]:
        query = f"""
            SELECT DISTINCT ON (key) {_VERSION_COLUMNS} FROM vault_secret_versions
            WHERE project_id = $1 AND environment = $2
            ORDER BY key, version DESC
        """
        try:
            rows = await self._pool.fetch(query, project_id, environment.value)
        except Exception as e:
            raise StorageError(f"Failed to list current versions: {e}") from e
        # Sort in Python: database collation may not be codepoint order
        current = [self._row_to_version(row) for row in rows if not row["deleted"]]
        return sorted(current, key=lambda v: v.key)

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()

    @staticmethod
    def _row_to_project(row: asyncpg.Record, env_rows: List[asyncpg.Record]) -> Project:
        return Project(
            project_id=row["project_id"],
            name=row["name"],
            created_at=row["created_at"],
            environments=tuple(
                Environment(
                    project_id=e["project_id"],
                    environment=EnvironmentId(e["environment"]),
                    created_at=e["created_at"],
                    deleted_at=e["deleted_at"],
                )
                for e in env_rows
            ),
        )

    @staticmethod
    def _row_to_version(row: asyncpg.Record) -> SecretVersion:
        """Convert database row to SecretVersion."""
        return SecretVersion(
            project_id=row["project_id"],
            environment=EnvironmentId(row["environment"]),
            key=row["key"],
            version=row["version"],
            ciphertext=bytes(row["ciphertext"]),
            nonce=bytes(row["nonce"]),
            created_at=row["created_at"],
            author_id=row["author_id"],
            comment=row["comment"],
            deleted=row["deleted"],
        )

    @staticmethod
    def _row_to_member(row: asyncpg.Record) -> Membership:
        return Membership(
            project_id=row["project_id"],
            actor_id=row["actor_id"],
            role=Role(row["role"]),
            created_at=row["created_at"],
        )


class PostgresAuditLog(AuditLog):
    """PostgreSQL append-only audit log. No UPDATE or DELETE is ever issued."""

    def __init__(self, pool: asyncpg.Pool, owns_pool: bool = False, fetch_size: int = 500) -> None:
        self._pool = pool
        self._owns_pool = owns_pool
        self._fetch_size = fetch_size

    @property
    def pool(self) -> asyncpg.Pool:
        return self._pool

    async def append_many(
        self, entries: Sequence[AuditEntry], conn: Optional[asyncpg.Connection] = None
    ) -> List[AuditEntry]:
        """
        Insert entries in one transaction.

        Args:
            conn: Connection with an open transaction to join; the entries then
                commit or roll back with the caller's writes
        """
        if conn is not None:
            return await self._insert(conn, entries)
        try:
            async with self._pool.acquire() as own:
                async with own.transaction():
                    return await self._insert(own, entries)
        except VaultError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to append audit entries: {e}") from e

    @staticmethod
    async def _insert(conn: asyncpg.Connection, entries: Sequence[AuditEntry]) -> List[AuditEntry]:
        query = """
            INSERT INTO vault_audit_log
                (timestamp, actor_id, operation, outcome, project_id, environment, key, reason, version, subject)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING sequence
        """
        stored = []
        for entry in entries:
            sequence = await conn.fetchval(
                query,
                entry.timestamp,
                entry.actor_id,
                entry.operation.value,
                entry.outcome.value,
                entry.project_id,
                entry.environment.value if entry.environment else None,
                entry.key,
                entry.reason,
                entry.version,
                entry.subject,
            )
            stored.append(replace(entry, sequence=sequence))
        return stored

    async def query(self, audit_filter: Optional[AuditFilter] = None) -> AsyncIterator[AuditEntry]:
        audit_filter = audit_filter or AuditFilter()
        query = (
            "SELECT sequence, timestamp, actor_id, operation, outcome, project_id, "
            "environment, key, reason, version, subject FROM vault_audit_log WHERE TRUE"
        )
        params: list = []

        def add(clause: str, value: object) -> None:
            nonlocal query
            params.append(value)
            query += f" AND {clause} ${len(params)}"

        if audit_filter.project_id is not None:
            add("project_id =", audit_filter.project_id)
        if audit_filter.actor_id is not None:
            add("actor_id =", audit_filter.actor_id)
        if audit_filter.environment is not None:
            add("environment =", audit_filter.environment.value)
        if audit_filter.key is not None:
            add("key =", audit_filter.key)
        if audit_filter.subject is not None:
            add("subject =", audit_filter.subject)
        if audit_filter.operation is not None:
            add("operation =", audit_filter.operation.value)
        if audit_filter.outcome is not None:
            add("outcome =", audit_filter.outcome.value)
        if audit_filter.since is not None:
            add("timestamp >=", audit_filter.since)
        if audit_filter.until is not None:
            add("timestamp <", audit_filter.until)
        query += " ORDER BY sequence"

        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    async for row in conn.cursor(query, *params, prefetch=self._fetch_size):
                        yield self._row_to_entry(row)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to query audit log: {e}") from e

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()

    @staticmethod
    def _row_to_entry(row: asyncpg.Record) -> AuditEntry:
        return AuditEntry(
            timestamp=row["timestamp"],
            actor_id=row["actor_id"],
            operation=Operation(row["operation"]),
            outcome=Outcome(row["outcome"]),
            project_id=row["project_id"],
            environment=EnvironmentId(row["environment"]) if row["environment"] else None,
            key=row["key"],
            reason=row["reason"],
            version=row["version"],
            subject=row["subject"],
            sequence=row["sequence"],
        )
