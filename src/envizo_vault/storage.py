"""
Storage abstractions for versioned secrets.

This module provides:
- SecretStorage: Abstract protocol for persistence backends
- InMemorySecretStorage: asyncio-safe in-memory implementation

Storage holds only sealed data: SecretVersion records are persisted without
plaintext. Versions are append-only and are written through
append_versions(), which commits a batch of versions together with the audit
entries describing them.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .audit import AuditLog
from .errors import ConflictError, NotFoundError
from .models import AuditEntry, Environment, EnvironmentId, Membership, Project, Role, SecretRef, SecretVersion


class SecretStorage(ABC):
    """
    Abstract storage interface for projects, memberships and secret versions.

    All methods are async to support both in-memory and database backends.
    """

    @abstractmethod
    async def create_project(self, project: Project, owner: Membership) -> None:
        """Store a new project and its owner. Raises ConflictError if the id is taken."""
        ...

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        """Get a project with its environments."""
        ...

    @abstractmethod
    async def list_projects(self) -> List[Project]:
        """List all projects ordered by id."""
        ...

    @abstractmethod
    async def create_environment(self, environment: Environment) -> None:
        """
        Add an environment to an existing project.

        Raises:
            NotFoundError: If the project does not exist
            ConflictError: If the environment exists (live or tombstoned)
        """
        ...

    @abstractmethod
    async def tombstone_environment(
        self, project_id: str, environment: EnvironmentId, deleted_at: datetime
    ) -> None:
        """Mark an environment deleted; its versions are retained."""
        ...

    # =========================================================================
    # Memberships
    # =========================================================================

    @abstractmethod
    async def add_member(self, membership: Membership) -> None:
        """
        Raises:
            NotFoundError: If the project does not exist
            ConflictError: If the actor already has a membership in the project
        """
        ...

    @abstractmethod
    async def get_member(self, project_id: str, actor_id: str) -> Optional[Membership]:
        ...

    @abstractmethod
    async def list_members(self, project_id: str) -> List[Membership]:
        """Memberships of a project ordered by actor id."""
        ...

    @abstractmethod
    async def memberships_of(self, actor_id: str) -> List[Membership]:
        """Memberships of an actor ordered by project id."""
        ...

    @abstractmethod
    async def update_member(self, project_id: str, actor_id: str, role: Role) -> Membership:
        """
        Change a member's role.

        Raises:
            NotFoundError: If the actor is not a member
            ConflictError: If the member is the owner or already has the role
        """
        ...

    @abstractmethod
    async def remove_member(self, project_id: str, actor_id: str) -> None:
        """
        Raises:
            NotFoundError: If the actor is not a member
            ConflictError: If the member is the owner
        """
        ...

    # =========================================================================
    # Secret versions
    # =========================================================================

    @abstractmethod
    async def append_versions(
        self,
        versions: Sequence[SecretVersion],
        audit: Optional[AuditLog] = None,
        entries: Sequence[AuditEntry] = (),
    ) -> None:
        """
        Persist versions together with the audit entries describing them.

        All-or-nothing: the entries are appended to `audit` before any of the
        versions becomes visible, and if any check or the audit append fails
        nothing is persisted.

        Raises:
            ConflictError: If a version is not exactly latest + 1 for its key
            NotFoundError: If a version's environment is missing or tombstoned
        """
        ...

    @abstractmethod
    async def latest_version(self, ref: SecretRef) -> Optional[SecretVersion]:
        """Get the highest version, delete markers included."""
        ...

    @abstractmethod
    async def get_version(self, ref: SecretRef, version: int) -> Optional[SecretVersion]:
        """Get a specific version."""
        ...

    @abstractmethod
    async def history(self, ref: SecretRef) -> List[SecretVersion]:
        """All versions of a secret, oldest first."""
        ...

    @abstractmethod
    async def current_versions(
        self, project_id: str, environment: EnvironmentId
    ) -> List[SecretVersion]:
        """Latest version per key, excluding delete markers, ordered by key."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemorySecretStorage(SecretStorage):
    """
    In-memory storage implementation for testing and embedded use.

    Uses asyncio.Lock for safe concurrent access. Version lists are replaced,
    never mutated in place, and a batch is installed only after its audit
    entries are written, so readers never observe a partial append.
    """

    def __init__(self) -> None:
        self._projects: Dict[str, Project] = {}
        self._members: Dict[str, Dict[str, Membership]] = {}
        self._versions: Dict[Tuple[str, EnvironmentId, str], Tuple[SecretVersion, ...]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _slot(ref: SecretRef) -> Tuple[str, EnvironmentId, str]:
        return (ref.project_id, ref.environment, ref.key)

    async def create_project(self, project: Project, owner: Membership) -> None:
        async with self._lock:
            if project.project_id in self._projects:
                raise ConflictError(f"Project {project.project_id} already exists")
            self._projects[project.project_id] = project
            self._members[project.project_id] = {owner.actor_id: owner}

    async def get_project(self, project_id: str) -> Optional[Project]:
        async with self._lock:
            return self._projects.get(project_id)

    async def list_projects(self) -> List[Project]:
        async with self._lock:
            return [self._projects[k] for k in sorted(self._projects)]

    async def create_environment(self, environment: Environment) -> None:
        async with self._lock:
            project = self._projects.get(environment.project_id)
            if project is None:
                raise NotFoundError(f"Project {environment.project_id}")
            if any(e.environment == environment.environment for e in project.environments):
                raise ConflictError(
                    f"Environment {environment.environment} already exists in {environment.project_id}"
                )
            self._projects[project.project_id] = replace(
                project, environments=project.environments + (environment,)
            )

    async def tombstone_environment(
        self, project_id: str, environment: EnvironmentId, deleted_at: datetime
    ) -> None:
        async with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id}")
            envs = []
            found = False
            for e in project.environments:
                if e.environment == environment and not e.is_deleted:
                    e = replace(e, deleted_at=deleted_at)
                    found = True
                envs.append(e)
            if not found:
                raise NotFoundError(f"Environment {project_id}/{environment}")
            self._projects[project_id] = replace(project, environments=tuple(envs))

    async def add_member(self, membership: Membership) -> None:
        async with self._lock:
            members = self._members.get(membership.project_id)
            if members is None:
                raise NotFoundError(f"Project {membership.project_id}")
            if membership.actor_id in members:
                raise ConflictError(
                    f"Actor {membership.actor_id} is already a member of {membership.project_id}"
                )
            members[membership.actor_id] = membership

    async def get_member(self, project_id: str, actor_id: str) -> Optional[Membership]:
        async with self._lock:
            return self._members.get(project_id, {}).get(actor_id)

    async def list_members(self, project_id: str) -> List[Membership]:
        async with self._lock:
            members = self._members.get(project_id, {})
            return [members[k] for k in sorted(members)]

    async def memberships_of(self, actor_id: str) -> List[Membership]:
        async with self._lock:
            return [
                self._members[pid][actor_id]
                for pid in sorted(self._members)
                if actor_id in self._members[pid]
            ]

    def _changeable_member(self, project_id: str, actor_id: str) -> Membership:
        current = self._members.get(project_id, {}).get(actor_id)
        if current is None:
            raise NotFoundError(f"Actor {actor_id} is not a member of {project_id}")
        if current.role is Role.OWNER:
            raise ConflictError(f"The owner of {project_id} cannot be changed or removed")
        return current

    async def update_member(self, project_id: str, actor_id: str, role: Role) -> Membership:
        async with self._lock:
            current = self._changeable_member(project_id, actor_id)
            if current.role is role:
                raise ConflictError(f"Actor {actor_id} already has role {role} in {project_id}")
            updated = replace(current, role=role)
            self._members[project_id][actor_id] = updated
            return updated

    async def remove_member(self, project_id: str, actor_id: str) -> None:
        async with self._lock:
            self._changeable_member(project_id, actor_id)
            del self._members[project_id][actor_id]

    def _require_live(self, project_id: str, environment: EnvironmentId) -> None:
        project = self._projects.get(project_id)
        if project is None or environment not in project.active_environments:
            raise NotFoundError(f"Environment {project_id}/{environment}")

    async def append_versions(
        self,
        versions: Sequence[SecretVersion],
        audit: Optional[AuditLog] = None,
        entries: Sequence[AuditEntry] = (),
    ) -> None:
        async with self._lock:
            staged: Dict[Tuple[str, EnvironmentId, str], Tuple[SecretVersion, ...]] = {}
            for version in versions:
                self._require_live(version.project_id, version.environment)
                slot = self._slot(version.ref)
                existing = staged.get(slot, self._versions.get(slot, ()))
                expected = existing[-1].version + 1 if existing else 1
                if version.version != expected:
                    raise ConflictError(
                        f"Version conflict on {version.ref}: expected {expected}, got {version.version}"
                    )
                staged[slot] = existing + (version,)
            if entries:
                await audit.append_many(entries)
            self._versions.update(staged)

    async def latest_version(self, ref: SecretRef) -> Optional[SecretVersion]:
        async with self._lock:
            existing = self._versions.get(self._slot(ref))
            return existing[-1] if existing else None

    async def get_version(self, ref: SecretRef, version: int) -> Optional[SecretVersion]:
        async with self._lock:
            existing = self._versions.get(self._slot(ref), ())
            if 1 <= version <= len(existing):
                return existing[version - 1]
            return None

    async def history(self, ref: SecretRef) -> List[SecretVersion]:
        async with self._lock:
            return list(self._versions.get(self._slot(ref), ()))

    async def current_versions(
        self, project_id: str, environment: EnvironmentId
    ) -> List[SecretVersion]:
        async with self._lock:
            current = [
                versions[-1]
                for (pid, env, _), versions in self._versions.items()
                if pid == project_id and env == environment and versions and not versions[-1].deleted
            ]
        return sorted(current, key=lambda v: v.key)
