"""
Data model for the secret store.

This module provides:
- EnvironmentId, Role, Operation, Outcome, SecretStatus: closed enumerations
- SecretRef: (project, environment, key) identity of a secret
- Actor: authenticated caller
- Membership: an actor's role within one project
- Project, Environment: explicitly created containers
- SecretVersion: immutable snapshot of one secret version
- AuditEntry, AuditFilter: append-only audit records and their query filter
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnvironmentId(Enum):
    """Fixed set of deployment environments a project may hold."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str | EnvironmentId) -> EnvironmentId:
        """Parse from string."""
        if isinstance(s, EnvironmentId):
            return s
        try:
            return cls(s.lower())
        except (ValueError, AttributeError):
            raise ValidationError(f"Invalid environment: {s!r}")

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class Role(Enum):
    """Actor role within one project."""

    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> Role:
        try:
            return cls(s.lower())
        except (ValueError, AttributeError):
            raise ValidationError(f"Invalid role: {s!r}")


class Operation(Enum):
    """Operation kinds checked by the access policy and recorded in the audit log."""

    PUT = "put"
    GET = "get"
    GET_VERSION = "get_version"  # Historical (non-current) version read
    DELETE = "delete"
    LIST = "list"
    HISTORY = "history"
    EXPORT = "export"
    IMPORT = "import"
    ANALYZE = "analyze"
    READ_PROJECT = "read_project"
    CREATE_PROJECT = "create_project"
    CREATE_ENVIRONMENT = "create_environment"
    DELETE_ENVIRONMENT = "delete_environment"
    ADD_MEMBER = "add_member"
    UPDATE_MEMBER = "update_member"
    REMOVE_MEMBER = "remove_member"
    LIST_MEMBERS = "list_members"

    def __str__(self) -> str:
        return self.value


class Outcome(Enum):
    ALLOWED = "allowed"
    DENIED = "denied"

    def __str__(self) -> str:
        return self.value


class SecretStatus(Enum):
    """Read-only classification of a secret value (never persisted)."""

    SECURE = "secure"
    WARNING = "warning"
    INSECURE = "insecure"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SecretRef:
    """Logical identity of a secret."""

    project_id: str
    environment: EnvironmentId
    key: str

    def associated_data(self) -> bytes:
        """AEAD associated data binding a ciphertext to this identity."""
        # Length-prefixed so that no two distinct triples share an encoding
        parts = (self.project_id, self.environment.value, self.key)
        return b"".join(
            len(p.encode("utf-8")).to_bytes(4, "big") + p.encode("utf-8") for p in parts
        )

    def __str__(self) -> str:
        return f"{self.project_id}/{self.environment}/{self.key}"


@dataclass(frozen=True)
class Actor:
    """
    Authenticated caller.

    Carries identity only; what the actor may do in a project comes from its
    Membership there, which the store looks up on every operation.
    """

    actor_id: str
    reveal_insecure: bool = False  # Explicit grant to read insecure plaintext


@dataclass(frozen=True)
class Membership:
    """Role of one actor in one project. The project creator is its owner."""

    project_id: str
    actor_id: str
    role: Role
    created_at: datetime


@dataclass(frozen=True)
class Environment:
    """Environment within a project. Tombstoned environments keep their history."""

    project_id: str
    environment: EnvironmentId
    created_at: datetime
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class Project:
    """Project with its environments in creation order."""

    project_id: str
    name: str
    created_at: datetime
    environments: Tuple[Environment, ...] = ()

    @property
    def active_environments(self) -> List[EnvironmentId]:
        return [e.environment for e in self.environments if not e.is_deleted]


@dataclass(frozen=True)
class SecretVersion:
    """
    Immutable snapshot of one version of a secret.

    Persisted fields are everything except `plaintext` and `status`, which are
    filled in on authorized reads only.
    """

    project_id: str
    environment: EnvironmentId
    key: str
    version: int
    ciphertext: bytes
    nonce: bytes
    created_at: datetime
    author_id: str
    comment: Optional[str] = None
    deleted: bool = False
    plaintext: Optional[str] = field(default=None, repr=False, compare=False)
    status: Optional[SecretStatus] = field(default=None, compare=False)

    @property
    def ref(self) -> SecretRef:
        return SecretRef(self.project_id, self.environment, self.key)

    def revealed(self, plaintext: str, status: SecretStatus) -> SecretVersion:
        return replace(self, plaintext=plaintext, status=status)

    def redacted(self, status: Optional[SecretStatus] = None) -> SecretVersion:
        return replace(self, plaintext=None, status=status)


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one attempted operation."""

    timestamp: datetime
    actor_id: str
    operation: Operation
    outcome: Outcome
    project_id: Optional[str] = None
    environment: Optional[EnvironmentId] = None
    key: Optional[str] = None
    reason: Optional[str] = None
    version: Optional[int] = None
    subject: Optional[str] = None  # Member actor id for membership operations
    sequence: int = 0  # Assigned by the audit log on append

    @property
    def target(self) -> str:
        parts = [p for p in (self.project_id, self.environment and self.environment.value, self.key) if p]
        return "/".join(parts)


@dataclass(frozen=True)
class AuditFilter:
    """Conjunctive filter over audit entries. None fields match anything."""

    project_id: Optional[str] = None
    actor_id: Optional[str] = None
    environment: Optional[EnvironmentId] = None
    key: Optional[str] = None
    subject: Optional[str] = None
    operation: Optional[Operation] = None
    outcome: Optional[Outcome] = None
    since: Optional[datetime] = None  # Inclusive
    until: Optional[datetime] = None  # Exclusive

    def matches(self, entry: AuditEntry) -> bool:
        if self.project_id is not None and entry.project_id != self.project_id:
            return False
        if self.actor_id is not None and entry.actor_id != self.actor_id:
            return False
        if self.environment is not None and entry.environment != self.environment:
            return False
        if self.key is not None and entry.key != self.key:
            return False
        if self.subject is not None and entry.subject != self.subject:
            return False
        if self.operation is not None and entry.operation != self.operation:
            return False
        if self.outcome is not None and entry.outcome != self.outcome:
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp >= self.until:
            return False
        return True
