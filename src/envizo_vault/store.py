"""
Versioned secret store.

This module provides:
- SecretStore: put/get/delete/list/history of secrets, bulk put, project and
  environment lifecycle, and project membership management, wired to the
  access policy, envelope and audit log

Flow for every operation:
1. Look up the actor's membership and authorize the operation against it
   (denials are audited, then raised)
2. Resolve the target (absence is audited as not_found, then raised)
3. Perform the read or write; writes hold the per-key lock
4. Append the audit entry; for writes the versions and their entries are
   committed together or not at all

Secrets are never overwritten: put and delete append versions, and an
environment delete only tombstones the environment.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .audit import AuditLog
from .classification import classify
from .envelope import Envelope
from .errors import (
    ConflictError,
    CorruptedSecretError,
    DecryptionError,
    DenialReason,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    VaultError,
)
from .locks import KeyLockRegistry
from .models import (
    Actor,
    AuditEntry,
    Environment,
    EnvironmentId,
    Membership,
    Operation,
    Outcome,
    Project,
    Role,
    SecretRef,
    SecretVersion,
    utcnow,
)
from .policy import AccessPolicy
from .storage import SecretStorage
from .validation import (
    DEFAULT_MAX_VALUE_BYTES,
    encode_value,
    validate_actor_id,
    validate_comment,
    validate_key,
    validate_project_id,
)

logger = logging.getLogger(__name__)

EnvironmentLike = Union[str, EnvironmentId]

# Roles an owner may grant; ownership stays with the project creator
GRANTABLE_ROLES = frozenset({Role.EDITOR, Role.VIEWER})


class SecretStore:
    """
    Secret store service.

    Owns no global state: storage, envelope, audit log and policy are
    injected once and shared by reference.
    """

    def __init__(
        self,
        storage: SecretStorage,
        envelope: Envelope,
        audit: AuditLog,
        policy: Optional[AccessPolicy] = None,
        lock_timeout: Optional[float] = None,
        max_value_bytes: int = DEFAULT_MAX_VALUE_BYTES,
    ) -> None:
        self._storage = storage
        self._envelope = envelope
        self._audit = audit
        self._policy = policy or AccessPolicy()
        self._locks = KeyLockRegistry(timeout=lock_timeout)
        self._max_value_bytes = max_value_bytes

    @property
    def audit(self) -> AuditLog:
        return self._audit

    @property
    def policy(self) -> AccessPolicy:
        return self._policy

    # =========================================================================
    # Audit plumbing
    # =========================================================================

    @staticmethod
    def _entry(
        actor: Actor,
        operation: Operation,
        outcome: Outcome,
        project_id: Optional[str] = None,
        environment: Optional[EnvironmentId] = None,
        key: Optional[str] = None,
        reason: Optional[DenialReason] = None,
        version: Optional[int] = None,
        subject: Optional[str] = None,
    ) -> AuditEntry:
        return AuditEntry(
            timestamp=utcnow(),
            actor_id=actor.actor_id,
            operation=operation,
            outcome=outcome,
            project_id=project_id,
            environment=environment,
            key=key,
            reason=reason.value if reason else None,
            version=version,
            subject=subject,
        )

    async def _record(self, actor: Actor, operation: Operation, outcome: Outcome, *args, **kwargs) -> AuditEntry:
        return await self._audit.append(self._entry(actor, operation, outcome, *args, **kwargs))

    async def _fail(
        self,
        error: VaultError,
        reason: DenialReason,
        actor: Actor,
        operation: Operation,
        project_id: Optional[str] = None,
        environment: Optional[EnvironmentId] = None,
        key: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> VaultError:
        """Audit a failed attempt and hand the error back for raising."""
        await self._record(actor, operation, Outcome.DENIED, project_id, environment, key, reason, subject=subject)
        logger.warning(
            "%s by %s on %s/%s/%s refused: %s",
            operation,
            actor.actor_id,
            project_id,
            environment,
            key or subject,
            reason,
        )
        return error

    async def _parse_environment(
        self, environment: EnvironmentLike, actor: Actor, operation: Operation, project_id: str
    ) -> EnvironmentId:
        try:
            return EnvironmentId.from_str(environment)
        except ValidationError as e:
            raise await self._fail(e, DenialReason.INVALID_INPUT, actor, operation, project_id)

    async def role_of(self, actor: Actor, project_id: str) -> Optional[Role]:
        """The actor's role in a project, None without a membership."""
        membership = await self._storage.get_member(project_id, actor.actor_id)
        return membership.role if membership else None

    async def check_access(
        self,
        actor: Actor,
        project_id: str,
        operation: Operation,
        environment: Optional[EnvironmentId] = None,
        key: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> Role:
        """
        Authorize an operation, auditing a denial before raising it.

        Returns:
            The actor's role in the project

        Raises:
            ForbiddenError: If the policy denies the operation
        """
        role = await self.role_of(actor, project_id)
        try:
            self._policy.authorize(actor, project_id, operation, role)
        except ForbiddenError as e:
            raise await self._fail(e, e.reason, actor, operation, project_id, environment, key, subject)
        return role

    async def _require_environment(
        self,
        actor: Actor,
        operation: Operation,
        project_id: str,
        environment: EnvironmentId,
        key: Optional[str] = None,
        allow_deleted: bool = False,
    ) -> Environment:
        project = await self._storage.get_project(project_id)
        if project is not None:
            for env in project.environments:
                if env.environment == environment and (allow_deleted or not env.is_deleted):
                    return env
            error = NotFoundError(f"Environment {project_id}/{environment}")
        else:
            error = NotFoundError(f"Project {project_id}")
        raise await self._fail(error, DenialReason.NOT_FOUND, actor, operation, project_id, environment, key)

    def _seal(
        self, ref: SecretRef, number: int, value: Optional[str], actor: Actor, comment: Optional[str]
    ) -> SecretVersion:
        """Build version `number` of `ref`; a None value makes a delete marker."""
        ciphertext, nonce = self._envelope.seal(value, ref) if value is not None else (b"", b"")
        return SecretVersion(
            project_id=ref.project_id,
            environment=ref.environment,
            key=ref.key,
            version=number,
            ciphertext=ciphertext,
            nonce=nonce,
            created_at=utcnow(),
            author_id=actor.actor_id,
            comment=comment,
            deleted=value is None,
        )

    def _committed_entry(self, actor: Actor, operation: Operation, version: SecretVersion) -> AuditEntry:
        return self._entry(
            actor,
            operation,
            Outcome.ALLOWED,
            version.project_id,
            version.environment,
            version.key,
            version=version.version,
        )

    async def _commit(self, versions: Sequence[SecretVersion], entries: Sequence[AuditEntry]) -> None:
        """
        Write versions and their audit entries as one unit.

        Shielded from caller cancellation: once started, the commit runs to
        completion (or failure) before CancelledError is re-raised, and the
        caller keeps its key locks until then.
        """
        task = asyncio.ensure_future(self._storage.append_versions(versions, self._audit, entries))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                logger.error("Commit of %d versions failed after cancellation: %s", len(versions), task.exception())
            raise

    # =========================================================================
    # Projects and environments
    # =========================================================================

    async def create_project(
        self,
        project_id: str,
        name: str,
        actor: Actor,
        environments: Iterable[EnvironmentLike] = (),
    ) -> Project:
        """
        Create a project, optionally with initial environments.

        Any actor may create a project and becomes its owner.

        Raises:
            ValidationError: Invalid project id or environment
            ConflictError: Project id already in use
        """
        op = Operation.CREATE_PROJECT
        try:
            validate_project_id(project_id)
            env_ids = [EnvironmentId.from_str(e) for e in environments]
        except ValidationError as e:
            raise await self._fail(e, DenialReason.INVALID_INPUT, actor, op, str(project_id))
        if len(set(env_ids)) != len(env_ids):
            raise await self._fail(
                ValidationError("Duplicate environments"), DenialReason.INVALID_INPUT, actor, op, project_id
            )

        now = utcnow()
        project = Project(
            project_id=project_id,
            name=name,
            created_at=now,
            environments=tuple(Environment(project_id, e, now) for e in env_ids),
        )
        try:
            await self._storage.create_project(project, Membership(project_id, actor.actor_id, Role.OWNER, now))
        except ConflictError as e:
            raise await self._fail(e, DenialReason.CONFLICT, actor, op, project_id)
        await self._record(actor, op, Outcome.ALLOWED, project_id)
        logger.info("Project %s created by %s", project_id, actor.actor_id)
        return project

    async def get_project(self, project_id: str, actor: Actor) -> Project:
        await self.check_access(actor, project_id, Operation.READ_PROJECT)
        project = await self._storage.get_project(project_id)
        if project is None:
            raise await self._fail(
                NotFoundError(f"Project {project_id}"),
                DenialReason.NOT_FOUND,
                actor,
                Operation.READ_PROJECT,
                project_id,
            )
        return project

    async def list_projects(self, actor: Actor) -> List[Project]:
        """Projects the actor is a member of, ordered by id."""
        member_of = {m.project_id for m in await self._storage.memberships_of(actor.actor_id)}
        return [p for p in await self._storage.list_projects() if p.project_id in member_of]

    async def create_environment(
        self, project_id: str, environment: EnvironmentLike, actor: Actor
    ) -> Environment:
        op = Operation.CREATE_ENVIRONMENT
        env_id = await self._parse_environment(environment, actor, op, project_id)
        await self.check_access(actor, project_id, op, env_id)
        env = Environment(project_id, env_id, utcnow())
        try:
            await self._storage.create_environment(env)
        except NotFoundError as e:
            raise await self._fail(e, DenialReason.NOT_FOUND, actor, op, project_id, env_id)
        except ConflictError as e:
            raise await self._fail(e, DenialReason.CONFLICT, actor, op, project_id, env_id)
        await self._record(actor, op, Outcome.ALLOWED, project_id, env_id)
        logger.info("Environment %s/%s created by %s", project_id, env_id, actor.actor_id)
        return env

    async def delete_environment(
        self, project_id: str, environment: EnvironmentLike, actor: Actor
    ) -> None:
        """Tombstone an environment. Its secrets stop being current; history stays."""
        op = Operation.DELETE_ENVIRONMENT
        env_id = await self._parse_environment(environment, actor, op, project_id)
        await self.check_access(actor, project_id, op, env_id)
        await self._require_environment(actor, op, project_id, env_id)
        try:
            await self._storage.tombstone_environment(project_id, env_id, utcnow())
        except NotFoundError as e:
            # Lost a race with another delete
            raise await self._fail(e, DenialReason.NOT_FOUND, actor, op, project_id, env_id)
        await self._record(actor, op, Outcome.ALLOWED, project_id, env_id)
        logger.info("Environment %s/%s tombstoned by %s", project_id, env_id, actor.actor_id)

    # =========================================================================
    # Memberships
    # =========================================================================

    async def _grantable_role(
        self, role: Union[str, Role], actor: Actor, operation: Operation, project_id: str, member_id: str
    ) -> Role:
        try:
            validate_actor_id(member_id)
            parsed = role if isinstance(role, Role) else Role.from_str(role)
            if parsed not in GRANTABLE_ROLES:
                raise ValidationError(f"Role {parsed} cannot be granted; members are editors or viewers")
        except ValidationError as e:
            raise await self._fail(e, DenialReason.INVALID_INPUT, actor, operation, project_id, subject=member_id)
        return parsed

    async def add_member(
        self, project_id: str, member_id: str, role: Union[str, Role], actor: Actor
    ) -> Membership:
        """
        Give another actor a role in the project (owner only).

        Raises:
            ValidationError: Role is not editor or viewer
            ConflictError: The actor is already a member
        """
        op = Operation.ADD_MEMBER
        await self.check_access(actor, project_id, op, subject=member_id)
        granted = await self._grantable_role(role, actor, op, project_id, member_id)
        membership = Membership(project_id, member_id, granted, utcnow())
        try:
            await self._storage.add_member(membership)
        except NotFoundError as e:
            raise await self._fail(e, DenialReason.NOT_FOUND, actor, op, project_id, subject=member_id)
        except ConflictError as e:
            raise await self._fail(e, DenialReason.CONFLICT, actor, op, project_id, subject=member_id)
        await self._record(actor, op, Outcome.ALLOWED, project_id, subject=member_id)
        logger.info("%s added to %s as %s by %s", member_id, project_id, granted, actor.actor_id)
        return membership

    async def update_member_role(
        self, project_id: str, member_id: str, role: Union[str, Role], actor: Actor
    ) -> Membership:
        """
        Change a member's role (owner only). The owner's own membership is fixed.

        Raises:
            NotFoundError: The actor is not a member
            ConflictError: The member is the owner or already has the role
        """
        op = Operation.UPDATE_MEMBER
        await self.check_access(actor, project_id, op, subject=member_id)
        granted = await self._grantable_role(role, actor, op, project_id, member_id)
        try:
            updated = await self._storage.update_member(project_id, member_id, granted)
        except NotFoundError as e:
            raise await self._fail(e, DenialReason.NOT_FOUND, actor, op, project_id, subject=member_id)
        except ConflictError as e:
            raise await self._fail(e, DenialReason.CONFLICT, actor, op, project_id, subject=member_id)
        await self._record(actor, op, Outcome.ALLOWED, project_id, subject=member_id)
        logger.info("%s is now %s in %s (changed by %s)", member_id, granted, project_id, actor.actor_id)
        return updated

    async def remove_member(self, project_id: str, member_id: str, actor: Actor) -> None:
        """Revoke a member's access (owner only). The owner cannot be removed."""
        op = Operation.REMOVE_MEMBER
        await self.check_access(actor, project_id, op, subject=member_id)
        try:
            await self._storage.remove_member(project_id, member_id)
        except NotFoundError as e:
            raise await self._fail(e, DenialReason.NOT_FOUND, actor, op, project_id, subject=member_id)
        except ConflictError as e:
            raise await self._fail(e, DenialReason.CONFLICT, actor, op, project_id, subject=member_id)
        await self._record(actor, op, Outcome.ALLOWED, project_id, subject=member_id)
        logger.info("%s removed from %s by %s", member_id, project_id, actor.actor_id)

    async def list_members(self, project_id: str, actor: Actor) -> List[Membership]:
        """Memberships of the project ordered by actor id (owner only)."""
        op = Operation.LIST_MEMBERS
        await self.check_access(actor, project_id, op)
        members = await self._storage.list_members(project_id)
        await self._record(actor, op, Outcome.ALLOWED, project_id)
        return members

    # =========================================================================
    # Secrets
    # =========================================================================

    async def put(
        self,
        project_id: str,
        environment: EnvironmentLike,
        key: str,
        value: str,
        actor: Actor,
        comment: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> SecretVersion:
        """
        Append a new version of a secret.

        Args:
            expected_version: If given, the current latest version number
                (0 for a new key); a mismatch raises ConflictError

        Returns:
            The committed SecretVersion (with plaintext and status filled in)
        """
        op = Operation.PUT
        env_id = await self._parse_environment(environment, actor, op, project_id)
        await self.check_access(actor, project_id, op, env_id, key)
        try:
            validate_key(key)
            encode_value(value, self._max_value_bytes)
            validate_comment(comment)
        except ValidationError as e:
            raise await self._fail(e, DenialReason.INVALID_INPUT, actor, op, project_id, env_id, key)
        await self._require_environment(actor, op, project_id, env_id, key)

        ref = SecretRef(project_id, env_id, key)
        try:
            async with self._locks.hold(ref):
                latest = await self._storage.latest_version(ref)
                current = latest.version if latest else 0
                if expected_version is not None and expected_version != current:
                    raise ConflictError(
                        f"Expected version {expected_version} of {ref}, found {current}"
                    )
                version = self._seal(ref, current + 1, value, actor, comment)
                await self._commit([version], [self._committed_entry(actor, op, version)])
        except ConflictError as e:
            raise await self._fail(e, DenialReason.CONFLICT, actor, op, project_id, env_id, key)
        except NotFoundError as e:
            # Environment tombstoned while waiting for the lock
            raise await self._fail(e, DenialReason.NOT_FOUND, actor, op, project_id, env_id, key)

        logger.debug("Committed %s v%d", ref, version.version)
        return version.revealed(value, classify(key, value))

    async def put_many(
        self,
        project_id: str,
        environment: EnvironmentLike,
        values: Mapping[str, str],
        actor: Actor,
        comment: Optional[str] = None,
        operation: Operation = Operation.IMPORT,
    ) -> List[SecretVersion]:
        """
        Append one version per key as a single all-or-nothing write.

        Every key's lock is held before anything is sealed. The versions are
        committed together with one PUT entry per key plus a closing entry for
        `operation`; a lock timeout, a tombstoned environment or a storage
        failure leaves every key untouched.

        Returns:
            Committed versions in key order (with plaintext and status filled in)
        """
        env_id = await self._parse_environment(environment, actor, operation, project_id)
        await self.check_access(actor, project_id, operation, env_id)
        await self.check_access(actor, project_id, Operation.PUT, env_id)
        try:
            for key, value in values.items():
                validate_key(key)
                encode_value(value, self._max_value_bytes)
            validate_comment(comment)
        except ValidationError as e:
            raise await self._fail(e, DenialReason.INVALID_INPUT, actor, operation, project_id, env_id)
        await self._require_environment(actor, operation, project_id, env_id)

        refs = [SecretRef(project_id, env_id, key) for key in sorted(values)]
        try:
            async with self._locks.hold_all(refs):
                versions = []
                for ref in refs:
                    latest = await self._storage.latest_version(ref)
                    number = latest.version + 1 if latest else 1
                    versions.append(self._seal(ref, number, values[ref.key], actor, comment))
                entries = [self._committed_entry(actor, Operation.PUT, v) for v in versions]
                entries.append(self._entry(actor, operation, Outcome.ALLOWED, project_id, env_id))
                await self._commit(versions, entries)
        except ConflictError as e:
            raise await self._fail(e, DenialReason.CONFLICT, actor, operation, project_id, env_id)
        except NotFoundError as e:
            raise await self._fail(e, DenialReason.NOT_FOUND, actor, operation, project_id, env_id)

        logger.info("Committed %d secrets into %s/%s", len(versions), project_id, env_id)
        return [v.revealed(values[v.key], classify(v.key, values[v.key])) for v in versions]

    async def delete(
        self,
        project_id: str,
        environment: EnvironmentLike,
        key: str,
        actor: Actor,
        comment: Optional[str] = None,
    ) -> SecretVersion:
        """
        Append a delete marker. History is kept.

        Raises:
            NotFoundError: If the secret does not exist or is already deleted
        """
        op = Operation.DELETE
        env_id = await self._parse_environment(environment, actor, op, project_id)
        await self.check_access(actor, project_id, op, env_id, key)
        try:
            validate_comment(comment)
        except ValidationError as e:
            raise await self._fail(e, DenialReason.INVALID_INPUT, actor, op, project_id, env_id, key)
        await self._require_environment(actor, op, project_id, env_id, key)

        ref = SecretRef(project_id, env_id, key)
        try:
            async with self._locks.hold(ref):
                latest = await self._storage.latest_version(ref)
                if latest is None or latest.deleted:
                    raise NotFoundError(f"Secret {ref}")
                marker = self._seal(ref, latest.version + 1, None, actor, comment)
                await self._commit([marker], [self._committed_entry(actor, op, marker)])
        except ConflictError as e:
            raise await self._fail(e, DenialReason.CONFLICT, actor, op, project_id, env_id, key)
        except NotFoundError as e:
            raise await self._fail(e, DenialReason.NOT_FOUND, actor, op, project_id, env_id, key)
        return marker

    def _decrypt(self, version: SecretVersion) -> str:
        try:
            return self._envelope.open(version.ciphertext, version.nonce, version.ref).decode("utf-8")
        except (DecryptionError, UnicodeDecodeError):
            logger.error("Secret %s v%d failed to decrypt", version.ref, version.version)
            raise CorruptedSecretError(f"Secret {version.ref} v{version.version} is corrupted") from None

    async def get(
        self,
        project_id: str,
        environment: EnvironmentLike,
        key: str,
        actor: Actor,
        version: Optional[int] = None,
    ) -> SecretVersion:
        """
        Read the current value of a secret, or a specific version.

        Raises:
            NotFoundError: Secret, version or environment absent, or secret deleted
            ForbiddenError: Policy denial, including insecure plaintext for viewers
            CorruptedSecretError: Stored ciphertext failed authentication
        """
        op = Operation.GET if version is None else Operation.GET_VERSION
        env_id = await self._parse_environment(environment, actor, op, project_id)
        role = await self.check_access(actor, project_id, op, env_id, key)
        await self._require_environment(actor, op, project_id, env_id, key)

        ref = SecretRef(project_id, env_id, key)
        if version is None:
            found = await self._storage.latest_version(ref)
            if found is not None and found.deleted:
                found = None
        else:
            found = await self._storage.get_version(ref, version)
        if found is None:
            label = f"Secret {ref}" if version is None else f"Secret {ref} v{version}"
            raise await self._fail(NotFoundError(label), DenialReason.NOT_FOUND, actor, op, project_id, env_id, key)

        if found.deleted:
            await self._record(actor, op, Outcome.ALLOWED, project_id, env_id, key, version=found.version)
            return found

        try:
            plaintext = self._decrypt(found)
        except CorruptedSecretError as e:
            raise await self._fail(e, DenialReason.CORRUPTED, actor, op, project_id, env_id, key)
        status = classify(key, plaintext)
        if not self._policy.can_reveal(actor, role, status):
            raise await self._fail(
                ForbiddenError(f"Plaintext of {ref} is withheld from viewers", DenialReason.INSECURE_VALUE),
                DenialReason.INSECURE_VALUE,
                actor,
                op,
                project_id,
                env_id,
                key,
            )
        await self._record(actor, op, Outcome.ALLOWED, project_id, env_id, key, version=found.version)
        return found.revealed(plaintext, status)

    async def list(
        self, project_id: str, environment: EnvironmentLike, actor: Actor
    ) -> List[SecretVersion]:
        """
        Current version of every live key, ordered by key (case-sensitive).

        Values the actor may not see, and values that fail to decrypt, are
        returned with plaintext=None.
        """
        op = Operation.LIST
        env_id = await self._parse_environment(environment, actor, op, project_id)
        role = await self.check_access(actor, project_id, op, env_id)
        await self._require_environment(actor, op, project_id, env_id)

        result = []
        for current in await self._storage.current_versions(project_id, env_id):
            try:
                plaintext = self._decrypt(current)
            except CorruptedSecretError:
                result.append(current.redacted())
                continue
            status = classify(current.key, plaintext)
            if self._policy.can_reveal(actor, role, status):
                result.append(current.revealed(plaintext, status))
            else:
                result.append(current.redacted(status))
        await self._record(actor, op, Outcome.ALLOWED, project_id, env_id)
        return result

    async def history(
        self, project_id: str, environment: EnvironmentLike, key: str, actor: Actor
    ) -> List[SecretVersion]:
        """
        Every version of a secret, oldest first, delete markers included.

        Versions are returned sealed; read a version's plaintext with
        get(..., version=n). Works on tombstoned environments.
        """
        op = Operation.HISTORY
        env_id = await self._parse_environment(environment, actor, op, project_id)
        await self.check_access(actor, project_id, op, env_id, key)
        await self._require_environment(actor, op, project_id, env_id, key, allow_deleted=True)

        ref = SecretRef(project_id, env_id, key)
        versions = await self._storage.history(ref)
        if not versions:
            raise await self._fail(NotFoundError(f"Secret {ref}"), DenialReason.NOT_FOUND, actor, op, project_id, env_id, key)
        await self._record(actor, op, Outcome.ALLOWED, project_id, env_id, key, version=versions[-1].version)
        return versions

    async def snapshot(
        self,
        project_id: str,
        environment: EnvironmentLike,
        actor: Actor,
        operation: Operation = Operation.EXPORT,
    ) -> Dict[str, str]:
        """
        Decrypted key -> value map of the current environment state.

        Unlike list(), this is all-or-nothing: any corrupted value or any
        value withheld from the actor fails the whole call.
        """
        env_id = await self._parse_environment(environment, actor, operation, project_id)
        role = await self.check_access(actor, project_id, operation, env_id)
        await self._require_environment(actor, operation, project_id, env_id)

        values: Dict[str, str] = {}
        for current in await self._storage.current_versions(project_id, env_id):
            try:
                plaintext = self._decrypt(current)
            except CorruptedSecretError as e:
                raise await self._fail(e, DenialReason.CORRUPTED, actor, operation, project_id, env_id, current.key)
            if not self._policy.can_reveal(actor, role, classify(current.key, plaintext)):
                raise await self._fail(
                    ForbiddenError(
                        f"Plaintext of {current.ref} is withheld from viewers", DenialReason.INSECURE_VALUE
                    ),
                    DenialReason.INSECURE_VALUE,
                    actor,
                    operation,
                    project_id,
                    env_id,
                    current.key,
                )
            values[current.key] = plaintext
        await self._record(actor, operation, Outcome.ALLOWED, project_id, env_id)
        return values

    async def require_writable(
        self, project_id: str, environment: EnvironmentLike, actor: Actor, operation: Operation
    ) -> EnvironmentId:
        """Authorize a bulk write and check the environment is live before any put."""
        env_id = await self._parse_environment(environment, actor, operation, project_id)
        await self.check_access(actor, project_id, operation, env_id)
        await self.check_access(actor, project_id, Operation.PUT, env_id)
        await self._require_environment(actor, operation, project_id, env_id)
        return env_id

    async def fail_operation(
        self,
        error: VaultError,
        reason: DenialReason,
        actor: Actor,
        operation: Operation,
        project_id: str,
        environment: Optional[EnvironmentId] = None,
    ) -> VaultError:
        """Audit a refused operation that failed outside the store (e.g. parsing)."""
        return await self._fail(error, reason, actor, operation, project_id, environment)

    async def close(self) -> None:
        await self._storage.close()
        await self._audit.close()
