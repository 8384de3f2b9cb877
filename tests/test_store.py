"""Tests for the versioned secret store."""

import asyncio
from dataclasses import replace
from typing import List

import pytest

from envizo_vault import (
    Actor,
    AuditEntry,
    AuditFilter,
    ConflictError,
    CorruptedSecretError,
    Envelope,
    EnvironmentId,
    ForbiddenError,
    InMemoryAuditLog,
    InMemorySecretStorage,
    NotFoundError,
    Operation,
    Outcome,
    Role,
    SecretRef,
    SecretStatus,
    SecretStore,
    SecureKey,
    StaticKeyProvider,
    StorageError,
    ValidationError,
)

DEV = EnvironmentId.DEVELOPMENT
STAGING = EnvironmentId.STAGING
P = "proj-1"


def store_ref(key: str, env: EnvironmentId = DEV) -> SecretRef:
    return SecretRef(P, env, key)


async def _entries(audit: InMemoryAuditLog, **filters) -> List[AuditEntry]:
    return [e async for e in audit.query(AuditFilter(**filters))]


def _has_committed_put(entries) -> bool:
    return any(e.operation is Operation.PUT and e.outcome is Outcome.ALLOWED for e in entries)


class GatedAuditLog(InMemoryAuditLog):
    """Holds batches with successful put entries until released."""

    def __init__(self, fail: bool = False) -> None:
        super().__init__()
        self.fail = fail
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def append_many(self, entries):
        if _has_committed_put(entries):
            self.entered.set()
            await self.release.wait()
            if self.fail:
                raise StorageError("audit backend unavailable")
        return await super().append_many(entries)


class FailingAuditLog(InMemoryAuditLog):
    """Rejects batches with successful put entries."""

    async def append_many(self, entries):
        if _has_committed_put(entries):
            raise StorageError("audit backend unavailable")
        return await super().append_many(entries)


class TestPutGet:
    async def test_put_returns_version_and_classification(self, store, project, owner):
        result = await store.put(P, DEV, "DATABASE_URL", "postgresql://db.internal:5432/app", owner)
        assert result.version == 1
        assert result.plaintext == "postgresql://db.internal:5432/app"
        assert result.status is SecretStatus.SECURE
        assert result.author_id == "alice"

    async def test_versions_strictly_increase(self, store, project, owner, editor):
        versions = []
        for i, actor in enumerate([owner, editor, owner]):
            versions.append((await store.put(P, DEV, "API_KEY", f"sk_live_9fK2xQ7pLm3RtV8w{i}", actor)).version)
        assert versions == [1, 2, 3]

    async def test_get_returns_latest(self, store, project, owner, viewer):
        await store.put(P, DEV, "DATABASE_URL", "postgresql://db-old.internal/app", owner)
        await store.put(P, DEV, "DATABASE_URL", "postgresql://db-new.internal/app", owner)
        current = await store.get(P, DEV, "DATABASE_URL", viewer)
        assert current.version == 2
        assert current.plaintext == "postgresql://db-new.internal/app"

    async def test_environment_accepts_string(self, store, project, owner):
        await store.put(P, "staging", "FEATURE_FLAG", "on", owner)
        assert (await store.get(P, "STAGING", "FEATURE_FLAG", owner)).plaintext == "on"

    async def test_environments_are_isolated(self, store, project, owner):
        await store.put(P, DEV, "LOG_LEVEL", "debug", owner)
        with pytest.raises(NotFoundError):
            await store.get(P, STAGING, "LOG_LEVEL", owner)

    async def test_get_missing_key_is_audited(self, store, project, owner, audit_log):
        with pytest.raises(NotFoundError):
            await store.get(P, DEV, "MISSING", owner)
        [entry] = await _entries(audit_log, operation=Operation.GET)
        assert entry.outcome is Outcome.DENIED
        assert entry.reason == "not_found"
        assert entry.key == "MISSING"

    async def test_unknown_environment_is_invalid(self, store, project, owner, audit_log):
        with pytest.raises(ValidationError):
            await store.put(P, "qa", "KEY", "value", owner)
        [entry] = await _entries(audit_log, operation=Operation.PUT)
        assert entry.reason == "invalid_input"

    async def test_missing_environment(self, store, owner):
        await store.create_project(P, "Only dev", owner, ["development"])
        with pytest.raises(NotFoundError):
            await store.put(P, "production", "KEY", "value", owner)

    async def test_missing_project_is_not_member(self, store, audit_log):
        with pytest.raises(ForbiddenError) as exc_info:
            await store.put("proj-9", DEV, "KEY", "value", Actor("alice"))
        assert exc_info.value.reason.value == "not_member"

    @pytest.mark.parametrize("key", ["", "HAS SPACE", "A=B", "TAB\tKEY", "K" * 257, "it's", "A#B", "SAY\"HI\""])
    async def test_invalid_keys(self, store, project, owner, audit_log, key):
        with pytest.raises(ValidationError):
            await store.put(P, DEV, key, "value", owner)
        [entry] = await _entries(audit_log, operation=Operation.PUT)
        assert entry.reason == "invalid_input"

    async def test_value_size_limit(self, memory_storage, envelope, audit_log, owner):
        store = SecretStore(memory_storage, envelope, audit_log, max_value_bytes=8)
        await store.create_project(P, "Small", owner, [DEV])
        await store.put(P, DEV, "SHORT", "12345678", owner)
        with pytest.raises(ValidationError):
            await store.put(P, DEV, "LONG", "123456789", owner)

    async def test_comment_limit(self, store, project, owner):
        with pytest.raises(ValidationError):
            await store.put(P, DEV, "KEY", "value", owner, comment="x" * 501)
        stored = await store.put(P, DEV, "KEY", "value", owner, comment="rotate")
        assert stored.comment == "rotate"

    async def test_empty_value_is_allowed(self, store, project, owner):
        await store.put(P, DEV, "OPTIONAL", "", owner)
        assert (await store.get(P, DEV, "OPTIONAL", owner)).plaintext == ""

    async def test_expected_version(self, store, project, owner, audit_log):
        assert (await store.put(P, DEV, "KEY", "a", owner, expected_version=0)).version == 1
        assert (await store.put(P, DEV, "KEY", "b", owner, expected_version=1)).version == 2
        with pytest.raises(ConflictError):
            await store.put(P, DEV, "KEY", "c", owner, expected_version=1)
        denied = await _entries(audit_log, operation=Operation.PUT, outcome=Outcome.DENIED)
        assert [e.reason for e in denied] == ["conflict"]
        assert (await store.get(P, DEV, "KEY", owner)).plaintext == "b"

    async def test_storage_holds_only_ciphertext(self, store, memory_storage, project, owner):
        await store.put(P, DEV, "SESSION_SECRET", "a8f3c2d9e1b7f4a6c5d8e2b9", owner)
        [stored] = await memory_storage.history(store_ref("SESSION_SECRET"))
        assert stored.plaintext is None
        assert b"a8f3c2d9" not in stored.ciphertext


class TestHistoricalVersions:
    async def test_owner_reads_old_version(self, store, project, owner):
        await store.put(P, DEV, "DATABASE_URL", "postgresql://db-old.internal/app", owner)
        await store.put(P, DEV, "DATABASE_URL", "postgresql://db-new.internal/app", owner)
        old = await store.get(P, DEV, "DATABASE_URL", owner, version=1)
        assert old.version == 1
        assert old.plaintext == "postgresql://db-old.internal/app"

    async def test_editor_cannot_read_old_version(self, store, project, owner, editor, audit_log):
        await store.put(P, DEV, "KEY", "value", owner)
        with pytest.raises(ForbiddenError) as exc_info:
            await store.get(P, DEV, "KEY", editor, version=1)
        assert exc_info.value.reason.value == "role_insufficient"
        [entry] = await _entries(audit_log, operation=Operation.GET_VERSION)
        assert entry.outcome is Outcome.DENIED

    async def test_unknown_version(self, store, project, owner):
        await store.put(P, DEV, "KEY", "value", owner)
        with pytest.raises(NotFoundError):
            await store.get(P, DEV, "KEY", owner, version=2)


class TestDeleteListHistory:
    async def test_put_delete_list_history(self, store, project, owner):
        await store.put(P, DEV, "DATABASE_URL", "postgresql://db.internal:5432/app", owner)
        await store.delete(P, DEV, "DATABASE_URL", owner)

        assert "DATABASE_URL" not in [s.key for s in await store.list(P, DEV, owner)]
        history = await store.history(P, DEV, "DATABASE_URL", owner)
        assert len(history) == 2
        assert not history[0].deleted
        assert history[1].deleted

    async def test_delete_then_list_and_history(self, store, project, owner):
        await store.put(P, DEV, "DATABASE_URL", "postgresql://db-old.internal/app", owner)
        await store.put(P, DEV, "DATABASE_URL", "postgresql://db-new.internal/app", owner)
        await store.put(P, DEV, "LOG_LEVEL", "info", owner)

        marker = await store.delete(P, DEV, "DATABASE_URL", owner, comment="decommissioned")
        assert marker.version == 3
        assert marker.deleted

        listed = await store.list(P, DEV, owner)
        assert [s.key for s in listed] == ["LOG_LEVEL"]

        history = await store.history(P, DEV, "DATABASE_URL", owner)
        assert [v.version for v in history] == [1, 2, 3]
        assert [v.deleted for v in history] == [False, False, True]
        assert all(v.plaintext is None for v in history)

        with pytest.raises(NotFoundError):
            await store.get(P, DEV, "DATABASE_URL", owner)

    async def test_put_after_delete_continues_numbering(self, store, project, owner):
        await store.put(P, DEV, "KEY", "a", owner)
        await store.delete(P, DEV, "KEY", owner)
        revived = await store.put(P, DEV, "KEY", "b", owner)
        assert revived.version == 3
        assert (await store.get(P, DEV, "KEY", owner)).plaintext == "b"

    async def test_delete_missing_or_deleted(self, store, project, owner):
        with pytest.raises(NotFoundError):
            await store.delete(P, DEV, "KEY", owner)
        await store.put(P, DEV, "KEY", "a", owner)
        await store.delete(P, DEV, "KEY", owner)
        with pytest.raises(NotFoundError):
            await store.delete(P, DEV, "KEY", owner)

    async def test_get_delete_marker_by_version(self, store, project, owner):
        await store.put(P, DEV, "KEY", "a", owner)
        await store.delete(P, DEV, "KEY", owner)
        marker = await store.get(P, DEV, "KEY", owner, version=2)
        assert marker.deleted
        assert marker.plaintext is None

    async def test_list_is_sorted_case_sensitively(self, store, project, owner):
        for key in ["a_lower", "C_UPPER", "B_UPPER"]:
            await store.put(P, DEV, key, "value", owner)
        assert [s.key for s in await store.list(P, DEV, owner)] == ["B_UPPER", "C_UPPER", "a_lower"]

    async def test_list_is_repeatable(self, store, project, owner):
        await store.put(P, DEV, "A", "1", owner)
        await store.put(P, DEV, "B", "2", owner)
        first = await store.list(P, DEV, owner)
        second = await store.list(P, DEV, owner)
        assert [(s.key, s.version, s.plaintext) for s in first] == [
            (s.key, s.version, s.plaintext) for s in second
        ]

    async def test_list_empty_environment(self, store, project, owner):
        assert await store.list(P, STAGING, owner) == []

    async def test_history_missing_key(self, store, project, owner):
        with pytest.raises(NotFoundError):
            await store.history(P, DEV, "MISSING", owner)

    async def test_viewer_history_is_forbidden_and_audited(self, store, project, owner, viewer, audit_log):
        await store.put(P, DEV, "KEY", "value", owner)
        before = len(audit_log)
        with pytest.raises(ForbiddenError):
            await store.history(P, DEV, "KEY", viewer)
        assert len(audit_log) == before + 1
        [entry] = await _entries(audit_log, actor_id="carol")
        assert entry.operation is Operation.HISTORY
        assert entry.outcome is Outcome.DENIED
        assert entry.reason == "role_insufficient"


class TestEnvironmentLifecycle:
    async def test_tombstoned_environment(self, store, project, owner):
        await store.put(P, STAGING, "KEY", "value", owner)
        await store.delete_environment(P, STAGING, owner)

        refreshed = await store.get_project(P, owner)
        assert STAGING not in refreshed.active_environments

        with pytest.raises(NotFoundError):
            await store.get(P, STAGING, "KEY", owner)
        with pytest.raises(NotFoundError):
            await store.list(P, STAGING, owner)
        with pytest.raises(NotFoundError):
            await store.put(P, STAGING, "KEY", "again", owner)

        history = await store.history(P, STAGING, "KEY", owner)
        assert [v.version for v in history] == [1]

    async def test_recreating_tombstoned_environment_conflicts(self, store, project, owner):
        await store.delete_environment(P, STAGING, owner)
        with pytest.raises(ConflictError):
            await store.create_environment(P, STAGING, owner)

    async def test_create_environment(self, store, owner):
        await store.create_project(P, "Dev only", owner, [DEV])
        env = await store.create_environment(P, "production", owner)
        assert env.environment is EnvironmentId.PRODUCTION
        with pytest.raises(ConflictError):
            await store.create_environment(P, "production", owner)

    async def test_editor_cannot_manage_environments(self, store, project, editor):
        with pytest.raises(ForbiddenError):
            await store.delete_environment(P, DEV, editor)

    async def test_duplicate_project(self, store, project, owner):
        with pytest.raises(ConflictError):
            await store.create_project(P, "Again", owner)

    async def test_invalid_project_id(self, store, owner):
        with pytest.raises(ValidationError):
            await store.create_project("bad id", "Bad", owner)

    async def test_duplicate_initial_environments(self, store, owner):
        with pytest.raises(ValidationError):
            await store.create_project(P, "Dup", owner, ["development", "DEVELOPMENT"])

    async def test_list_projects_is_scoped(self, store, project, owner, outsider):
        assert [p.project_id for p in await store.list_projects(owner)] == [P]
        assert await store.list_projects(outsider) == []


class TestConcurrency:
    async def test_concurrent_puts_on_one_key(self, store, project, owner, editor, audit_log):
        a, b = await asyncio.gather(
            store.put(P, DEV, "DATABASE_URL", "postgresql://db-a.internal/app", owner),
            store.put(P, DEV, "DATABASE_URL", "postgresql://db-b.internal/app", editor),
        )
        assert sorted([a.version, b.version]) == [1, 2]

        latest = a if a.version == 2 else b
        assert (await store.get(P, DEV, "DATABASE_URL", owner)).plaintext == latest.plaintext

        puts = await _entries(audit_log, operation=Operation.PUT)
        assert [e.version for e in puts] == [1, 2]
        assert [e.actor_id for e in puts] == [
            (a if a.version == 1 else b).author_id,
            latest.author_id,
        ]

    async def test_many_concurrent_puts_are_gap_free(self, store, project, owner):
        results = await asyncio.gather(*(store.put(P, DEV, "HOT", f"value-{i}", owner) for i in range(50)))
        assert sorted(r.version for r in results) == list(range(1, 51))
        history = await store.history(P, DEV, "HOT", owner)
        assert [v.version for v in history] == list(range(1, 51))

    async def test_audit_order_matches_version_order_across_keys(self, store, project, owner, audit_log):
        await asyncio.gather(
            *(store.put(P, DEV, f"KEY_{i % 3}", f"value-{i}", owner) for i in range(30))
        )
        for key in ["KEY_0", "KEY_1", "KEY_2"]:
            puts = await _entries(audit_log, operation=Operation.PUT, key=key)
            assert [e.version for e in puts] == list(range(1, 11))

    async def test_cancelled_put_still_commits_with_audit(self, memory_storage, envelope, owner):
        audit = GatedAuditLog()
        store = SecretStore(memory_storage, envelope, audit)
        await store.create_project(P, "Cancel", owner, [DEV])

        task = asyncio.create_task(store.put(P, DEV, "KEY", "value", owner))
        await audit.entered.wait()
        task.cancel()
        audit.release.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        history = await store.history(P, DEV, "KEY", owner)
        assert [v.version for v in history] == [1]
        puts = await _entries(audit, operation=Operation.PUT)
        assert [e.version for e in puts] == [1]

    async def test_failed_audit_commits_nothing(self, memory_storage, envelope, owner):
        audit = FailingAuditLog()
        store = SecretStore(memory_storage, envelope, audit)
        await store.create_project(P, "Rollback", owner, [DEV])
        with pytest.raises(StorageError):
            await store.put(P, DEV, "KEY", "value", owner)
        with pytest.raises(NotFoundError):
            await store.get(P, DEV, "KEY", owner)
        assert await memory_storage.history(store_ref("KEY")) == []
        assert await memory_storage.latest_version(store_ref("KEY")) is None
        assert await _entries(audit, operation=Operation.PUT, outcome=Outcome.ALLOWED) == []

    async def test_failed_commit_is_never_visible(self, memory_storage, envelope, owner):
        audit = GatedAuditLog(fail=True)
        store = SecretStore(memory_storage, envelope, audit)
        await store.create_project(P, "Rollback", owner, [DEV])

        put = asyncio.create_task(store.put(P, DEV, "KEY", "value", owner))
        await audit.entered.wait()
        reader = asyncio.create_task(store.get(P, DEV, "KEY", owner))
        await asyncio.sleep(0)
        audit.release.set()

        with pytest.raises(StorageError):
            await put
        with pytest.raises(NotFoundError):
            await reader
        assert await audit.count(AuditFilter(operation=Operation.PUT, outcome=Outcome.ALLOWED)) == 0

    async def test_retry_after_failed_commit_starts_at_one(self, memory_storage, envelope, audit_log, owner):
        failing = SecretStore(memory_storage, envelope, FailingAuditLog())
        await failing.create_project(P, "Retry", owner, [DEV])
        with pytest.raises(StorageError):
            await failing.put(P, DEV, "KEY", "value", owner)

        healthy = SecretStore(memory_storage, envelope, audit_log)
        assert (await healthy.put(P, DEV, "KEY", "value", owner)).version == 1
        [entry] = await _entries(audit_log, operation=Operation.PUT)
        assert entry.version == 1


class TestMemberships:
    async def test_creator_is_owner(self, store, owner):
        await store.create_project(P, "Fresh", owner, [DEV])
        [membership] = await store.list_members(P, owner)
        assert membership.actor_id == "alice"
        assert membership.role is Role.OWNER

    async def test_list_members_sorted(self, store, project, owner):
        members = await store.list_members(P, owner)
        assert [(m.actor_id, m.role) for m in members] == [
            ("alice", Role.OWNER),
            ("bob", Role.EDITOR),
            ("carol", Role.VIEWER),
        ]

    async def test_add_member_accepts_role_name(self, store, project, owner, audit_log):
        added = await store.add_member(P, "dave", "viewer", owner)
        assert added.role is Role.VIEWER
        [entry] = await _entries(audit_log, operation=Operation.ADD_MEMBER, subject="dave")
        assert entry.outcome is Outcome.ALLOWED
        assert entry.actor_id == "alice"

    async def test_duplicate_member_conflicts(self, store, project, owner, audit_log):
        with pytest.raises(ConflictError):
            await store.add_member(P, "bob", Role.VIEWER, owner)
        [entry] = await _entries(audit_log, operation=Operation.ADD_MEMBER, outcome=Outcome.DENIED)
        assert entry.reason == "conflict"
        assert entry.subject == "bob"

    @pytest.mark.parametrize("role", [Role.OWNER, "owner", "admin"])
    async def test_only_editor_or_viewer_can_be_granted(self, store, project, owner, role):
        with pytest.raises(ValidationError):
            await store.add_member(P, "dave", role, owner)
        assert "dave" not in [m.actor_id for m in await store.list_members(P, owner)]

    async def test_update_role(self, store, project, owner, editor):
        updated = await store.update_member_role(P, editor.actor_id, Role.VIEWER, owner)
        assert updated.role is Role.VIEWER
        with pytest.raises(ForbiddenError):
            await store.put(P, DEV, "KEY", "value", editor)

    async def test_update_to_same_role_conflicts(self, store, project, owner, viewer):
        with pytest.raises(ConflictError):
            await store.update_member_role(P, viewer.actor_id, Role.VIEWER, owner)

    async def test_update_non_member(self, store, project, owner, audit_log):
        with pytest.raises(NotFoundError):
            await store.update_member_role(P, "nobody", Role.EDITOR, owner)
        [entry] = await _entries(audit_log, operation=Operation.UPDATE_MEMBER)
        assert entry.reason == "not_found"

    async def test_owner_membership_is_fixed(self, store, project, owner):
        with pytest.raises(ConflictError):
            await store.update_member_role(P, owner.actor_id, Role.VIEWER, owner)
        with pytest.raises(ConflictError):
            await store.remove_member(P, owner.actor_id, owner)
        assert (await store.list_members(P, owner))[0].role is Role.OWNER

    async def test_remove_member(self, store, project, owner, viewer):
        await store.remove_member(P, viewer.actor_id, owner)
        assert [m.actor_id for m in await store.list_members(P, owner)] == ["alice", "bob"]
        assert await store.list_projects(viewer) == []
        with pytest.raises(NotFoundError):
            await store.remove_member(P, viewer.actor_id, owner)

    @pytest.mark.parametrize(
        "call",
        [
            lambda s, a: s.add_member(P, "dave", Role.VIEWER, a),
            lambda s, a: s.update_member_role(P, "carol", Role.EDITOR, a),
            lambda s, a: s.remove_member(P, "carol", a),
            lambda s, a: s.list_members(P, a),
        ],
    )
    async def test_membership_management_is_owner_only(self, store, project, editor, audit_log, call):
        with pytest.raises(ForbiddenError) as exc_info:
            await call(store, editor)
        assert exc_info.value.reason.value == "role_insufficient"
        [entry] = await _entries(audit_log, actor_id="bob")
        assert entry.outcome is Outcome.DENIED

    async def test_owner_of_one_project_can_view_another(self, store, project, owner, viewer):
        await store.create_project("proj-2", "Other", viewer, [DEV])
        await store.add_member("proj-2", owner.actor_id, Role.VIEWER, viewer)
        assert [p.project_id for p in await store.list_projects(owner)] == [P, "proj-2"]
        with pytest.raises(ForbiddenError):
            await store.put("proj-2", DEV, "KEY", "value", owner)
        assert (await store.put(P, DEV, "KEY", "value", owner)).version == 1


class TestPutMany:
    async def test_writes_all_keys_in_order(self, store, project, owner, audit_log):
        await store.put(P, DEV, "B", "old", owner)
        written = await store.put_many(P, DEV, {"C": "3", "A": "1", "B": "2"}, owner, comment="bulk")
        assert [(v.key, v.version, v.plaintext) for v in written] == [("A", 1, "1"), ("B", 2, "2"), ("C", 1, "3")]
        assert all(v.comment == "bulk" for v in written)
        assert [e.operation for e in await _entries(audit_log, outcome=Outcome.ALLOWED)][-4:] == [
            Operation.PUT,
            Operation.PUT,
            Operation.PUT,
            Operation.IMPORT,
        ]

    async def test_locked_key_blocks_whole_batch(self, memory_storage, envelope, audit_log, owner):
        store = SecretStore(memory_storage, envelope, audit_log, lock_timeout=0.05)
        await store.create_project(P, "Batch", owner, [DEV])
        async with store._locks.hold(store_ref("B")):
            with pytest.raises(ConflictError):
                await store.put_many(P, DEV, {"A": "1", "B": "2"}, owner)
        assert await store.list(P, DEV, owner) == []
        assert await _entries(audit_log, operation=Operation.PUT) == []
        [entry] = await _entries(audit_log, operation=Operation.IMPORT)
        assert entry.reason == "conflict"

    async def test_failed_audit_writes_no_key(self, memory_storage, envelope, owner):
        store = SecretStore(memory_storage, envelope, FailingAuditLog())
        await store.create_project(P, "Batch", owner, [DEV])
        with pytest.raises(StorageError):
            await store.put_many(P, DEV, {"A": "1", "B": "2"}, owner)
        assert await store.list(P, DEV, owner) == []

    async def test_tombstoned_environment(self, store, project, owner):
        await store.delete_environment(P, STAGING, owner)
        with pytest.raises(NotFoundError):
            await store.put_many(P, STAGING, {"A": "1"}, owner)

    async def test_invalid_key_writes_nothing(self, store, project, owner):
        with pytest.raises(ValidationError):
            await store.put_many(P, DEV, {"GOOD": "1", "BAD KEY": "2"}, owner)
        assert await store.list(P, DEV, owner) == []

    async def test_viewer_is_denied(self, store, project, viewer):
        with pytest.raises(ForbiddenError):
            await store.put_many(P, DEV, {"A": "1"}, viewer)


class TestCorruption:
    @staticmethod
    def _tamper(storage: InMemorySecretStorage, key: str) -> None:
        slot = (P, DEV, key)
        *older, last = storage._versions[slot]
        flipped = bytes([last.ciphertext[0] ^ 0xFF]) + last.ciphertext[1:]
        storage._versions[slot] = tuple(older) + (replace(last, ciphertext=flipped),)

    async def test_corrupted_get_is_reported(self, store, memory_storage, project, owner, audit_log):
        await store.put(P, DEV, "BROKEN", "value-one", owner)
        await store.put(P, DEV, "HEALTHY", "value-two", owner)
        self._tamper(memory_storage, "BROKEN")

        with pytest.raises(CorruptedSecretError):
            await store.get(P, DEV, "BROKEN", owner)
        assert (await store.get(P, DEV, "HEALTHY", owner)).plaintext == "value-two"

        [entry] = await _entries(audit_log, operation=Operation.GET, outcome=Outcome.DENIED)
        assert entry.reason == "corrupted_secret"

    async def test_list_redacts_corrupted_values(self, store, memory_storage, project, owner):
        await store.put(P, DEV, "BROKEN", "value-one", owner)
        await store.put(P, DEV, "HEALTHY", "value-two", owner)
        self._tamper(memory_storage, "BROKEN")

        broken, healthy = await store.list(P, DEV, owner)
        assert broken.key == "BROKEN"
        assert broken.plaintext is None
        assert healthy.plaintext == "value-two"

    async def test_other_context_ciphertext_is_corrupted(self, memory_storage, store, project, owner):
        await store.put(P, DEV, "A_KEY", "value-a", owner)
        await store.put(P, DEV, "B_KEY", "value-b", owner)
        [a] = await memory_storage.history(store_ref("A_KEY"))
        [b] = await memory_storage.history(store_ref("B_KEY"))
        memory_storage._versions[(P, DEV, "B_KEY")] = (
            replace(b, ciphertext=a.ciphertext, nonce=a.nonce),
        )
        with pytest.raises(CorruptedSecretError):
            await store.get(P, DEV, "B_KEY", owner)


class TestEnvelopeIntegration:
    async def test_other_master_key_cannot_read(self, memory_storage, audit_log, project, store, owner):
        await store.put(P, DEV, "KEY", "value", owner)
        other = SecretStore(memory_storage, Envelope(StaticKeyProvider(SecureKey.generate())), audit_log)
        with pytest.raises(CorruptedSecretError):
            await other.get(P, DEV, "KEY", owner)
