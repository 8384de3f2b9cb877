"""
Per-key write locks.

Writes to one (project, environment, key) are serialized; writes to
different keys never wait on each other. A lock entry lives only while some
writer holds or awaits it.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Iterable, Optional

from .errors import ConflictError


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyLockRegistry:
    """Registry of asyncio locks keyed by an arbitrary hashable identity."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._timeout = timeout
        self._slots: Dict[Hashable, _Slot] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """
        Hold the lock for `key` for the duration of the block.

        Raises:
            ConflictError: If the lock is not acquired within the timeout
        """
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.users += 1
        try:
            try:
                await asyncio.wait_for(slot.lock.acquire(), self._timeout)
            except asyncio.TimeoutError:
                raise ConflictError(f"Timed out waiting for write lock on {key}") from None
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(key) is slot:
                del self._slots[key]

    @asynccontextmanager
    async def hold_all(self, keys: Iterable[Hashable]) -> AsyncIterator[None]:
        """
        Hold the locks for several keys at once.

        Locks are taken in ascending `str(key)` order, so two callers with
        overlapping key sets cannot deadlock. If any wait times out, every lock
        taken so far is released before ConflictError propagates.
        """
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys), key=str):
                await stack.enter_async_context(self.hold(key))
            yield

    def __len__(self) -> int:
        return len(self._slots)

    def is_locked(self, key: Hashable) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.lock.locked()
