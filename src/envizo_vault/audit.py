"""
Append-only audit log.

This module provides:
- AuditLog: Abstract audit log (append, batch append and lazy query)
- InMemoryAuditLog: asyncio-safe in-memory implementation

Entries are never updated or deleted. Each log instance assigns a strictly
increasing sequence number on append, which is the insertion order returned
by query().
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import replace
from typing import AsyncIterator, Dict, List, Optional, Sequence

from .models import AuditEntry, AuditFilter


class AuditLog(ABC):
    """Abstract append-only audit log."""

    @abstractmethod
    async def append_many(self, entries: Sequence[AuditEntry]) -> List[AuditEntry]:
        """
        Append entries as one unit: all of them, in order, or none.

        Returns the stored entries with their sequence numbers.
        """
        ...

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry. Returns the stored entry with its sequence number."""
        [stored] = await self.append_many([entry])
        return stored

    @abstractmethod
    def query(self, audit_filter: Optional[AuditFilter] = None) -> AsyncIterator[AuditEntry]:
        """Lazily yield matching entries in insertion order."""
        ...

    async def count(self, audit_filter: Optional[AuditFilter] = None) -> int:
        n = 0
        async for _ in self.query(audit_filter):
            n += 1
        return n

    async def stats(self, audit_filter: Optional[AuditFilter] = None) -> Dict[str, object]:
        """Summary counts by operation and outcome."""
        by_operation: Counter = Counter()
        by_outcome: Counter = Counter()
        earliest = latest = None
        async for entry in self.query(audit_filter):
            by_operation[entry.operation.value] += 1
            by_outcome[entry.outcome.value] += 1
            if earliest is None:
                earliest = entry.timestamp
            latest = entry.timestamp
        return {
            "total_entries": sum(by_outcome.values()),
            "by_operation": dict(by_operation),
            "by_outcome": dict(by_outcome),
            "earliest": earliest.isoformat() if earliest else None,
            "latest": latest.isoformat() if latest else None,
        }

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryAuditLog(AuditLog):
    """
    In-memory audit log for tests and embedded use.

    Uses asyncio.Lock so sequence assignment and list append are one step.
    """

    def __init__(self) -> None:
        self._entries: List[AuditEntry] = []
        self._lock = asyncio.Lock()

    async def append_many(self, entries: Sequence[AuditEntry]) -> List[AuditEntry]:
        async with self._lock:
            start = len(self._entries) + 1
            stored = [replace(e, sequence=start + i) for i, e in enumerate(entries)]
            self._entries.extend(stored)
            return stored

    async def query(self, audit_filter: Optional[AuditFilter] = None) -> AsyncIterator[AuditEntry]:
        # Entries are only ever appended, so iterating by index is safe while
        # concurrent appends happen; it yields at least everything present now.
        audit_filter = audit_filter or AuditFilter()
        i = 0
        while i < len(self._entries):
            entry = self._entries[i]
            i += 1
            if audit_filter.matches(entry):
                yield entry

    def __len__(self) -> int:
        return len(self._entries)
