"""
ledger_services.target_locks -- in-process single writer per target.

One re-entrant lock per (target type, target id).  A unit of work that
touches several targets (an amendment moving a payment between tickets)
takes their locks in one global order, so two such units cannot
deadlock each other.  Database row locks and version checks still guard
against writers in other processes.

A lock lives only while some thread holds it or waits on it; the last
thread out drops it from the registry.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from uuid import UUID

from ledger_kernel.domain.payments import TargetType

TargetKey = tuple[TargetType, UUID]


def _order(key: TargetKey) -> tuple[str, str]:
    return key[0].value, str(key[1])


@dataclass
class _Slot:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class TargetLockRegistry:
    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._slots: dict[TargetKey, _Slot] = {}

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._slots)

    def lock_for(self, key: TargetKey) -> threading.RLock | None:
        """The live lock for ``key``, or None when no thread holds or awaits it."""
        with self._registry_lock:
            slot = self._slots.get(key)
            return slot.lock if slot else None

    def _checkout(self, key: TargetKey) -> threading.RLock:
        with self._registry_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            slot.users += 1
            return slot.lock

    def _checkin(self, key: TargetKey) -> None:
        with self._registry_lock:
            slot = self._slots[key]
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]

    @contextmanager
    def hold(self, keys: Iterable[TargetKey]) -> Iterator[list[TargetKey]]:
        """Acquire every key's lock in sorted order; release on exit."""
        ordered = sorted(set(keys), key=_order)
        with ExitStack() as stack:
            for key in ordered:
                lock = self._checkout(key)
                stack.callback(self._checkin, key)
                stack.enter_context(lock)
            yield ordered


# Shared by every orchestrator in the process.
default_registry = TargetLockRegistry()
