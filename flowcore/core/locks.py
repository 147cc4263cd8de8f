"""Per-entity lock registry.

Direct API mutations and automation actions on the same entity take the same
lock, so a human edit and an automation action never interleave. Dependency
edge mutations take the owning project's lock.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        # Holders plus threads waiting to hold
        self.users = 0


class EntityLockRegistry:
    """
    Hands out one re-entrant lock per key while anyone holds or waits for it.

    An entry is dropped once its last user leaves, so the registry only keeps
    the keys currently in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def users(self, key: Hashable) -> int:
        """Threads holding or waiting for ``key``, counting re-entrant holds."""
        with self._guard:
            entry = self._locks.get(key)
            return entry.users if entry else 0

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]


# Process-wide registry
entity_locks = EntityLockRegistry()
