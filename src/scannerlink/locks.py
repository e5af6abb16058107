"""Per-entity locks."""

from __future__ import annotations

import threading
from typing import Dict, Hashable


class EntityLocks:
    """Hand out one lock per entity id.

    The registry lock only guards the dictionary; callers hold the entity
    lock for the duration of a write.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def discard(self, key: Hashable) -> None:
        with self._guard:
            self._locks.pop(key, None)
