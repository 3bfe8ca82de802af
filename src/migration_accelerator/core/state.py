"""Durable collaborators shared across requests: key-value state and the persistent lock."""

from __future__ import annotations

import time
from typing import Any, Callable

from .storage import Storage


class KeyValueState:
    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def get(self, key: str, default: Any = None) -> Any:
        return self.storage.kv_get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.storage.kv_set(key, value)

    def delete(self, key: str) -> None:
        self.storage.kv_delete(key)


class PersistentLock:
    """TTL lock stored in the semaphore table.

    Rows carry the owner value, so a later request of the same session can renew or
    release a lock acquired by an earlier one. Expired rows are only cleared when
    somebody looks at the lock; there is no reaper.
    """

    def __init__(
        self,
        storage: Storage,
        owner: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.owner = owner
        self.clock = clock

    def acquire(self, name: str, ttl: float) -> bool:
        ttl = max(float(ttl), 0.001)
        now = self.clock()
        if self.storage.semaphore_renew(name, self.owner, now + ttl, now):
            return True
        if self.storage.semaphore_insert(name, self.owner, now + ttl):
            return True
        # Retry once when the current holder turned out to be expired.
        if self.lock_may_be_available(name):
            return self.storage.semaphore_insert(name, self.owner, now + ttl)
        return False

    def release(self, name: str) -> None:
        self.storage.semaphore_delete(name, self.owner)

    def lock_may_be_available(self, name: str) -> bool:
        row = self.storage.semaphore_fetch(name)
        if row is None:
            return True
        now = self.clock()
        if float(row["expire"]) < now:
            self.storage.semaphore_delete_expired(name, now)
            return True
        return False
