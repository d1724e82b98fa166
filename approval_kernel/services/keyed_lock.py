"""
KeyedLock -- per-key mutual exclusion within one process.

Serializes read-validate-write sequences per invoice id (and per user id
for delegation records).  Complements ``SELECT ... FOR UPDATE``: on
PostgreSQL the row lock serializes across processes, on SQLite (no row
locks) this is the only serialization.

Entries are reference-counted and dropped when the last holder releases,
so the table does not grow with the number of invoices ever touched.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
