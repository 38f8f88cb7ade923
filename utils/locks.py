"""Per-key locks that exist only while someone holds or waits on them."""

import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator


class KeyedLocks:
    """A lock per key, created on first use and dropped after the last release.

    Keys passed to ``hold`` together are acquired in sorted order, so two
    callers locking the same pair in opposite order cannot deadlock.

    Example:
        locks = KeyedLocks()
        with locks.hold("a.qcow2", "b.qcow2"):
            ...
    """

    def __init__(self, factory: Callable[[], object] = threading.Lock):
        self._factory = factory
        self._guard = threading.Lock()
        self._locks: Dict[str, object] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, keys):
        with self._guard:
            locks = []
            for key in keys:
                if key not in self._locks:
                    self._locks[key] = self._factory()
                self._users[key] = self._users.get(key, 0) + 1
                locks.append(self._locks[key])
            return locks

    def _checkin(self, keys) -> None:
        with self._guard:
            for key in keys:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        keys = sorted(set(keys))
        locks = self._checkout(keys)
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            self._checkin(keys)
