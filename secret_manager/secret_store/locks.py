"""In-process mutual exclusion keyed by workspace."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Iterator, List


class KeyedLock:
    """Hand out one re-entrant lock per key, e.g. per workspace id.

    A key's lock is dropped once no thread holds or waits for it.
    """

    def __init__(self) -> None:
        # key -> [lock, holders and waiters]
        self._locks: Dict[str, List] = {}
        self._guard = Lock()

    def _acquire_entry(self, key: str) -> RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _release_entry(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        key = str(key)
        lock = self._acquire_entry(key)
        try:
            with lock:
                yield
        finally:
            self._release_entry(key)


_workspace_locks = KeyedLock()


def get_workspace_locks() -> KeyedLock:
    """Return the process-wide workspace lock registry."""

    return _workspace_locks
