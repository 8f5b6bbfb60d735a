"""
Per-key mutual exclusion.

Locks are created on first use and dropped once nobody holds or waits on
them, so distinct keys never contend with each other.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Optional


class _Entry:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    """Registry of one lock per key"""

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None):
        """
        Hold the lock for ``key``.

        With ``timeout=0`` the attempt fails fast; a lock that cannot be
        taken yields False instead of blocking.
        """
        entry = self._checkout(key)
        if timeout is None:
            acquired = entry.lock.acquire()
        elif timeout <= 0:
            acquired = entry.lock.acquire(blocking=False)
        else:
            acquired = entry.lock.acquire(timeout=timeout)
        try:
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            self._checkin(key, entry)

    def is_held(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()
