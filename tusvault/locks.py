from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock


class KeyedLocks:
    """One mutex per upload id; entries are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: dict[str, Lock] = {}
        self._holders: dict[str, int] = {}
        self._lock = Lock()

    def _checkout(self, key: str) -> Lock:
        with self._lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = Lock()
                self._locks[key] = entry
            self._holders[key] = self._holders.get(key, 0) + 1
            return entry

    def _checkin(self, key: str) -> None:
        with self._lock:
            remaining = max(0, self._holders.get(key, 0) - 1)
            if remaining == 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._holders[key] = remaining

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        entry = self._checkout(key)
        try:
            with entry:
                yield
        finally:
            self._checkin(key)

    def active_keys(self) -> int:
        with self._lock:
            return len(self._locks)


session_locks = KeyedLocks()
