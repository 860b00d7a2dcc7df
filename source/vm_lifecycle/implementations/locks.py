import threading
from collections.abc import Iterator
from contextlib import contextmanager

from ..models.disks import DiskFormat, disk_key


def disk_lock_key(name: str, fmt: DiskFormat | str) -> str:
    return f"disk:{disk_key(name, fmt)}"


def vm_lock_key(vm_id: str) -> str:
    return f"vm:{vm_id}"


class KeyedLocks:
    """
    One re-entrant lock per entity key.

    Keys are acquired in sorted order, and callers take disk keys before VM
    keys, so two operations on overlapping entity sets cannot deadlock.
    A key's lock exists only while some caller holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        acquired: list[threading.RLock] = []
        checked_out: list[str] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                checked_out.append(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)
