import threading
import weakref
from contextlib import contextmanager
from typing import Iterator
from uuid import UUID


class UserLocks:
    """One mutex per user; start, stop and claim bookkeeping for a user runs under it.

    Only local bookkeeping is done while holding a user's lock. Calls to the
    settlement network happen after it is released. Entries are weakly held
    and disappear once no caller is using a user's lock.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[UUID, threading.Lock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def _lock_for(self, user_id: UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def hold(self, user_id: UUID) -> Iterator[None]:
        lock = self._lock_for(user_id)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
