"""
auth/locks.py -- Per-key mutual exclusion for read-modify-write sequences.

The lockout tracker and session manager serialize mutations per account so
two concurrent failed logins cannot both read count=4 and both write 5, and
two concurrent logins cannot both believe they are under the session cap.

Locks are created on first use and dropped when the last holder releases, so
the table never grows with the number of accounts ever seen. Acquisition is
bounded: a holder that cannot get the lock within the timeout fails the
operation with StoreUnavailableError instead of waiting (and never retries,
since retrying a failure record could double-count).

These are in-process locks. Cross-process safety comes from the store's
compare-and-swap updates.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from auth.errors import StoreUnavailableError


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLock:
    """Dictionary of reference-counted locks keyed by string.

    Usage:
        locks = KeyedLock(timeout=5.0)
        with locks.hold(f"lockout:{account_id}"):
            ...read, compute, write...
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
        acquired = entry.lock.acquire(timeout=self.timeout)
        try:
            if not acquired:
                raise StoreUnavailableError(f"Timed out waiting for lock {key!r}.")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
