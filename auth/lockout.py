"""
auth/lockout.py -- Failed-attempt counting and temporary account locks.

State machine per account:

  counting --(failures reach threshold)--> locked --(window elapses)--> counting (count 0)
  counting --(success)--> counting (count 0)
  locked   --(failure or success)--> locked, unchanged

A failure arriving while a lock is active is a no-op: it neither extends the
window nor counts toward the next one. A correct secret presented while a lock
is active does not end the lock either; only time or an admin clear() does.

Progressive mode: each lock since the last success lasts
  base * factor ** (lock_cycles - 1), capped at lockout_max_duration_seconds.

Concurrency:
  Every read-modify-write runs under a per-account KeyedLock and is written
  with a compare-and-swap on the record's revision. The in-process lock keeps
  threads from contending; the CAS covers other processes sharing the store.
  A lost CAS re-reads and recomputes, so N concurrent failures always count N.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.errors import StoreUnavailableError
from auth.locks import KeyedLock
from auth.models import LockoutRecord, LockStatus
from auth.store import AuthStore
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("casegate.lockout")

_CAS_ATTEMPTS = 10


class LockoutTracker:
    """Counts consecutive failed authentications per account and enforces temporary locks.

    Usage:
        tracker = LockoutTracker(store, settings)
        status = tracker.record_failure(account_id)
        if status.locked:
            raise AccountLockedError(status.remaining)
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        clock: Clock = utcnow,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._locks = locks or KeyedLock(settings.lock_timeout_seconds)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_locked(self, account_id: str) -> LockStatus:
        """Pure read: report whether a lock is active right now. Never mutates."""
        return self._status(self._store.get_lockout(account_id))

    def record_failure(self, account_id: str) -> LockStatus:
        """Count one failed attempt; lock the account when the threshold is reached."""

        def apply(record: LockoutRecord) -> bool:
            now = self._clock()
            if record.lock_active(now):
                return False
            if record.locked_until is not None:
                # Previous window has elapsed: start counting afresh.
                record.failed_attempts = 0
                record.locked_until = None
            record.failed_attempts += 1
            if record.failed_attempts >= self._settings.lockout_threshold:
                record.lock_cycles += 1
                record.locked_until = now + self._lock_duration(record.lock_cycles)
                logger.warning(
                    "Account %s locked until %s after %d failed attempts",
                    account_id,
                    record.locked_until.isoformat(),
                    record.failed_attempts,
                )
            return True

        return self._mutate(account_id, apply)

    def record_success(self, account_id: str) -> LockStatus:
        """Reset the counter after a successful authentication. An active lock is left in place."""

        def apply(record: LockoutRecord) -> bool:
            if record.lock_active(self._clock()):
                return False
            if record.failed_attempts == 0 and record.locked_until is None and record.lock_cycles == 0:
                return False
            record.failed_attempts = 0
            record.locked_until = None
            record.lock_cycles = 0
            return True

        return self._mutate(account_id, apply)

    def clear(self, account_id: str) -> LockStatus:
        """Administrative unlock: drop any lock and reset every counter."""

        def apply(record: LockoutRecord) -> bool:
            if record.revision == 0:
                return False
            record.failed_attempts = 0
            record.locked_until = None
            record.lock_cycles = 0
            return True

        status = self._mutate(account_id, apply)
        logger.info("Lockout cleared for account %s", account_id)
        return status

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_duration(self, cycles: int) -> timedelta:
        base = self._settings.lockout_duration_seconds
        if not self._settings.progressive_lockout:
            return timedelta(seconds=base)
        seconds = base * self._settings.lockout_backoff_factor ** max(cycles - 1, 0)
        return timedelta(seconds=min(seconds, self._settings.lockout_max_duration_seconds))

    def _status(self, record: LockoutRecord) -> LockStatus:
        now = self._clock()
        if record.lock_active(now):
            return LockStatus(
                locked=True,
                remaining=record.locked_until - now,
                failed_attempts=record.failed_attempts,
                locked_until=record.locked_until,
            )
        attempts = 0 if record.locked_until is not None else record.failed_attempts
        return LockStatus(locked=False, failed_attempts=attempts)

    def _mutate(self, account_id: str, apply) -> LockStatus:
        """Run apply() against a fresh read until the compare-and-swap write lands.

        apply mutates the record in place and returns False when there is
        nothing to write; the current status is then returned unchanged.
        """
        with self._locks.hold(f"lockout:{account_id}"):
            for _ in range(_CAS_ATTEMPTS):
                record = self._store.get_lockout(account_id)
                expected = record.revision
                if not apply(record):
                    return self._status(record)
                if self._store.save_lockout(record, expected):
                    return self._status(record)
                logger.debug("Lockout CAS lost for account %s (revision %d); retrying", account_id, expected)
        raise StoreUnavailableError("Lockout record is under heavy contention.")
