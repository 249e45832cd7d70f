"""
auth/sessions.py -- Server-tracked refresh-token sessions.

A session is one authenticated login. It holds the HMAC fingerprint of the
refresh token currently bound to it, never the token itself.

Cap enforcement:
  create_session() runs under the per-account lock: purge the account's
  expired sessions, evict the least-recently-used live ones until there is
  room, insert. Login is never refused because of the cap.

Rotation:
  rotate_fingerprint() is the serialization point for refresh. The store swaps
  the fingerprint only WHERE fingerprint = :presented, so of two refreshes
  racing with the same token exactly one sees ROTATED. The loser, or anyone
  replaying an already-rotated token, sees REUSED and the session is revoked.

Outcomes (ROTATED / REUSED / MISSING / EXPIRED, booleans, counts) are
returned, not raised. Only StoreUnavailableError escapes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import timedelta

from auth.locks import KeyedLock
from auth.models import RotationOutcome, Session
from auth.store import AuthStore
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("casegate.sessions")


def new_session_id() -> str:
    """Return an opaque, unguessable session identifier."""
    return secrets.token_urlsafe(32)


def _lru_key(session: Session):
    return (session.last_used_at, session.issued_at)


class SessionManager:
    """Creates, lists, rotates and revokes sessions for accounts.

    Usage:
        sessions = SessionManager(store, settings)
        session = sessions.create_session(account.id, "Firefox on Linux")
        sessions.revoke_all(account.id)
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
    # Creation
    # ------------------------------------------------------------------

    def create_session(
        self,
        account_id: str,
        metadata: str = "",
        *,
        session_id: str | None = None,
        fingerprint: str = "",
        ttl_seconds: int | None = None,
    ) -> Session:
        """Create a session, evicting the least-recently-used ones if the cap is reached."""
        ttl = ttl_seconds if ttl_seconds is not None else self._settings.refresh_token_ttl_seconds
        with self._locks.hold(f"sessions:{account_id}"):
            now = self._clock()
            self._store.delete_expired_sessions(now, account_id)
            live = sorted(self._store.list_sessions(account_id), key=_lru_key)
            excess = len(live) - self._settings.max_sessions + 1
            if excess > 0:
                evicted = [s.id for s in live[:excess]]
                self._store.delete_sessions(evicted)
                logger.info(
                    "Session cap reached for account %s; evicted %d session(s)",
                    account_id,
                    len(evicted),
                )
            session = Session(
                id=session_id or new_session_id(),
                account_id=account_id,
                fingerprint=fingerprint,
                issued_at=now,
                expires_at=now + timedelta(seconds=ttl),
                last_used_at=now,
                metadata=(metadata or "")[:255],
            )
            self._store.insert_session(session)
        return session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        """Return the session if it exists and has not expired."""
        session = self._store.get_session(session_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    def list_sessions(self, account_id: str) -> list[Session]:
        """Live sessions for the account, most recently used first."""
        now = self._clock()
        live = [s for s in self._store.list_sessions(account_id) if not s.is_expired(now)]
        return sorted(live, key=_lru_key, reverse=True)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def touch(self, session_id: str) -> bool:
        return self._store.touch_session(session_id, self._clock())

    def rebind(self, session_id: str, fingerprint: str) -> bool:
        """Bind the session to a new refresh token unconditionally (after a secret change)."""
        return self._store.set_fingerprint(session_id, fingerprint, self._clock())

    def rotate_fingerprint(self, session_id: str, presented: str, new: str) -> RotationOutcome:
        """Swap the session's fingerprint from presented to new, detecting reuse."""
        session = self._store.get_session(session_id)
        if session is None:
            return RotationOutcome.MISSING
        now = self._clock()
        if session.is_expired(now):
            self._store.delete_session(session_id)
            return RotationOutcome.EXPIRED
        if not hmac.compare_digest(session.fingerprint, presented):
            self._revoke_for_reuse(session)
            return RotationOutcome.REUSED
        if not self._store.swap_fingerprint(session_id, presented, new, now):
            # A concurrent refresh with the same token rotated first.
            self._revoke_for_reuse(session)
            return RotationOutcome.REUSED
        return RotationOutcome.ROTATED

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, session_id: str) -> bool:
        return self._store.delete_session(session_id)

    def revoke_owned(self, account_id: str, session_id: str) -> bool:
        """Revoke session_id only if it belongs to account_id.

        Returns False for unknown ids and for other accounts' sessions alike,
        so callers cannot discover session ids they do not own.
        """
        session = self._store.get_session(session_id)
        if session is None or session.account_id != account_id:
            return False
        return self._store.delete_session(session_id)

    def revoke_all(self, account_id: str, except_session_id: str | None = None) -> int:
        """Delete the account's sessions and bump its token version.

        The version bump invalidates every access token already issued to the
        account, so "log out everywhere" takes effect immediately rather than
        at natural expiry. Returns the number of sessions removed.
        """
        with self._locks.hold(f"sessions:{account_id}"):
            removed = self._store.delete_account_sessions(account_id, except_session_id)
            self._store.update_token_version(account_id, self._clock())
        logger.info("Revoked %d session(s) for account %s", removed, account_id)
        return removed

    def purge_expired(self) -> int:
        removed = self._store.delete_expired_sessions(self._clock())
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed

    def _revoke_for_reuse(self, session: Session) -> None:
        self._store.delete_session(session.id)
        logger.warning(
            "Refresh token reuse detected on session %s (account %s); session revoked",
            session.id[:8],
            session.account_id,
        )
