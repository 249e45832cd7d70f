"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic) -- dataclasses own
domain shape; the store, trackers and services do the work.

All datetimes are timezone-aware UTC. The store serializes them to ISO 8601
strings and restores the tzinfo on read.

status and lockout are independent: status is an administrative
decision with no expiry (deactivated / pending_verification), while the
lockout record is a temporary, self-healing reaction to failed attempts.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from auth.permissions import Role


class AccountStatus(str, Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    PENDING_VERIFICATION = "pending_verification"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class RotationOutcome(str, Enum):
    """Result of presenting a refresh-token fingerprint to its session."""

    ROTATED = "rotated"
    REUSED = "reused"  # fingerprint mismatch -- session has been revoked
    MISSING = "missing"  # no such session (logged out, evicted, or revoked)
    EXPIRED = "expired"


@dataclass
class Account:
    """A principal that can authenticate.

    email is stored normalized (stripped, lowercased). hashed_secret is a bcrypt
    string; the clear secret never reaches this object. token_version is
    embedded in every token; bumping it invalidates all outstanding tokens.
    """

    email: str
    hashed_secret: str
    role: Role = Role.CLIENT
    status: AccountStatus = AccountStatus.ACTIVE
    id: str | None = None
    token_version: int = 0
    created_by: str | None = None  # inviting or approving account id
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None
    email_verified_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.ACTIVE

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class Session:
    """One authenticated login, identified by an opaque id and bound to one refresh token.

    fingerprint is an HMAC of the current refresh token, never the token itself.
    metadata is an informational device/client string supplied at login.
    """

    id: str
    account_id: str
    fingerprint: str
    issued_at: datetime
    expires_at: datetime
    last_used_at: datetime
    metadata: str = ""

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class LockoutRecord:
    """Failed-attempt state for one account.

    revision increments on every write and is the compare-and-swap token for
    updates, so concurrent writers can never under-count failures.
    lock_cycles counts locks since the last success (progressive lockout).
    """

    account_id: str
    failed_attempts: int = 0
    locked_until: datetime | None = None
    lock_cycles: int = 0
    revision: int = 0

    def lock_active(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass(frozen=True)
class LockStatus:
    """Outcome returned by every LockoutTracker operation."""

    locked: bool
    remaining: timedelta = timedelta(0)
    failed_attempts: int = 0
    locked_until: datetime | None = None


@dataclass
class Invitation:
    """A revocable, single-use grant allowing one email to register with a given role.

    Issued by an already-privileged account. Only the SHA-256 of the code is
    stored; the raw code is returned once at creation.
    """

    email: str
    role: Role
    code_hash: str
    created_by: str
    expires_at: datetime
    id: str | None = None
    created_at: datetime | None = None
    used_at: datetime | None = None
    used_by: str | None = None
    revoked_at: datetime | None = None

    def is_pending(self, now: datetime) -> bool:
        return self.used_at is None and self.revoked_at is None and now < self.expires_at


@dataclass
class EmailVerification:
    """Outstanding proof-of-mailbox challenge for one account.

    A link token and a six-digit code are issued together; either completes
    verification. Only SHA-256 digests are stored. attempts counts wrong codes.
    """

    account_id: str
    token_hash: str
    code_hash: str
    sent_at: datetime
    expires_at: datetime
    attempts: int = 0
    used_at: datetime | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified token payload. Produced only by TokenService.verify()."""

    subject: str
    kind: TokenKind
    role: Role
    token_version: int
    issued_at: datetime
    expires_at: datetime
    jti: str
    session_id: str | None = None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    """Result of login, refresh, and secret changes.

    rotated is False when refresh-token rotation is disabled and the caller's
    refresh token was returned unchanged.
    """

    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    session_id: str
    issued_at: datetime
    rotated: bool = True

    @property
    def expires_in(self) -> int:
        """Access-token lifetime in whole seconds from issue."""
        return int((self.access_expires_at - self.issued_at).total_seconds())


@dataclass(frozen=True)
class ResolvedIdentity:
    """The authorization gate's answer: who is calling and what they may do."""

    account_id: str
    email: str
    role: Role
    permissions: frozenset[str] = field(default_factory=frozenset)
    claims: TokenClaims | None = None
