"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services never touch SQL directly.

Every mutating method is a single atomic statement or a single transaction
(engine.begin()). Where two writers could race, the statement itself carries
the precondition so the database arbitrates:

  token_version     UPDATE ... SET token_version = token_version + 1
  session rotation  UPDATE ... WHERE fingerprint = :expected
  lockout records   UPDATE ... WHERE revision = :expected
  invitations       UPDATE ... WHERE used_at IS NULL AND revoked_at IS NULL
  reset tokens      UPDATE ... WHERE used_at IS NULL
  email challenges  UPDATE ... WHERE used_at IS NULL

Methods report a lost race by returning False (or None); they never retry.

Failure mapping:
  OperationalError (database unreachable, locked past timeout) is raised as
  StoreUnavailableError -- the one fatal, surfaced error in the core.
  IntegrityError on a duplicate email is raised as ConflictError.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so lexicographic comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import ConflictError, StoreUnavailableError, ValidationError
from auth.models import Account, AccountStatus, EmailVerification, Invitation, LockoutRecord, Session
from auth.permissions import Role
from core.clock import utcnow

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'casegate_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("hashed_secret", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default=Role.CLIENT.value),
    Column("status", String(30), nullable=False, server_default=AccountStatus.ACTIVE.value),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("created_by", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("email_verified_at", String(32)),
)

_secret_history = Table(
    "secret_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(32), nullable=False, index=True),
    Column("hashed_secret", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_lockouts = Table(
    "lockouts",
    _metadata,
    Column("account_id", String(32), primary_key=True),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("lock_cycles", Integer, nullable=False, server_default="0"),
    Column("revision", Integer, nullable=False, server_default="0"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("account_id", String(32), nullable=False, index=True),
    Column("fingerprint", String(64), nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("last_used_at", String(32), nullable=False),
    Column("device_meta", String(255), nullable=False, server_default=""),
)

_invitations = Table(
    "invitations",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False),
    Column("role", String(30), nullable=False),
    Column("code_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("created_by", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("used_by", String(32)),
    Column("revoked_at", String(32)),
)

_reset_tokens = Table(
    "reset_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # SHA-256 hex
    Column("account_id", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
)

_email_verifications = Table(
    "email_verifications",
    _metadata,
    Column("account_id", String(32), primary_key=True),  # one live challenge per account
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("code_hash", String(64), nullable=False),  # SHA-256 hex
    Column("sent_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for accounts, secret history, lockouts, sessions, invitations and one-time tokens.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        account = store.create_account(Account(email="a@example.com", hashed_secret=hash_secret("...")))
        store.get_by_email("A@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._begin() as conn:
            _metadata.create_all(conn)

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except OperationalError as exc:
            raise StoreUnavailableError("Account store is unavailable.") from exc

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except OperationalError as exc:
            raise StoreUnavailableError("Account store is unavailable.") from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self._connect() as conn:
                conn.execute(select(1))
        except StoreUnavailableError:
            return False
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        """Return True if at least one account exists (first-run detection)."""
        with self._connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    def create_account(
        self, account: Account, *, consume_invitation: str | None = None, now: datetime | None = None
    ) -> Account:
        """Insert a new account and return it with id and timestamps assigned.

        When consume_invitation is given, the invitation is marked used in the
        same transaction. If it was already used, revoked, or expired in the
        meantime, nothing is written and ValidationError is raised.

        Raises ConflictError if the email is already registered.
        """
        now = now or utcnow()
        account.id = account.id or uuid.uuid4().hex
        account.email = normalize_email(account.email)
        account.created_at = account.created_at or now
        account.updated_at = now
        try:
            with self._begin() as conn:
                if consume_invitation is not None:
                    claimed = conn.execute(
                        _invitations.update()
                        .where(
                            (_invitations.c.id == consume_invitation)
                            & _invitations.c.used_at.is_(None)
                            & _invitations.c.revoked_at.is_(None)
                            & (_invitations.c.expires_at > _iso(now))
                        )
                        .values(used_at=_iso(now), used_by=account.id)
                    )
                    if claimed.rowcount != 1:
                        raise ValidationError("Invitation is no longer valid.", errors=["invitation"])
                conn.execute(
                    _accounts.insert().values(
                        id=account.id,
                        email=account.email,
                        hashed_secret=account.hashed_secret,
                        role=account.role.value,
                        status=account.status.value,
                        token_version=account.token_version,
                        created_by=account.created_by,
                        created_at=_iso(account.created_at),
                        updated_at=_iso(account.updated_at),
                        email_verified_at=_iso(account.email_verified_at),
                    )
                )
        except IntegrityError as exc:
            raise ConflictError("An account with that email already exists.") from exc
        return account

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email (case-insensitive). Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: str) -> Account | None:
        with self._connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by email."""
        with self._connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.email)).fetchall()
        return [_row_to_account(r) for r in rows]

    def count_active_with_role(self, role: Role) -> int:
        """Return the number of active accounts holding role (last-admin guard)."""
        with self._connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_accounts)
                .where((_accounts.c.role == role.value) & (_accounts.c.status == AccountStatus.ACTIVE.value))
            ).scalar()
        return result or 0

    def update_secret(
        self, account_id: str, hashed_secret: str, history_limit: int, now: datetime | None = None
    ) -> bool:
        """Replace the account's secret hash, pushing the old one onto the history.

        The history is trimmed to history_limit entries (newest kept) in the
        same transaction. Returns False if the account does not exist.
        """
        now = _iso(now or utcnow())
        with self._begin() as conn:
            current = conn.execute(
                select(_accounts.c.hashed_secret).where(_accounts.c.id == account_id)
            ).scalar_one_or_none()
            if current is None:
                return False
            if history_limit > 0:
                conn.execute(
                    _secret_history.insert().values(account_id=account_id, hashed_secret=current, created_at=now)
                )
            stale = (
                select(_secret_history.c.id)
                .where(_secret_history.c.account_id == account_id)
                .order_by(_secret_history.c.id.desc())
                .offset(history_limit)
            )
            stale_ids = [r[0] for r in conn.execute(stale).fetchall()]
            if stale_ids:
                conn.execute(_secret_history.delete().where(_secret_history.c.id.in_(stale_ids)))
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(hashed_secret=hashed_secret, updated_at=now)
            )
        return True

    def set_secret_hash(self, account_id: str, hashed_secret: str, now: datetime | None = None) -> bool:
        """Overwrite the hash without touching history (cost upgrade of the same secret)."""
        with self._begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(hashed_secret=hashed_secret, updated_at=_iso(now or utcnow()))
            )
        return result.rowcount > 0

    def get_secret_history(self, account_id: str) -> list[str]:
        """Return previous secret hashes for the account, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                select(_secret_history.c.hashed_secret)
                .where(_secret_history.c.account_id == account_id)
                .order_by(_secret_history.c.id.desc())
            ).fetchall()
        return [r[0] for r in rows]

    def update_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        approved_by: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        values: dict = {"status": status.value, "updated_at": _iso(now or utcnow())}
        if approved_by is not None:
            values["created_by"] = approved_by
        with self._begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
        return result.rowcount > 0

    def update_role(self, account_id: str, role: Role, now: datetime | None = None) -> bool:
        with self._begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(role=role.value, updated_at=_iso(now or utcnow()))
            )
        return result.rowcount > 0

    def update_token_version(self, account_id: str, now: datetime | None = None) -> int | None:
        """Atomically increment the account's token version and return the new value.

        Every token carrying an older version fails verification from this
        point on. Returns None if the account does not exist.
        """
        with self._begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(token_version=_accounts.c.token_version + 1, updated_at=_iso(now or utcnow()))
            )
            if result.rowcount == 0:
                return None
            return conn.execute(
                select(_accounts.c.token_version).where(_accounts.c.id == account_id)
            ).scalar_one()

    def update_last_login(self, account_id: str, when: datetime) -> None:
        with self._begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_iso(when)))

    # ------------------------------------------------------------------
    # Lockouts
    # ------------------------------------------------------------------

    def get_lockout(self, account_id: str) -> LockoutRecord:
        """Return the lockout record, or a fresh zero record (revision 0) if none exists."""
        with self._connect() as conn:
            row = conn.execute(_lockouts.select().where(_lockouts.c.account_id == account_id)).fetchone()
        if row is None:
            return LockoutRecord(account_id=account_id)
        return _row_to_lockout(row)

    def save_lockout(self, record: LockoutRecord, expected_revision: int) -> bool:
        """Compare-and-swap write of a lockout record.

        Succeeds only if the stored revision still equals expected_revision
        (0 = no row yet). On success record.revision is advanced. Returns False
        if another writer got there first; the caller re-reads and recomputes.
        """
        values = {
            "failed_attempts": record.failed_attempts,
            "locked_until": _iso(record.locked_until),
            "lock_cycles": record.lock_cycles,
            "revision": expected_revision + 1,
        }
        try:
            with self._begin() as conn:
                if expected_revision == 0:
                    conn.execute(_lockouts.insert().values(account_id=record.account_id, **values))
                    written = 1
                else:
                    written = conn.execute(
                        _lockouts.update()
                        .where(
                            (_lockouts.c.account_id == record.account_id)
                            & (_lockouts.c.revision == expected_revision)
                        )
                        .values(**values)
                    ).rowcount
        except IntegrityError:
            return False
        if written != 1:
            return False
        record.revision = expected_revision + 1
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> None:
        with self._begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    account_id=session.account_id,
                    fingerprint=session.fingerprint,
                    issued_at=_iso(session.issued_at),
                    expires_at=_iso(session.expires_at),
                    last_used_at=_iso(session.last_used_at),
                    device_meta=session.metadata,
                )
            )

    def get_session(self, session_id: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, account_id: str) -> list[Session]:
        """Return every stored session for the account, expired ones included."""
        with self._connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(_sessions.c.account_id == account_id)
                .order_by(_sessions.c.last_used_at.desc(), _sessions.c.issued_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_sessions(self, session_ids: list[str]) -> int:
        if not session_ids:
            return 0
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id.in_(session_ids)))
        return result.rowcount

    def delete_account_sessions(self, account_id: str, except_session_id: str | None = None) -> int:
        """Delete all of an account's sessions, optionally sparing one. Returns the count removed."""
        condition = _sessions.c.account_id == account_id
        if except_session_id is not None:
            condition = condition & (_sessions.c.id != except_session_id)
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(condition))
        return result.rowcount

    def touch_session(self, session_id: str, when: datetime) -> bool:
        with self._begin() as conn:
            result = conn.execute(
                _sessions.update().where(_sessions.c.id == session_id).values(last_used_at=_iso(when))
            )
        return result.rowcount > 0

    def swap_fingerprint(self, session_id: str, expected: str, new: str, when: datetime) -> bool:
        """Replace the session fingerprint only if it still equals expected.

        This is the linearization point of refresh-token rotation: of two
        refreshes presenting the same token, exactly one sees rowcount 1.
        """
        with self._begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.fingerprint == expected))
                .values(fingerprint=new, last_used_at=_iso(when))
            )
        return result.rowcount == 1

    def set_fingerprint(self, session_id: str, fingerprint: str, when: datetime) -> bool:
        """Unconditionally re-bind a session to a new refresh token."""
        with self._begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.id == session_id)
                .values(fingerprint=fingerprint, last_used_at=_iso(when))
            )
        return result.rowcount > 0

    def delete_expired_sessions(self, now: datetime, account_id: str | None = None) -> int:
        condition = _sessions.c.expires_at <= _iso(now)
        if account_id is not None:
            condition = condition & (_sessions.c.account_id == account_id)
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(condition))
        return result.rowcount

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(self, invitation: Invitation) -> Invitation:
        invitation.id = invitation.id or uuid.uuid4().hex
        invitation.email = normalize_email(invitation.email)
        invitation.created_at = invitation.created_at or utcnow()
        with self._begin() as conn:
            conn.execute(
                _invitations.insert().values(
                    id=invitation.id,
                    email=invitation.email,
                    role=invitation.role.value,
                    code_hash=invitation.code_hash,
                    created_by=invitation.created_by,
                    created_at=_iso(invitation.created_at),
                    expires_at=_iso(invitation.expires_at),
                )
            )
        return invitation

    def get_invitation(self, invitation_id: str) -> Invitation | None:
        with self._connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.id == invitation_id)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def get_invitation_by_code_hash(self, code_hash: str) -> Invitation | None:
        with self._connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.code_hash == code_hash)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def list_invitations(self) -> list[Invitation]:
        """Return all invitations, newest first (audit trail included)."""
        with self._connect() as conn:
            rows = conn.execute(_invitations.select().order_by(_invitations.c.created_at.desc())).fetchall()
        return [_row_to_invitation(r) for r in rows]

    def revoke_invitation(self, invitation_id: str, when: datetime) -> bool:
        """Revoke a still-unused invitation. Returns False if used, revoked, or unknown."""
        with self._begin() as conn:
            result = conn.execute(
                _invitations.update()
                .where(
                    (_invitations.c.id == invitation_id)
                    & _invitations.c.used_at.is_(None)
                    & _invitations.c.revoked_at.is_(None)
                )
                .values(revoked_at=_iso(when))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token_hash: str, account_id: str, expires_at: datetime, when: datetime) -> None:
        """Store a reset token, retiring any earlier unused token for the same account."""
        with self._begin() as conn:
            conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.account_id == account_id) & _reset_tokens.c.used_at.is_(None))
                .values(used_at=_iso(when))
            )
            conn.execute(
                _reset_tokens.insert().values(
                    token_hash=token_hash,
                    account_id=account_id,
                    created_at=_iso(when),
                    expires_at=_iso(expires_at),
                )
            )

    def find_reset_token(self, token_hash: str, now: datetime) -> str | None:
        """Return the account id for an unexpired, unused reset token without consuming it."""
        with self._connect() as conn:
            return conn.execute(
                select(_reset_tokens.c.account_id).where(
                    (_reset_tokens.c.token_hash == token_hash)
                    & _reset_tokens.c.used_at.is_(None)
                    & (_reset_tokens.c.expires_at > _iso(now))
                )
            ).scalar_one_or_none()

    def consume_reset_token(self, token_hash: str, now: datetime) -> str | None:
        """Mark an unexpired, unused reset token as used and return its account id.

        Returns None for unknown, expired, or already-used tokens. The update
        carries the used_at IS NULL guard so a token can be consumed once.
        """
        with self._begin() as conn:
            account_id = conn.execute(
                select(_reset_tokens.c.account_id).where(
                    (_reset_tokens.c.token_hash == token_hash)
                    & _reset_tokens.c.used_at.is_(None)
                    & (_reset_tokens.c.expires_at > _iso(now))
                )
            ).scalar_one_or_none()
            if account_id is None:
                return None
            result = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.token_hash == token_hash) & _reset_tokens.c.used_at.is_(None))
                .values(used_at=_iso(now))
            )
            if result.rowcount != 1:
                return None
        return account_id

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def save_email_verification(self, challenge: EmailVerification) -> None:
        """Store a verification challenge, replacing any earlier one for the account."""
        with self._begin() as conn:
            conn.execute(
                _email_verifications.delete().where(_email_verifications.c.account_id == challenge.account_id)
            )
            conn.execute(
                _email_verifications.insert().values(
                    account_id=challenge.account_id,
                    token_hash=challenge.token_hash,
                    code_hash=challenge.code_hash,
                    sent_at=_iso(challenge.sent_at),
                    expires_at=_iso(challenge.expires_at),
                    attempts=challenge.attempts,
                )
            )

    def get_email_verification(self, account_id: str) -> EmailVerification | None:
        with self._connect() as conn:
            row = conn.execute(
                _email_verifications.select().where(_email_verifications.c.account_id == account_id)
            ).fetchone()
        return _row_to_email_verification(row) if row is not None else None

    def consume_email_verification(self, token_hash: str, now: datetime) -> str | None:
        """Retire an unexpired, unused challenge by its link token and return the account id."""
        with self._begin() as conn:
            account_id = conn.execute(
                select(_email_verifications.c.account_id).where(
                    (_email_verifications.c.token_hash == token_hash)
                    & _email_verifications.c.used_at.is_(None)
                    & (_email_verifications.c.expires_at > _iso(now))
                )
            ).scalar_one_or_none()
            if account_id is None:
                return None
            result = conn.execute(
                _email_verifications.update()
                .where((_email_verifications.c.token_hash == token_hash) & _email_verifications.c.used_at.is_(None))
                .values(used_at=_iso(now))
            )
            if result.rowcount != 1:
                return None
        return account_id

    def consume_email_verification_code(
        self, account_id: str, code_hash: str, now: datetime, max_attempts: int
    ) -> bool:
        """Check a code digest against the account's live challenge.

        A match retires the challenge and returns True. A miss counts one
        attempt, and the attempt that reaches max_attempts retires the
        challenge as well.
        """
        live = (_email_verifications.c.account_id == account_id) & _email_verifications.c.used_at.is_(None)
        with self._begin() as conn:
            row = conn.execute(
                _email_verifications.select().where(live & (_email_verifications.c.expires_at > _iso(now)))
            ).fetchone()
            if row is None:
                return False
            if hmac.compare_digest(row.code_hash, code_hash):
                result = conn.execute(_email_verifications.update().where(live).values(used_at=_iso(now)))
                return result.rowcount == 1
            values: dict = {"attempts": _email_verifications.c.attempts + 1}
            if row.attempts + 1 >= max_attempts:
                values["used_at"] = _iso(now)
            conn.execute(_email_verifications.update().where(live).values(**values))
        return False

    def mark_email_verified(self, account_id: str, when: datetime, *, activate: bool) -> bool:
        """Record a proven mailbox. With activate, a pending_verification account becomes active."""
        with self._begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(email_verified_at=_iso(when), updated_at=_iso(when))
            )
            if result.rowcount == 0:
                return False
            if activate:
                conn.execute(
                    _accounts.update()
                    .where(
                        (_accounts.c.id == account_id)
                        & (_accounts.c.status == AccountStatus.PENDING_VERIFICATION.value)
                    )
                    .values(status=AccountStatus.ACTIVE.value)
                )
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        hashed_secret=row.hashed_secret,
        role=Role(row.role),
        status=AccountStatus(row.status),
        token_version=row.token_version,
        created_by=row.created_by,
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        last_login=_dt(row.last_login),
        email_verified_at=_dt(row.email_verified_at),
    )


def _row_to_lockout(row) -> LockoutRecord:
    return LockoutRecord(
        account_id=row.account_id,
        failed_attempts=row.failed_attempts,
        locked_until=_dt(row.locked_until),
        lock_cycles=row.lock_cycles,
        revision=row.revision,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        account_id=row.account_id,
        fingerprint=row.fingerprint,
        issued_at=_dt(row.issued_at),
        expires_at=_dt(row.expires_at),
        last_used_at=_dt(row.last_used_at),
        metadata=row.device_meta or "",
    )


def _row_to_invitation(row) -> Invitation:
    return Invitation(
        id=row.id,
        email=row.email,
        role=Role(row.role),
        code_hash=row.code_hash,
        created_by=row.created_by,
        created_at=_dt(row.created_at),
        expires_at=_dt(row.expires_at),
        used_at=_dt(row.used_at),
        used_by=row.used_by,
        revoked_at=_dt(row.revoked_at),
    )


def _row_to_email_verification(row) -> EmailVerification:
    return EmailVerification(
        account_id=row.account_id,
        token_hash=row.token_hash,
        code_hash=row.code_hash,
        sent_at=_dt(row.sent_at),
        expires_at=_dt(row.expires_at),
        attempts=row.attempts,
        used_at=_dt(row.used_at),
    )
