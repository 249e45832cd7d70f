"""
auth/service.py -- Application-facing authentication operations.

AuthService wires the components together (one shared KeyedLock, one Clock,
one Settings) and exposes the operations the transport layer calls:

  login / refresh / logout / logout_all / authorize / change_secret
  register / invitations / approval            (replace any bypass key)
  set_status / change_role / unlock_account    (account administration)
  request_secret_reset / complete_secret_reset (forgot password)
  request_email_verification / verify_email    (proof of mailbox)
  describe_permissions / purge_expired_sessions

Login order matters [C1]:
  unknown email      -> dummy bcrypt, AuthenticationError (same message)
  lock active        -> AccountLockedError, before the secret is even checked
  wrong secret       -> record_failure; AccountLockedError if that locked it
  right secret       -> record_success; AccountLockedError if a concurrent
                        burst of failures locked it meanwhile
  status not active  -> AccountInactiveError, only after the secret matched

Audit events go to the "casegate.audit" logger. Raw secrets, tokens,
invitation codes and reset tokens are never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from datetime import timedelta

from auth.errors import (
    AccountInactiveError,
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from auth.gate import AuthorizationGate, Requirement
from auth.lockout import LockoutTracker
from auth.locks import KeyedLock
from auth.models import (
    Account,
    AccountStatus,
    EmailVerification,
    Invitation,
    LockStatus,
    ResolvedIdentity,
    TokenKind,
    TokenPair,
)
from auth.passwords import dummy_verify, hash_secret, needs_rehash, validate_secret_strength, verify_secret
from auth.permissions import (
    Role,
    can_access_resource,
    can_manage,
    has_all,
    level_of,
    missing_permissions,
    permissions_for,
)
from auth.sessions import SessionManager, new_session_id
from auth.store import AuthStore, normalize_email
from auth.tokens import TokenService
from core.clock import Clock, utcnow
from core.config import Settings, get_settings

logger = logging.getLogger("casegate.auth")
audit = logging.getLogger("casegate.audit")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def _valid_email(email: str) -> str:
    normalized = normalize_email(email or "")
    if len(normalized) > 320 or not _EMAIL_RE.match(normalized):
        raise ValidationError("A valid email address is required.", errors=["email"])
    return normalized


def _require(actor: ResolvedIdentity, *permissions: str) -> None:
    if not has_all(actor.role, permissions):
        raise AuthorizationError(missing=missing_permissions(actor.role, permissions))


class AuthService:
    """Facade over the auth core.

    Usage:
        service = AuthService(AuthStore(settings.database_url), settings)
        pair = service.login("user@example.com", "S3cret!pass", "curl")
        identity = service.authorize(pair.access_token, Requirement(permissions=("case:read",)))
    """

    def __init__(self, store: AuthStore, settings: Settings | None = None, clock: Clock = utcnow) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        locks = KeyedLock(self.settings.lock_timeout_seconds)
        self.lockout = LockoutTracker(store, self.settings, clock, locks)
        self.sessions = SessionManager(store, self.settings, clock, locks)
        self.tokens = TokenService(store, self.sessions, self.settings, clock)
        self.gate = AuthorizationGate(self.tokens, store, self.lockout)

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(self, email: str, secret: str, device_meta: str = "", remember_me: bool = False) -> TokenPair:
        """Authenticate with email + secret and open a new session."""
        email = _valid_email(email)
        if not secret:
            raise ValidationError("Secret is required.", errors=["secret"])

        account = self.store.get_by_email(email)
        if account is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            dummy_verify(secret, self.settings.bcrypt_rounds)
            audit.info("login_failed reason=unknown_account")
            raise AuthenticationError()

        status = self.lockout.is_locked(account.id)
        if status.locked:
            audit.warning("login_rejected reason=locked account=%s", account.id)
            raise AccountLockedError(status.remaining)

        if not verify_secret(secret, account.hashed_secret):
            status = self.lockout.record_failure(account.id)
            audit.info("login_failed reason=bad_secret account=%s attempts=%d", account.id, status.failed_attempts)
            if status.locked:
                audit.warning("account_locked account=%s retry_after=%s", account.id, status.remaining)
                raise AccountLockedError(status.remaining)
            raise AuthenticationError()

        # A concurrent burst of failures may have locked the account while bcrypt ran.
        status = self.lockout.record_success(account.id)
        if status.locked:
            audit.warning("login_rejected reason=locked account=%s", account.id)
            raise AccountLockedError(status.remaining)
        if not account.is_active:
            audit.info("login_rejected reason=%s account=%s", account.status.value, account.id)
            raise AccountInactiveError(account.status.value)

        if needs_rehash(account.hashed_secret, self.settings.bcrypt_rounds):
            self.store.set_secret_hash(account.id, hash_secret(secret, self.settings.bcrypt_rounds), self.clock())
            logger.info("Re-hashed secret for account %s at cost %d", account.id, self.settings.bcrypt_rounds)

        pair = self._open_session(account, device_meta, remember_me)
        self.store.update_last_login(account.id, pair.issued_at)
        audit.info("login account=%s session=%s", account.id, pair.session_id[:8])
        return pair

    def _open_session(self, account: Account, device_meta: str, remember_me: bool) -> TokenPair:
        ttl = self.settings.remember_me_ttl_seconds if remember_me else self.settings.refresh_token_ttl_seconds
        now = self.clock()
        session_id = new_session_id()
        refresh = self.tokens.issue_refresh_token(account, session_id, expires_at=now + timedelta(seconds=ttl))
        self.sessions.create_session(
            account.id,
            device_meta,
            session_id=session_id,
            fingerprint=self.tokens.fingerprint(refresh.token),
            ttl_seconds=ttl,
        )
        access = self.tokens.issue_access_token(account)
        return TokenPair(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
            session_id=session_id,
            issued_at=now,
        )

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for new tokens. Inactive or locked accounts cannot refresh."""
        claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        if claims is None:
            raise AuthenticationError()
        account = self.store.get_by_id(claims.subject)
        if account is None:
            raise AuthenticationError()
        if not account.is_active:
            raise AccountInactiveError(account.status.value)
        status = self.lockout.is_locked(account.id)
        if status.locked:
            raise AccountLockedError(status.remaining)
        return self.tokens.rotate(refresh_token)

    def logout(self, session_id: str, account_id: str | None = None) -> bool:
        """Revoke one session. With account_id, only a session owned by that account is revoked."""
        if account_id is not None:
            revoked = self.sessions.revoke_owned(account_id, session_id)
        else:
            revoked = self.sessions.revoke(session_id)
        if revoked:
            audit.info("logout session=%s", session_id[:8])
        return revoked

    def logout_all(self, account_id: str) -> int:
        removed = self.sessions.revoke_all(account_id)
        audit.info("logout_all account=%s sessions=%d", account_id, removed)
        return removed

    def logout_with_refresh_token(self, refresh_token: str) -> bool:
        """Revoke the session a valid refresh token is bound to. Invalid tokens revoke nothing."""
        claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        if claims is None:
            return False
        return self.logout(claims.session_id, account_id=claims.subject)

    def authorize(self, token: str | None, requirement: Requirement | None = None) -> ResolvedIdentity:
        return self.gate.authorize(token, requirement)

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def _check_new_secret(self, account: Account, new_secret: str) -> None:
        validate_secret_strength(new_secret, self.settings)
        if verify_secret(new_secret, account.hashed_secret):
            raise ValidationError("New secret must differ from the current one.", errors=["reused"])
        history = self.store.get_secret_history(account.id)[: self.settings.secret_history_limit]
        if any(verify_secret(new_secret, old) for old in history):
            raise ValidationError("Secret was used recently; choose a different one.", errors=["history"])

    def change_secret(
        self,
        account_id: str,
        old_secret: str,
        new_secret: str,
        current_session_id: str | None = None,
    ) -> TokenPair | None:
        """Change the account's secret and sign out every other session.

        The token version is bumped, so the caller's current access token
        stops working too. When current_session_id names one of the account's
        live sessions, that session survives and a fresh token pair bound to
        it is returned; otherwise None is returned.
        """
        account = self.store.get_by_id(account_id)
        if account is None:
            raise NotFoundError("Account not found.")
        status = self.lockout.is_locked(account.id)
        if status.locked:
            raise AccountLockedError(status.remaining)
        if not verify_secret(old_secret or "", account.hashed_secret):
            status = self.lockout.record_failure(account.id)
            if status.locked:
                raise AccountLockedError(status.remaining)
            raise ValidationError("Current secret is incorrect.", errors=["old_secret"])
        status = self.lockout.is_locked(account.id)
        if status.locked:
            raise AccountLockedError(status.remaining)

        self._check_new_secret(account, new_secret)
        self.store.update_secret(
            account.id,
            hash_secret(new_secret, self.settings.bcrypt_rounds),
            self.settings.secret_history_limit,
            now=self.clock(),
        )
        self.sessions.revoke_all(account.id, except_session_id=current_session_id)
        audit.info("secret_changed account=%s", account.id)

        if current_session_id is None:
            return None
        session = self.sessions.get(current_session_id)
        if session is None or session.account_id != account.id:
            return None
        account = self.store.get_by_id(account.id)
        refresh = self.tokens.issue_refresh_token(account, session.id, expires_at=session.expires_at)
        self.sessions.rebind(session.id, self.tokens.fingerprint(refresh.token))
        access = self.tokens.issue_access_token(account)
        return TokenPair(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
            session_id=session.id,
            issued_at=self.clock(),
        )

    def request_secret_reset(self, email: str) -> str | None:
        """Create a single-use reset token and return it for out-of-band delivery.

        Returns None for unknown or inactive accounts. Callers must respond
        identically in both cases.
        """
        try:
            email = _valid_email(email)
        except ValidationError:
            return None
        account = self.store.get_by_email(email)
        if account is None or not account.is_active:
            audit.info("reset_requested outcome=ignored")
            return None
        token = secrets.token_urlsafe(32)
        now = self.clock()
        expires_at = now + timedelta(seconds=self.settings.reset_token_ttl_seconds)
        self.store.create_reset_token(_sha256(token), account.id, expires_at, now)
        audit.info("reset_requested account=%s", account.id)
        return token

    def complete_secret_reset(self, token: str, new_secret: str) -> None:
        """Set a new secret using a reset token. Signs out every session; does not lift a lockout."""
        invalid = ValidationError("Reset token is invalid or expired.", errors=["token"])
        token_hash = _sha256(token or "")
        account_id = self.store.find_reset_token(token_hash, self.clock())
        account = self.store.get_by_id(account_id) if account_id else None
        if account is None or not account.is_active:
            raise invalid
        self._check_new_secret(account, new_secret)
        if self.store.consume_reset_token(token_hash, self.clock()) != account.id:
            raise invalid
        self.store.update_secret(
            account.id,
            hash_secret(new_secret, self.settings.bcrypt_rounds),
            self.settings.secret_history_limit,
            now=self.clock(),
        )
        self.sessions.revoke_all(account.id)
        audit.info("secret_reset account=%s", account.id)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def request_email_verification(self, account_id: str) -> tuple[str, str]:
        """Issue a link token and a six-digit code proving control of the account's mailbox.

        Any earlier challenge is replaced. Returns (token, code) for
        out-of-band delivery; only their digests are stored.
        """
        account = self._target(account_id)
        if account.email_verified:
            raise ConflictError("Email is already verified.")
        if account.status is AccountStatus.DEACTIVATED:
            raise ConflictError("Account is deactivated.")
        token = secrets.token_urlsafe(32)
        code = f"{secrets.randbelow(10**6):06d}"
        now = self.clock()
        self.store.save_email_verification(
            EmailVerification(
                account_id=account.id,
                token_hash=_sha256(token),
                code_hash=_sha256(f"{account.id}:{code}"),
                sent_at=now,
                expires_at=now + timedelta(seconds=self.settings.email_verification_ttl_seconds),
            )
        )
        audit.info("email_verification_issued account=%s", account.id)
        return token, code

    def resend_email_verification(self, email: str) -> tuple[str, str] | None:
        """Public resend. Callers must respond identically whether or not a challenge was issued.

        Returns None for unknown, already verified or deactivated accounts, and
        while the previous challenge is younger than EMAIL_VERIFICATION_RESEND_SECONDS.
        """
        try:
            email = _valid_email(email)
        except ValidationError:
            return None
        account = self.store.get_by_email(email)
        if account is None or account.email_verified or account.status is AccountStatus.DEACTIVATED:
            audit.info("email_verification_resend outcome=ignored")
            return None
        previous = self.store.get_email_verification(account.id)
        window = timedelta(seconds=self.settings.email_verification_resend_seconds)
        if previous is not None and self.clock() - previous.sent_at < window:
            audit.info("email_verification_resend outcome=throttled account=%s", account.id)
            return None
        return self.request_email_verification(account.id)

    def verify_email(self, token: str) -> Account:
        """Complete verification with the link token. Single use."""
        account_id = self.store.consume_email_verification(_sha256(token or ""), self.clock())
        if account_id is None:
            raise ValidationError("Verification token is invalid or expired.", errors=["token"])
        return self._mark_verified(account_id)

    def verify_email_code(self, email: str, code: str) -> Account:
        """Complete verification with the numeric code.

        Wrong codes are counted; after EMAIL_VERIFICATION_MAX_ATTEMPTS the
        challenge is retired and a new one must be requested.
        """
        invalid = ValidationError("Verification code is invalid or expired.", errors=["code"])
        account = self.store.get_by_email(normalize_email(email or ""))
        if account is None:
            raise invalid
        matched = self.store.consume_email_verification_code(
            account.id,
            _sha256(f"{account.id}:{code or ''}"),
            self.clock(),
            self.settings.email_verification_max_attempts,
        )
        if not matched:
            audit.info("email_verification_failed account=%s", account.id)
            raise invalid
        return self._mark_verified(account.id)

    def _mark_verified(self, account_id: str) -> Account:
        # With approval also required, the account stays pending for an admin.
        activate = not self.settings.require_account_approval
        self.store.mark_email_verified(account_id, self.clock(), activate=activate)
        account = self._target(account_id)
        audit.info("email_verified account=%s status=%s", account.id, account.status.value)
        return account

    def email_verification_status(self, identity: ResolvedIdentity) -> dict:
        account = self._target(identity.account_id)
        return {
            "email": account.email,
            "email_verified": account.email_verified,
            "email_verified_at": account.email_verified_at,
            "verification_required": not account.email_verified,
        }

    # ------------------------------------------------------------------
    # Registration and invitations
    # ------------------------------------------------------------------

    def register(self, email: str, secret: str, invitation_code: str | None = None) -> Account:
        """Create an account, either through an invitation or by self-registration.

        An invitation fixes the role and activates the account immediately.
        Self-registration always yields a client, pending_verification when
        REQUIRE_ACCOUNT_APPROVAL or REQUIRE_EMAIL_VERIFICATION is set. Invited
        accounts count as email-verified, since the code was bound to the email.
        """
        email = _valid_email(email)
        validate_secret_strength(secret, self.settings)
        if self.store.get_by_email(email) is not None:
            raise ConflictError("An account with that email already exists.")
        now = self.clock()

        if invitation_code:
            invitation = self.store.get_invitation_by_code_hash(_sha256(invitation_code))
            if invitation is None or not invitation.is_pending(now) or invitation.email != email:
                raise ValidationError("Invitation is invalid or expired.", errors=["invitation"])
            account = Account(
                email=email,
                hashed_secret=hash_secret(secret, self.settings.bcrypt_rounds),
                role=invitation.role,
                status=AccountStatus.ACTIVE,
                created_by=invitation.created_by,
                email_verified_at=now,
            )
            account = self.store.create_account(account, consume_invitation=invitation.id, now=now)
            audit.info(
                "registered account=%s role=%s invitation=%s", account.id, account.role.value, invitation.id
            )
            return account

        if not self.settings.self_registration_enabled:
            raise AuthorizationError("Self-registration is disabled; an invitation is required.")
        gated = self.settings.require_account_approval or self.settings.require_email_verification
        status = AccountStatus.PENDING_VERIFICATION if gated else AccountStatus.ACTIVE
        account = Account(
            email=email,
            hashed_secret=hash_secret(secret, self.settings.bcrypt_rounds),
            role=Role.CLIENT,
            status=status,
        )
        account = self.store.create_account(account, now=now)
        audit.info("registered account=%s role=%s status=%s", account.id, account.role.value, status.value)
        return account

    def bootstrap_admin(self, email: str, secret: str) -> Account:
        """Create the first super_admin. Refused once any account exists."""
        email = _valid_email(email)
        validate_secret_strength(secret, self.settings)
        if self.store.has_accounts():
            raise ConflictError("Accounts already exist; use an invitation instead.")
        account = self.store.create_account(
            Account(
                email=email,
                hashed_secret=hash_secret(secret, self.settings.bcrypt_rounds),
                role=Role.SUPER_ADMIN,
            ),
            now=self.clock(),
        )
        audit.info("bootstrap_admin account=%s", account.id)
        return account

    def create_invitation(
        self,
        actor: ResolvedIdentity,
        email: str,
        role: Role | str,
        ttl_seconds: int | None = None,
    ) -> tuple[Invitation, str]:
        """Issue an invitation. Returns the stored record and the raw code (shown once)."""
        _require(actor, "user:create")
        role = Role.parse(role)
        if not can_manage(actor.role, role):
            raise AuthorizationError(f"Cannot invite accounts with role {role.value}.")
        email = _valid_email(email)
        if self.store.get_by_email(email) is not None:
            raise ConflictError("An account with that email already exists.")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValidationError("Invitation lifetime must be positive.", errors=["ttl_seconds"])

        code = secrets.token_urlsafe(24)
        now = self.clock()
        invitation = Invitation(
            email=email,
            role=role,
            code_hash=_sha256(code),
            created_by=actor.account_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds or self.settings.invitation_ttl_seconds),
        )
        invitation = self.store.create_invitation(invitation)
        audit.info(
            "invitation_created id=%s role=%s by=%s", invitation.id, role.value, actor.account_id
        )
        return invitation, code

    def revoke_invitation(self, actor: ResolvedIdentity, invitation_id: str) -> Invitation:
        _require(actor, "user:create")
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None:
            raise NotFoundError("Invitation not found.")
        if not self.store.revoke_invitation(invitation_id, self.clock()):
            raise ConflictError("Invitation has already been used or revoked.")
        audit.info("invitation_revoked id=%s by=%s", invitation_id, actor.account_id)
        return self.store.get_invitation(invitation_id)

    def list_invitations(self, actor: ResolvedIdentity) -> list[Invitation]:
        _require(actor, "user:read")
        return self.store.list_invitations()

    # ------------------------------------------------------------------
    # Account administration
    # ------------------------------------------------------------------

    def _target(self, account_id: str) -> Account:
        account = self.store.get_by_id(account_id)
        if account is None:
            raise NotFoundError("Account not found.")
        return account

    def list_accounts(self, actor: ResolvedIdentity) -> list[Account]:
        _require(actor, "user:read")
        return self.store.list_accounts()

    def get_account(self, actor: ResolvedIdentity, account_id: str) -> Account:
        """Return an account. Anyone may read their own; others need user:read."""
        if not can_access_resource(actor.role, actor.account_id, account_id, ["user:read"]):
            raise AuthorizationError(missing=missing_permissions(actor.role, ["user:read"]))
        return self._target(account_id)

    def approve_account(self, actor: ResolvedIdentity, account_id: str) -> Account:
        _require(actor, "user:update")
        target = self._target(account_id)
        if not can_manage(actor.role, target.role):
            raise AuthorizationError("Cannot manage accounts with that role.")
        if target.status is not AccountStatus.PENDING_VERIFICATION:
            raise ConflictError("Account is not pending approval.")
        self.store.update_status(target.id, AccountStatus.ACTIVE, approved_by=actor.account_id, now=self.clock())
        audit.info("account_approved account=%s by=%s", target.id, actor.account_id)
        return self._target(account_id)

    def set_status(self, actor: ResolvedIdentity, account_id: str, status: AccountStatus | str) -> Account:
        """Activate or deactivate an account. Deactivation signs out every session at once."""
        _require(actor, "user:update")
        try:
            status = AccountStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown status: {status!r}", errors=["status"]) from exc
        target = self._target(account_id)
        if target.id == actor.account_id and status is not AccountStatus.ACTIVE:
            raise ValidationError("You cannot deactivate your own account.", errors=["account_id"])
        if not can_manage(actor.role, target.role):
            raise AuthorizationError("Cannot manage accounts with that role.")
        if (
            status is not AccountStatus.ACTIVE
            and target.role is Role.SUPER_ADMIN
            and target.is_active
            and self.store.count_active_with_role(Role.SUPER_ADMIN) <= 1
        ):
            raise ConflictError("Cannot deactivate the last active super_admin.")

        self.store.update_status(target.id, status, now=self.clock())
        if status is not AccountStatus.ACTIVE:
            self.sessions.revoke_all(target.id)
        audit.info("status_changed account=%s status=%s by=%s", target.id, status.value, actor.account_id)
        return self._target(account_id)

    def change_role(self, actor: ResolvedIdentity, account_id: str, role: Role | str) -> Account:
        """Assign a new role. Outstanding tokens are invalidated so the old role stops working at once."""
        _require(actor, "user:update")
        role = Role.parse(role)
        target = self._target(account_id)
        if target.id == actor.account_id:
            raise ValidationError("You cannot change your own role.", errors=["account_id"])
        if not (can_manage(actor.role, target.role) and can_manage(actor.role, role)):
            raise AuthorizationError("Cannot manage accounts with that role.")
        if target.role is role:
            return target
        now = self.clock()
        self.store.update_role(target.id, role, now)
        self.store.update_token_version(target.id, now)
        audit.info(
            "role_changed account=%s from=%s to=%s by=%s", target.id, target.role.value, role.value, actor.account_id
        )
        return self._target(account_id)

    def unlock_account(self, actor: ResolvedIdentity, account_id: str) -> LockStatus:
        _require(actor, "user:update")
        target = self._target(account_id)
        if not can_manage(actor.role, target.role):
            raise AuthorizationError("Cannot manage accounts with that role.")
        status = self.lockout.clear(target.id)
        audit.info("account_unlocked account=%s by=%s", target.id, actor.account_id)
        return status

    # ------------------------------------------------------------------
    # Introspection and housekeeping
    # ------------------------------------------------------------------

    def describe_permissions(self, identity: ResolvedIdentity) -> dict:
        """Role, role level and sorted permission list for the caller."""
        return {
            "role": identity.role.value,
            "level": level_of(identity.role),
            "permissions": sorted(permissions_for(identity.role)),
        }

    def purge_expired_sessions(self) -> int:
        return self.sessions.purge_expired()
