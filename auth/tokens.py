"""
auth/tokens.py -- Signed access and refresh tokens.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY,
       refresh tokens with REFRESH_SECRET_KEY (falls back to SECRET_KEY). The
       "typ" claim is checked as well, so a refresh token can never be
       presented as an access token even when both keys are the same.

  Claims: sub (account id), typ, role, ver (token version), iat, exp, iss,
       aud, jti. Refresh tokens add sid (session id). Access tokens carry no
       session id; request authorization never touches session state.

  Token version: verify() loads the account and rejects any token whose ver
       differs from account.token_version. Bumping the counter (logout-all,
       secret change, role change, deactivation) kills every outstanding
       token at once.

  Expiry: checked by hand against the injected Clock with a small skew
       allowance, so every expiry decision in the core uses the same "now".
       python-jose's own exp check is disabled for that reason.

  Verification returns None on any failure -- callers turn that into
       AuthenticationError. No reason is surfaced to the client.

  Fingerprints: sessions store HMAC-SHA256(SECRET_KEY, refresh_token), never
       the token. A stolen database cannot be replayed as refresh tokens.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import AuthenticationError
from auth.models import Account, IssuedToken, RotationOutcome, TokenClaims, TokenKind, TokenPair
from auth.permissions import Role
from auth.sessions import SessionManager
from auth.store import AuthStore
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("casegate.tokens")
audit = logging.getLogger("casegate.audit")

_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("sub", "typ", "role", "ver", "iat", "exp", "iss", "aud", "jti")


def _to_ts(value: datetime) -> int:
    return int(value.timestamp())


def _from_ts(value: int | float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenService:
    """Issues, verifies and rotates tokens for accounts.

    Usage:
        tokens = TokenService(store, sessions, settings)
        issued = tokens.issue_access_token(account)
        claims = tokens.verify(issued.token)
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def _encode(self, claims: dict, key: str) -> str:
        return jwt.encode(claims, key, algorithm=_ALGORITHM)

    def _base_claims(self, account: Account, kind: TokenKind, issued_at: datetime, expires_at: datetime) -> dict:
        return {
            "sub": account.id,
            "typ": kind.value,
            "role": account.role.value,
            "ver": account.token_version,
            "iat": _to_ts(issued_at),
            "exp": _to_ts(expires_at),
            "iss": self._settings.token_issuer,
            "aud": self._settings.token_audience,
            "jti": uuid.uuid4().hex,
        }

    def issue_access_token(self, account: Account) -> IssuedToken:
        """Return a short-lived access token embedding role and token version."""
        now = self._clock()
        expires_at = _from_ts(_to_ts(now + timedelta(seconds=self._settings.access_token_ttl_seconds)))
        claims = self._base_claims(account, TokenKind.ACCESS, now, expires_at)
        return IssuedToken(token=self._encode(claims, self._settings.secret_key), expires_at=expires_at)

    def issue_refresh_token(
        self,
        account: Account,
        session_id: str,
        expires_at: datetime | None = None,
    ) -> IssuedToken:
        """Return a refresh token bound to session_id.

        expires_at defaults to now + REFRESH_TOKEN_TTL_SECONDS. Rotation passes
        the session's own expiry so a chain of refreshes cannot outlive it.
        """
        now = self._clock()
        if expires_at is None:
            expires_at = now + timedelta(seconds=self._settings.refresh_token_ttl_seconds)
        expires_at = _from_ts(_to_ts(expires_at))
        claims = self._base_claims(account, TokenKind.REFRESH, now, expires_at)
        claims["sid"] = session_id
        return IssuedToken(token=self._encode(claims, self._settings.refresh_signing_key), expires_at=expires_at)

    def fingerprint(self, token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, token) as hex. Stored on the session instead of the token."""
        return hmac.new(self._settings.secret_key.encode(), token.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, kind: TokenKind = TokenKind.ACCESS) -> TokenClaims | None:
        """Decode and fully verify a token. Returns TokenClaims, or None on any failure.

        Checks, in order: signature, issuer, audience, required claims, typ,
        expiry and issued-at against the clock (with skew), role, and finally
        that the account exists and its token version still matches.
        """
        if not token:
            return None
        key = self._settings.secret_key if kind is TokenKind.ACCESS else self._settings.refresh_signing_key
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[_ALGORITHM],
                audience=self._settings.token_audience,
                issuer=self._settings.token_issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            return None

        if any(name not in payload for name in _REQUIRED_CLAIMS):
            return None
        if payload["typ"] != kind.value:
            return None
        if kind is TokenKind.REFRESH and not payload.get("sid"):
            return None
        if not isinstance(payload["ver"], int) or not isinstance(payload["exp"], (int, float)):
            return None

        now = self._clock()
        skew = timedelta(seconds=self._settings.clock_skew_seconds)
        expires_at = _from_ts(payload["exp"])
        issued_at = _from_ts(payload["iat"])
        if now >= expires_at + skew:
            return None
        if issued_at > now + skew:
            return None

        try:
            role = Role(payload["role"])
        except ValueError:
            return None

        account = self._store.get_by_id(payload["sub"])
        if account is None or account.token_version != payload["ver"]:
            return None

        return TokenClaims(
            subject=payload["sub"],
            kind=kind,
            role=role,
            token_version=payload["ver"],
            issued_at=issued_at,
            expires_at=expires_at,
            jti=payload["jti"],
            session_id=payload.get("sid"),
        )

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------

    def rotate(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new access token (and a new refresh token if rotation is on).

        Presenting a refresh token that has already been rotated out is
        treated as theft: the session is revoked and AuthenticationError is
        raised. Other sessions of the same account are untouched.
        """
        claims = self.verify(refresh_token, TokenKind.REFRESH)
        if claims is None:
            raise AuthenticationError()
        account = self._store.get_by_id(claims.subject)
        session = self._sessions.get(claims.session_id)
        if account is None or session is None or session.account_id != account.id:
            raise AuthenticationError()

        presented = self.fingerprint(refresh_token)
        if self._settings.refresh_token_rotation:
            new_refresh = self.issue_refresh_token(account, session.id, expires_at=session.expires_at)
            outcome = self._sessions.rotate_fingerprint(session.id, presented, self.fingerprint(new_refresh.token))
            if outcome is not RotationOutcome.ROTATED:
                if outcome is RotationOutcome.REUSED:
                    audit.warning("refresh_reuse account=%s session=%s", account.id, session.id[:8])
                raise AuthenticationError()
            rotated = True
        else:
            if not hmac.compare_digest(session.fingerprint, presented):
                raise AuthenticationError()
            self._sessions.touch(session.id)
            new_refresh = IssuedToken(token=refresh_token, expires_at=claims.expires_at)
            rotated = False

        access = self.issue_access_token(account)
        return TokenPair(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=new_refresh.token,
            refresh_expires_at=new_refresh.expires_at,
            session_id=session.id,
            issued_at=self._clock(),
            rotated=rotated,
        )
