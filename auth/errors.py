"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every exception carries a class-level HTTP status_code and a stable
error_code so the transport layer can map them without inspecting messages.

  ValidationError        400  caller input is malformed; fix and retry
  AuthenticationError    401  bad credentials or invalid/expired/reused token
  AccountInactiveError   403  identity proven but status != active
  AuthorizationError     403  identity valid, rights insufficient
  NotFoundError          404  administrative target does not exist
  ConflictError          409  uniqueness violation (duplicate email)
  AccountLockedError     423  lock window active; carries remaining duration
  StoreUnavailableError  503  backing store or lock unavailable -- fatal

AuthenticationError always uses the same message regardless of which factor
failed, so responses never reveal whether an email is registered.

Expected conditions inside the lockout tracker and session manager (lock
active, cap reached) are returned as outcomes, never raised.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
from datetime import timedelta
from typing import Any

GENERIC_AUTH_MESSAGE = "Invalid credentials."


class AuthError(Exception):
    """Base class for auth-core errors mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "auth_error"

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(AuthError):
    """Request validation failed (400)."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message, detail={"errors": errors} if errors else None)
        self.errors = errors or []


class AuthenticationError(AuthError):
    """Credentials or token rejected (401). The message is uniform by default."""

    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = GENERIC_AUTH_MESSAGE, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message, detail=detail)


class AccountInactiveError(AuthError):
    """Account exists and is identified, but is not active (403).

    reason is the account status ("deactivated" or "pending_verification").
    It is carried in detail, the response shape stays the same for both.
    """

    status_code = 403
    error_code = "account_inactive"

    def __init__(self, reason: str) -> None:
        super().__init__("Account is not active.", detail={"reason": reason})
        self.reason = reason


class AuthorizationError(AuthError):
    """Authenticated identity lacks the required rights (403)."""

    status_code = 403
    error_code = "forbidden"

    def __init__(
        self,
        message: str = "Insufficient permissions.",
        *,
        missing: list[str] | None = None,
        required_role: str | None = None,
    ) -> None:
        detail: dict[str, Any] = {}
        if missing:
            detail["missing_permissions"] = missing
        if required_role:
            detail["required_role"] = required_role
        super().__init__(message, detail=detail)
        self.missing = missing or []
        self.required_role = required_role


class NotFoundError(AuthError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AuthError):
    status_code = 409
    error_code = "conflict"


class AccountLockedError(AuthError):
    """Lock window active (423). Distinct from AuthenticationError so a client can show a countdown."""

    status_code = 423
    error_code = "account_locked"

    def __init__(self, remaining: timedelta) -> None:
        self.remaining = remaining
        # Round up so a client never retries a moment too early.
        self.retry_after = max(1, math.ceil(remaining.total_seconds()))
        super().__init__(
            "Account is temporarily locked.",
            detail={"retry_after": self.retry_after},
        )


class StoreUnavailableError(AuthError):
    """Backing store unreachable or a per-account lock could not be acquired (503)."""

    status_code = 503
    error_code = "store_unavailable"


class MalformedHashError(ValueError):
    """A stored credential hash is not a well-formed bcrypt string.

    This is an input/data error, not a failed login: it is raised rather than
    reported as a mismatch so corrupt records surface immediately.
    """


__all__ = [
    "GENERIC_AUTH_MESSAGE",
    "AuthError",
    "ValidationError",
    "AuthenticationError",
    "AccountInactiveError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "StoreUnavailableError",
    "MalformedHashError",
]
