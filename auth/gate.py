"""
auth/gate.py -- Per-request authorization decision.

authorize() composes the other components in a fixed order and stops at the
first failure:

  1. token present                      else AuthenticationError
  2. token verifies (sig, exp, version) else AuthenticationError
  3. account exists                     else AuthenticationError
     account status is active           else AccountInactiveError(reason)
  4. account is not locked              else AccountLockedError(remaining)
  5. min_role, permissions, ownership   else AuthorizationError(missing)

The gate has no side effects: it reads the store and the lockout record and
writes nothing. Authorization failures may name the missing permissions --
identity is already established at that point, so nothing is enumerable.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth.errors import AccountInactiveError, AccountLockedError, AuthenticationError, AuthorizationError
from auth.lockout import LockoutTracker
from auth.models import ResolvedIdentity, TokenKind
from auth.permissions import Role, can_access_resource, has_all, has_any, is_at_least, missing_permissions, permissions_for
from auth.store import AuthStore
from auth.tokens import TokenService


@dataclass(frozen=True)
class Requirement:
    """What a request needs.

    permissions: checked with has_any, or has_all when require_all is set.
        Empty means "any authenticated, active, unlocked account".
    min_role: coarse hierarchical floor, checked before permissions.
    resource_owner_id: set for resource-scoped operations; enables the
        ownership rule (owners may read/update their own resource, admin
        levels always pass).
    """

    permissions: tuple[str, ...] = ()
    require_all: bool = False
    min_role: Role | None = None
    resource_owner_id: str | None = None


class AuthorizationGate:
    def __init__(self, tokens: TokenService, store: AuthStore, lockout: LockoutTracker) -> None:
        self._tokens = tokens
        self._store = store
        self._lockout = lockout

    def authorize(self, token: str | None, requirement: Requirement | None = None) -> ResolvedIdentity:
        """Return the caller's ResolvedIdentity, or raise the first failing check."""
        requirement = requirement or Requirement()
        if not token:
            raise AuthenticationError("Authentication required.")

        claims = self._tokens.verify(token, TokenKind.ACCESS)
        if claims is None:
            raise AuthenticationError()

        account = self._store.get_by_id(claims.subject)
        if account is None:
            raise AuthenticationError()
        if not account.is_active:
            raise AccountInactiveError(account.status.value)

        status = self._lockout.is_locked(account.id)
        if status.locked:
            raise AccountLockedError(status.remaining)

        role = account.role
        if requirement.min_role is not None and not is_at_least(role, requirement.min_role):
            raise AuthorizationError(
                f"Requires role {requirement.min_role.value} or higher.",
                required_role=requirement.min_role.value,
            )

        required = requirement.permissions
        if requirement.resource_owner_id is not None:
            allowed = can_access_resource(
                role, account.id, requirement.resource_owner_id, required, requirement.require_all
            )
        elif not required:
            allowed = True
        elif requirement.require_all:
            allowed = has_all(role, required)
        else:
            allowed = has_any(role, required)
        if not allowed:
            raise AuthorizationError(missing=missing_permissions(role, required))

        return ResolvedIdentity(
            account_id=account.id,
            email=account.email,
            role=role,
            permissions=permissions_for(role),
            claims=claims,
        )
