"""
auth/permissions.py -- Role type and the static role -> permission registry.

The Role enum is the only representation of a role anywhere in the codebase.
Call sites never compare role strings; they ask this module. The permission
table is a read-only mapping of frozensets, built once at import time.
Changing it is a deployment, never a data mutation -- there is no runtime API
that can widen a role's rights.

Two kinds of checks live here:
  Fine-grained: permissions_for / has_any / has_all against the table.
  Hierarchical: level_of / is_at_least over the total order of roles,
      independent of the table (used for coarse gates and for deciding who
      may manage whom).

Ownership rule (can_access_resource): for resource-scoped operations an
admin-level role passes regardless of ownership; any other actor passes with
the blanket permission, or by owning the resource when every required
permission is a read or update action.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from types import MappingProxyType

from auth.errors import ValidationError


class Role(str, Enum):
    CLIENT = "client"
    STAFF = "staff"
    ADVOCATE = "advocate"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: str | Role) -> Role:
        """Return the Role for value, raising ValidationError for unknown names."""
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown role: {value!r}", errors=["role"]) from exc

    @property
    def level(self) -> int:
        return _ROLE_LEVELS[self]


_ROLE_LEVELS: MappingProxyType[Role, int] = MappingProxyType(
    {
        Role.CLIENT: 1,
        Role.STAFF: 2,
        Role.ADVOCATE: 3,
        Role.ADMIN: 4,
        Role.SUPER_ADMIN: 5,
    }
)

# Lowest level treated as administrative for ownership overrides.
ADMIN_LEVEL = _ROLE_LEVELS[Role.ADMIN]

# Actions that resource ownership grants on its own, without a blanket permission.
OWNER_ACTIONS = frozenset({"read", "update"})

_CLIENT = frozenset(
    {
        "case:read",
        "appointment:create",
        "appointment:read",
        "payment:create",
        "payment:read",
        "document:read",
        "document:upload",
        "profile:read",
        "profile:update",
    }
)

_STAFF = frozenset(
    {
        "appointment:create",
        "appointment:read",
        "appointment:update",
        "payment:read",
        "document:read",
        "client:read",
    }
)

_ADVOCATE = frozenset(
    {
        "case:create",
        "case:read",
        "case:update",
        "appointment:create",
        "appointment:read",
        "appointment:update",
        "payment:read",
        "payment:update",
        "document:create",
        "document:read",
        "document:update",
        "client:read",
        "client:update",
        "notification:send",
        "report:generate",
    }
)

_ADMIN = frozenset(
    {
        "user:create",
        "user:read",
        "user:update",
        "case:create",
        "case:read",
        "case:update",
        "case:delete",
        "appointment:create",
        "appointment:read",
        "appointment:update",
        "appointment:delete",
        "payment:create",
        "payment:read",
        "payment:update",
        "document:create",
        "document:read",
        "document:update",
        "document:delete",
        "notification:send",
        "notification:manage",
        "report:generate",
        "report:export",
    }
)

_SUPER_ADMIN = _ADMIN | frozenset(
    {
        "user:delete",
        "payment:delete",
        "system:admin",
        "system:config",
        "system:backup",
        "system:logs",
    }
)

ROLE_PERMISSIONS: MappingProxyType[Role, frozenset[str]] = MappingProxyType(
    {
        Role.CLIENT: _CLIENT,
        Role.STAFF: _STAFF,
        Role.ADVOCATE: _ADVOCATE,
        Role.ADMIN: _ADMIN,
        Role.SUPER_ADMIN: _SUPER_ADMIN,
    }
)

ALL_PERMISSIONS: frozenset[str] = frozenset().union(*ROLE_PERMISSIONS.values())


# ---------------------------------------------------------------------------
# Fine-grained checks
# ---------------------------------------------------------------------------


def permissions_for(role: Role | str) -> frozenset[str]:
    return ROLE_PERMISSIONS[Role.parse(role)]


def has_any(role: Role | str, required: Iterable[str]) -> bool:
    """True if role holds at least one of required. An empty requirement is False."""
    granted = permissions_for(role)
    return any(p in granted for p in required)


def has_all(role: Role | str, required: Iterable[str]) -> bool:
    """True if role holds every permission in required. An empty requirement is True."""
    granted = permissions_for(role)
    return all(p in granted for p in required)


def missing_permissions(role: Role | str, required: Iterable[str]) -> list[str]:
    granted = permissions_for(role)
    return sorted(p for p in set(required) if p not in granted)


# ---------------------------------------------------------------------------
# Hierarchical checks
# ---------------------------------------------------------------------------


def level_of(role: Role | str) -> int:
    return Role.parse(role).level


def is_at_least(role: Role | str, min_role: Role | str) -> bool:
    return level_of(role) >= level_of(min_role)


def is_admin_level(role: Role | str) -> bool:
    return level_of(role) >= ADMIN_LEVEL


def can_manage(actor_role: Role | str, target_role: Role | str) -> bool:
    """True if actor may assign, invite, or change accounts holding target_role.

    Strict outranking, except that super_admin may manage its own level so the
    top of the hierarchy is never frozen.
    """
    actor = Role.parse(actor_role)
    target = Role.parse(target_role)
    if actor is Role.SUPER_ADMIN:
        return True
    return actor.level > target.level


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------


def _action(permission: str) -> str:
    return permission.rsplit(":", 1)[-1]


def can_access_resource(
    role: Role | str,
    actor_id: str,
    owner_id: str | None,
    required: Iterable[str],
    require_all: bool = False,
) -> bool:
    """Decide a resource-scoped request from role, permissions, and ownership."""
    required = list(required)
    if is_admin_level(role):
        return True
    if not required:
        return owner_id is not None and actor_id == owner_id
    granted = has_all(role, required) if require_all else has_any(role, required)
    if granted:
        return True
    if owner_id is not None and actor_id == owner_id:
        return all(_action(p) in OWNER_ACTIONS for p in required)
    return False
