"""
tests/test_permissions.py -- Unit tests for the role/permission registry.

Covers:
  - total order of roles and is_at_least()
  - the table is read-only at runtime
  - has_any / has_all semantics, including empty requirements
  - ownership rule: owners read/update their own resources, admins override
  - can_manage(): who may assign or change which roles
"""

from __future__ import annotations

import pytest

from auth.errors import ValidationError
from auth.permissions import (
    ALL_PERMISSIONS,
    ROLE_PERMISSIONS,
    Role,
    can_access_resource,
    can_manage,
    has_all,
    has_any,
    is_admin_level,
    is_at_least,
    level_of,
    missing_permissions,
    permissions_for,
)


class TestRoleOrder:
    def test_levels_are_strictly_increasing(self) -> None:
        levels = [level_of(r) for r in (Role.CLIENT, Role.STAFF, Role.ADVOCATE, Role.ADMIN, Role.SUPER_ADMIN)]
        assert levels == [1, 2, 3, 4, 5]

    def test_is_at_least(self) -> None:
        assert is_at_least(Role.ADMIN, Role.STAFF)
        assert is_at_least(Role.STAFF, Role.STAFF)
        assert not is_at_least(Role.CLIENT, Role.STAFF)

    def test_parse_accepts_strings(self) -> None:
        assert Role.parse(" Admin ") is Role.ADMIN
        assert level_of("advocate") == 3

    def test_parse_rejects_unknown_role(self) -> None:
        with pytest.raises(ValidationError):
            Role.parse("root")

    def test_admin_level(self) -> None:
        assert is_admin_level(Role.ADMIN) and is_admin_level(Role.SUPER_ADMIN)
        assert not is_admin_level(Role.ADVOCATE)


class TestRegistry:
    def test_table_cannot_be_mutated(self) -> None:
        with pytest.raises(TypeError):
            ROLE_PERMISSIONS[Role.CLIENT] = frozenset({"system:admin"})  # type: ignore[index]
        with pytest.raises(AttributeError):
            ROLE_PERMISSIONS[Role.CLIENT].add("system:admin")  # type: ignore[attr-defined]

    def test_every_role_has_an_entry(self) -> None:
        assert set(ROLE_PERMISSIONS) == set(Role)

    def test_super_admin_extends_admin(self) -> None:
        assert permissions_for(Role.ADMIN) < permissions_for(Role.SUPER_ADMIN)
        assert "system:config" in permissions_for(Role.SUPER_ADMIN)
        assert "system:config" not in permissions_for(Role.ADMIN)

    def test_all_permissions_is_union(self) -> None:
        assert "document:upload" in ALL_PERMISSIONS
        assert "system:backup" in ALL_PERMISSIONS

    def test_has_any(self) -> None:
        assert has_any(Role.CLIENT, ["user:delete", "case:read"])
        assert not has_any(Role.CLIENT, ["user:delete", "case:delete"])

    def test_has_all(self) -> None:
        assert has_all(Role.ADVOCATE, ["case:read", "case:update"])
        assert not has_all(Role.ADVOCATE, ["case:read", "case:delete"])

    def test_empty_requirements(self) -> None:
        assert has_any(Role.SUPER_ADMIN, []) is False
        assert has_all(Role.CLIENT, []) is True

    def test_missing_permissions_sorted(self) -> None:
        assert missing_permissions(Role.CLIENT, ["user:read", "case:read", "case:delete"]) == [
            "case:delete",
            "user:read",
        ]


class TestOwnership:
    def test_owner_may_read_without_permission(self) -> None:
        assert not has_any(Role.CLIENT, ["client:read"])
        assert can_access_resource(Role.CLIENT, "u1", "u1", ["client:read"])

    def test_owner_may_update_without_permission(self) -> None:
        assert can_access_resource(Role.STAFF, "u1", "u1", ["case:update"])

    def test_ownership_does_not_grant_delete(self) -> None:
        assert not can_access_resource(Role.CLIENT, "u1", "u1", ["case:delete"])

    def test_non_owner_without_permission_denied(self) -> None:
        assert not can_access_resource(Role.CLIENT, "u1", "u2", ["client:read"])

    def test_blanket_permission_allows_non_owner(self) -> None:
        assert can_access_resource(Role.ADVOCATE, "u1", "u2", ["client:read"])

    def test_admin_overrides_ownership(self) -> None:
        assert can_access_resource(Role.ADMIN, "u1", "u2", ["system:logs"])

    def test_no_requirement_means_owner_only(self) -> None:
        assert can_access_resource(Role.CLIENT, "u1", "u1", [])
        assert not can_access_resource(Role.CLIENT, "u1", "u2", [])


class TestCanManage:
    def test_strict_outranking(self) -> None:
        assert can_manage(Role.ADMIN, Role.ADVOCATE)
        assert not can_manage(Role.ADMIN, Role.ADMIN)
        assert not can_manage(Role.ADVOCATE, Role.ADMIN)

    def test_super_admin_manages_everyone(self) -> None:
        assert can_manage(Role.SUPER_ADMIN, Role.SUPER_ADMIN)
