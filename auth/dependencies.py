"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens only: Authorization: Bearer <access token>. The token is handed
to AuthService.authorize(), which raises AuthError subclasses; api/main.py
maps those to the JSON error envelope, so nothing here builds responses.

get_identity() requires any authenticated, active, unlocked account.
require_permissions(...) and require_role(...) are dependency factories for
routes with fixed requirements. Resource-scoped checks (ownership) need the
path parameter, so routes call service.authorize() with a Requirement
carrying resource_owner_id themselves.

Layer rule: auth/dependencies.py may import from fastapi (for Depends/Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.gate import Requirement
from auth.models import ResolvedIdentity
from auth.permissions import Role
from auth.service import AuthService


def bearer_token(request: Request) -> str | None:
    """Return the token from the Authorization header, or None if absent or not Bearer."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_identity(request: Request) -> ResolvedIdentity:
    """Require authentication. Use as a FastAPI dependency:

    @router.get("/protected")
    def route(identity: ResolvedIdentity = Depends(get_identity)): ...
    """
    return get_auth_service(request).authorize(bearer_token(request))


def require_permissions(*permissions: str, require_all: bool = False) -> Callable[[Request], ResolvedIdentity]:
    """Dependency factory: the caller must hold any (or all) of permissions."""
    requirement = Requirement(permissions=tuple(permissions), require_all=require_all)

    def dependency(request: Request) -> ResolvedIdentity:
        return get_auth_service(request).authorize(bearer_token(request), requirement)

    return dependency


def require_role(min_role: Role) -> Callable[[Request], ResolvedIdentity]:
    """Dependency factory: the caller's role must be min_role or higher."""
    requirement = Requirement(min_role=min_role)

    def dependency(request: Request) -> ResolvedIdentity:
        return get_auth_service(request).authorize(bearer_token(request), requirement)

    return dependency
