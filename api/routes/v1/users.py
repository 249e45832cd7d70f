"""
api/routes/v1/users.py -- Account administration and invitation endpoints.

Routes:
  GET    /api/v1/users                      -- list accounts (user:read)
  POST   /api/v1/users/invitations          -- invite an email with a role (user:create)
  GET    /api/v1/users/invitations          -- list invitations (user:read)
  DELETE /api/v1/users/invitations/{id}     -- revoke an unused invitation (user:create)
  GET    /api/v1/users/{id}                 -- read an account (user:read, or the account itself)
  PATCH  /api/v1/users/{id}                 -- change role and/or status (user:update)
  POST   /api/v1/users/{id}/approve         -- activate a pending account (user:update)
  POST   /api/v1/users/{id}/unlock          -- clear a lockout (user:update)

Security:
  Actors can only manage roles they outrank (super_admin excepted), so an
  admin can neither mint nor modify another admin.
  [M4] PATCH blocks self-deactivation, self role change and deactivating the
       last active super_admin.
  Invitation codes are returned exactly once, at creation.

Invitation routes are declared before /users/{id} so "invitations" is never
captured as an account id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from api.models import (
    AccountPatch,
    AccountResponse,
    InvitationCreate,
    InvitationCreatedResponse,
    InvitationResponse,
    LockStatusResponse,
)
from auth.dependencies import get_auth_service, get_identity, require_permissions
from auth.errors import ValidationError
from auth.models import ResolvedIdentity
from auth.service import AuthService

router = APIRouter()


@router.get("/users", response_model=list[AccountResponse])
def list_users(
    identity: ResolvedIdentity = Depends(require_permissions("user:read")),
    service: AuthService = Depends(get_auth_service),
) -> list[AccountResponse]:
    return [AccountResponse.from_account(a) for a in service.list_accounts(identity)]


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


@router.post("/users/invitations", response_model=InvitationCreatedResponse, status_code=201)
def create_invitation(
    body: InvitationCreate,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> InvitationCreatedResponse:
    invitation, code = service.create_invitation(identity, body.email, body.role.value, body.ttl_seconds)
    base = InvitationResponse.from_invitation(invitation)
    return InvitationCreatedResponse(**base.model_dump(), code=code)


@router.get("/users/invitations", response_model=list[InvitationResponse])
def list_invitations(
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> list[InvitationResponse]:
    return [InvitationResponse.from_invitation(i) for i in service.list_invitations(identity)]


@router.delete("/users/invitations/{invitation_id}", status_code=204)
def revoke_invitation(
    invitation_id: str,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    service.revoke_invitation(identity, invitation_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.get("/users/{account_id}", response_model=AccountResponse)
def get_user(
    account_id: str,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> AccountResponse:
    return AccountResponse.from_account(service.get_account(identity, account_id))


@router.patch("/users/{account_id}", response_model=AccountResponse)
def patch_user(
    account_id: str,
    body: AccountPatch,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> AccountResponse:
    """Change role and/or status. Either change invalidates the account's outstanding tokens."""
    if body.role is None and body.status is None:
        raise ValidationError("Nothing to update.", errors=["role", "status"])
    account = None
    if body.role is not None:
        account = service.change_role(identity, account_id, body.role.value)
    if body.status is not None:
        account = service.set_status(identity, account_id, body.status.value)
    return AccountResponse.from_account(account)


@router.post("/users/{account_id}/approve", response_model=AccountResponse)
def approve_user(
    account_id: str,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> AccountResponse:
    return AccountResponse.from_account(service.approve_account(identity, account_id))


@router.post("/users/{account_id}/unlock", response_model=LockStatusResponse)
def unlock_user(
    account_id: str,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> LockStatusResponse:
    return LockStatusResponse.from_status(service.unlock_account(identity, account_id))
