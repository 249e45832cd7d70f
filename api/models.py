"""
API request and response models for CaseGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Secrets are accepted as plain str with bounded length; they are never echoed
back in any response model.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, Invitation, LockStatus, Session, TokenPair

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    client = "client"
    staff = "staff"
    advocate = "advocate"
    admin = "admin"
    super_admin = "super_admin"


class StatusEnum(str, Enum):
    active = "active"
    deactivated = "deactivated"
    pending_verification = "pending_verification"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=255)
    device: str = Field(default="", max_length=255)
    remember_me: bool = False


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=255)
    invitation_code: Optional[str] = Field(default=None, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    """Body for POST /auth/logout. The session is identified by its refresh token."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class PasswordChangeRequest(BaseModel):
    old_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)
    session_id: Optional[str] = Field(default=None, max_length=64)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=255)


class VerifyEmailCodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    code: str = Field(pattern=r"^\d{6}$")


class ResendVerificationRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime
    session_id: str
    rotated: bool = True

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            refresh_expires_at=pair.refresh_expires_at,
            session_id=pair.session_id,
            rotated=pair.rotated,
        )


class AccountResponse(BaseModel):
    """Public account representation. The secret hash is never included."""

    id: str
    email: str
    role: RoleEnum
    status: StatusEnum
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    email_verified: bool = False

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            role=account.role.value,
            status=account.status.value,
            created_at=account.created_at,
            last_login=account.last_login,
            email_verified=account.email_verified,
        )


class SessionResponse(BaseModel):
    id: str
    device: str
    issued_at: datetime
    expires_at: datetime
    last_used_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            device=session.metadata,
            issued_at=session.issued_at,
            expires_at=session.expires_at,
            last_used_at=session.last_used_at,
        )


class PermissionsResponse(BaseModel):
    role: RoleEnum
    level: int
    permissions: list[str]


class MessageResponse(BaseModel):
    message: str


class EmailVerificationStatusResponse(BaseModel):
    email: str
    email_verified: bool
    email_verified_at: Optional[datetime] = None
    verification_required: bool


# ---------------------------------------------------------------------------
# Account administration
# ---------------------------------------------------------------------------


class AccountPatch(BaseModel):
    """Body for PATCH /users/{id}. All fields optional; at least one must be set."""

    role: Optional[RoleEnum] = None
    status: Optional[StatusEnum] = None


class LockStatusResponse(BaseModel):
    locked: bool
    failed_attempts: int
    retry_after: int = 0

    @classmethod
    def from_status(cls, status: LockStatus) -> "LockStatusResponse":
        remaining = int(status.remaining.total_seconds()) if status.locked else 0
        return cls(locked=status.locked, failed_attempts=status.failed_attempts, retry_after=remaining)


class InvitationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    role: RoleEnum = RoleEnum.client
    ttl_seconds: Optional[int] = Field(default=None, gt=0, le=30 * 24 * 3600)


class InvitationResponse(BaseModel):
    id: str
    email: str
    role: RoleEnum
    created_by: str
    created_at: Optional[datetime] = None
    expires_at: datetime
    used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def from_invitation(cls, invitation: Invitation) -> "InvitationResponse":
        return cls(
            id=invitation.id,
            email=invitation.email,
            role=invitation.role.value,
            created_by=invitation.created_by,
            created_at=invitation.created_at,
            expires_at=invitation.expires_at,
            used_at=invitation.used_at,
            revoked_at=invitation.revoked_at,
        )


class InvitationCreatedResponse(InvitationResponse):
    """Returned once at creation. code is shown only here and cannot be retrieved later."""

    code: str
