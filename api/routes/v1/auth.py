"""
api/routes/v1/auth.py -- Authentication and self-service REST endpoints.

Routes:
  POST   /api/v1/auth/register              -- create an account (invitation or self-registration)
  POST   /api/v1/auth/login                 -- email + password; returns access + refresh tokens
  POST   /api/v1/auth/refresh               -- exchange a refresh token (rotated when enabled)
  POST   /api/v1/auth/logout                -- revoke the session bound to a refresh token
  POST   /api/v1/auth/logout-all            -- revoke every session and outstanding token (requires auth)
  GET    /api/v1/auth/sessions              -- list the caller's live sessions (requires auth)
  DELETE /api/v1/auth/sessions/{id}         -- revoke one of the caller's sessions (requires auth, ownership)
  GET    /api/v1/auth/me                    -- current account (requires auth)
  GET    /api/v1/auth/permissions           -- role, level and permission list (requires auth)
  POST   /api/v1/auth/password              -- change password (requires auth)
  POST   /api/v1/auth/password/forgot       -- request a reset token (uniform response)
  POST   /api/v1/auth/password/reset        -- set a new password with a reset token
  GET    /api/v1/auth/email/verify/{token}  -- verify the mailbox with the emailed link token
  POST   /api/v1/auth/email/verify-code     -- verify the mailbox with email + six-digit code
  POST   /api/v1/auth/email/resend          -- re-issue a verification challenge (uniform response)
  POST   /api/v1/auth/email/send            -- issue a verification challenge for the caller (requires auth)
  GET    /api/v1/auth/email/status          -- caller's verification state (requires auth)

Security:
  [H2] /login, /password/forgot and the public /email routes are rate-limited
       per IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.login() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response carrying tokens.
  IDOR guard: DELETE /sessions/{id} passes the caller's account id; foreign
       and unknown session ids both return 404.

Errors are raised as AuthError subclasses and rendered by the handlers in
api/main.py; routes never build error responses themselves.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import (
    AccountResponse,
    EmailVerificationStatusResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    PermissionsResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SessionResponse,
    TokenResponse,
    VerifyEmailCodeRequest,
)
from auth.dependencies import get_auth_service, get_identity
from auth.errors import NotFoundError
from auth.models import ResolvedIdentity, TokenPair
from auth.service import AuthService

logger = logging.getLogger("casegate.api")

# Auth policy:
# - POST   /auth/register, /auth/login, /auth/refresh, /auth/logout: public
# - POST   /auth/password/forgot, /auth/password/reset:               public
# - GET    /auth/email/verify/{token}:                                public
# - POST   /auth/email/verify-code, /auth/email/resend:               public
# - everything else:                                                  requires auth (get_identity)
router = APIRouter()

_FORGOT_MESSAGE = "If the account exists, password reset instructions have been sent."
_RESEND_MESSAGE = "If the account exists and is unverified, a verification email has been sent."


def _token_response(pair: TokenPair, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=TokenResponse.from_pair(pair).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AccountResponse, status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> AccountResponse:
    """Create an account.

    With invitation_code the account gets the invited role and is active at
    once. Without it, a client account is created (pending_verification when
    REQUIRE_ACCOUNT_APPROVAL or REQUIRE_EMAIL_VERIFICATION is set); disabled
    entirely when SELF_REGISTRATION_ENABLED is false. Self-registered accounts
    are sent a verification challenge straight away.
    """
    account = service.register(body.email, body.password, body.invitation_code)
    if not account.email_verified:
        token, code = service.request_email_verification(account.id)
        request.app.state.verification_notifier(account.email, token, code)
    return AccountResponse.from_account(account)


@limiter.limit(login_limit)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; open a new session.

    Wrong email and wrong password produce the same 401 body. A locked
    account gets 423 with Retry-After, even with the correct password.
    """
    service = get_auth_service(request)
    pair = service.login(body.email, body.password, body.device, body.remember_me)
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(body: RefreshRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Exchange a refresh token. Replaying an already-rotated token revokes its session."""
    return _token_response(service.refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(body: LogoutRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    """Revoke the session bound to the refresh token. Always 200 -- logging out twice is harmless."""
    service.logout_with_refresh_token(body.refresh_token)
    return MessageResponse(message="Logged out.")


@limiter.limit(login_limit)
@router.post("/auth/password/forgot", response_model=MessageResponse, status_code=202)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Issue a reset token and hand it to the configured notifier.

    The response is identical whether or not the email is registered.
    """
    service = get_auth_service(request)
    token = service.request_secret_reset(body.email)
    if token is not None:
        request.app.state.reset_notifier(body.email, token)
    return MessageResponse(message=_FORGOT_MESSAGE)


@router.post("/auth/password/reset", response_model=MessageResponse)
def reset_password(body: ResetPasswordRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    service.complete_secret_reset(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in again.")


@limiter.limit(login_limit)
@router.get("/auth/email/verify/{token}", response_model=AccountResponse)
def verify_email(request: Request, token: str) -> AccountResponse:
    """Verify the mailbox with the link token. Pending accounts become active unless approval is required."""
    account = get_auth_service(request).verify_email(token)
    return AccountResponse.from_account(account)


@limiter.limit(login_limit)
@router.post("/auth/email/verify-code", response_model=AccountResponse)
def verify_email_code(request: Request, body: VerifyEmailCodeRequest) -> AccountResponse:
    account = get_auth_service(request).verify_email_code(body.email, body.code)
    return AccountResponse.from_account(account)


@limiter.limit(login_limit)
@router.post("/auth/email/resend", response_model=MessageResponse, status_code=202)
def resend_verification(request: Request, body: ResendVerificationRequest) -> MessageResponse:
    """Re-issue a verification challenge. The response never reveals whether one was sent."""
    issued = get_auth_service(request).resend_email_verification(body.email)
    if issued is not None:
        token, code = issued
        request.app.state.verification_notifier(body.email, token, code)
    return MessageResponse(message=_RESEND_MESSAGE)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> AccountResponse:
    return AccountResponse.from_account(service.get_account(identity, identity.account_id))


@router.get("/auth/permissions", response_model=PermissionsResponse)
def permissions(
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> PermissionsResponse:
    return PermissionsResponse(**service.describe_permissions(identity))


@router.post("/auth/email/send", response_model=MessageResponse, status_code=202)
def send_verification(
    request: Request,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Issue a fresh verification challenge for the caller. 409 when already verified."""
    account = service.get_account(identity, identity.account_id)
    token, code = service.request_email_verification(account.id)
    request.app.state.verification_notifier(account.email, token, code)
    return MessageResponse(message="A verification email has been sent.")


@router.get("/auth/email/status", response_model=EmailVerificationStatusResponse)
def verification_status(
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> EmailVerificationStatusResponse:
    return EmailVerificationStatusResponse(**service.email_verification_status(identity))


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke every session. The access token used for this call stops working too."""
    removed = service.logout_all(identity.account_id)
    return MessageResponse(message=f"Logged out of {removed} session(s).")


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> list[SessionResponse]:
    return [SessionResponse.from_session(s) for s in service.sessions.list_sessions(identity.account_id)]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    session_id: str,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    if not service.logout(session_id, account_id=identity.account_id):
        raise NotFoundError("Session not found.")
    return Response(status_code=204)


@router.post("/auth/password")
def change_password(
    body: PasswordChangeRequest,
    identity: ResolvedIdentity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Change password. Every other session is signed out.

    When session_id names the caller's current session, fresh tokens for it
    are returned; otherwise the caller must log in again.
    """
    pair = service.change_secret(identity.account_id, body.old_password, body.new_password, body.session_id)
    if pair is not None:
        return _token_response(pair)
    resp = JSONResponse(content=MessageResponse(message="Password changed. Please log in again.").model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp
