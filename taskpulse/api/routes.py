from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, status

from taskpulse.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PreferencesRequest,
    SignupRequest,
    TokenRefreshRequest,
    UserResponse,
)
from taskpulse.logging import get_logger
from taskpulse.service.auth import AuthContext, TokenPair
from taskpulse.service.errors import ForbiddenError, ValidationError
from taskpulse.service.runtime import get_runtime
from taskpulse.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _auth_response(tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user_id=tokens.user_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        timezone=user.timezone,
        notifications_enabled=user.notifications_enabled,
        notification_hour=user.notification_hour,
        created_at=user.created_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer access credential; failures surface as 401 envelopes."""
    return await asyncio.to_thread(
        get_runtime().authenticator.authenticate_header, authorization
    )


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
async def register(body: SignupRequest):
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup is disabled")
    _, tokens = await asyncio.to_thread(
        runtime.accounts.register, body.email, body.password
    )
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password and open a new session.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    _, tokens = await asyncio.to_thread(
        runtime.accounts.login, body.email, body.password
    )
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate a refresh credential. The presented value is single-use."""
    runtime = get_runtime()
    tokens = await asyncio.to_thread(runtime.sessions.refresh, body.refresh_token)
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if body.refresh_token:
        await asyncio.to_thread(runtime.sessions.logout, body.refresh_token)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout_all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await asyncio.to_thread(runtime.sessions.revoke_all, principal.user_id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    """Change password and revoke every session of the caller."""
    runtime = get_runtime()
    revoked = await asyncio.to_thread(
        runtime.accounts.change_password,
        principal.user_id,
        body.current_password,
        body.new_password,
    )
    return Envelope(status="ok", data={"status": "changed", "revoked": revoked})


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.accounts.request_password_reset, body.email)
    # same response whether or not the account exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    ok = await asyncio.to_thread(
        runtime.accounts.complete_password_reset, body.token, body.new_password
    )
    if not ok:
        raise ValidationError("invalid or expired reset token")
    return Envelope(status="ok", data={"status": "reset"})


@router.get("/me", response_model=Envelope, tags=["users"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=_user_response(principal.user))


@router.put("/me/preferences", response_model=Envelope, tags=["users"])
async def update_preferences(
    body: PreferencesRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.accounts.update_preferences,
        principal.user_id,
        notifications_enabled=body.notifications_enabled,
        notification_hour=body.notification_hour,
        timezone=body.timezone,
    )
    return Envelope(status="ok", data=_user_response(user))


@router.post("/email/test", response_model=Envelope, tags=["notifications"])
async def send_test_email(principal: AuthContext = Depends(get_user)):
    """Send the caller their daily summary immediately, marked as a test."""
    runtime = get_runtime()
    sent = await asyncio.to_thread(runtime.summary_sender.send_test, principal.user)
    return Envelope(status="ok", data={"sent": sent})
