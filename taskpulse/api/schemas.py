from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_LOCAL_PART = re.compile(r"[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}")
_DOMAIN_LABEL = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")
_INVISIBLE = dict.fromkeys(map(ord, "\u200b\u200c\u200d\ufeff"))


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalize and syntax-check an email address.

    Zero-width characters are dropped first so visually identical
    addresses collapse onto one account.
    """
    address = unicodedata.normalize("NFKC", value.translate(_INVISIBLE).strip().lower())
    if len(address) > 254:
        raise ValueError("email address too long")
    local, _, domain = address.partition("@")
    labels = domain.split(".")
    if (
        not _LOCAL_PART.fullmatch(local)
        or len(labels) < 2
        or not all(_DOMAIN_LABEL.fullmatch(label) for label in labels)
    ):
        raise ValueError("invalid email address")
    return address


def check_password(value: str) -> str:
    if not 8 <= len(value) <= 128:
        raise ValueError("password must be between 8 and 128 characters")
    return value


Email = Annotated[str, AfterValidator(normalize_email)]
NewPassword = Annotated[str, AfterValidator(check_password)]
RefreshValue = Annotated[str, Field(min_length=1, max_length=2048)]


class SignupRequest(BaseModel):
    email: Email
    password: NewPassword


class LoginRequest(BaseModel):
    email: Email
    password: str = Field(..., max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: RefreshValue


class LogoutRequest(BaseModel):
    """Body of ``/auth/logout``; without a refresh value the call is a no-op."""

    refresh_token: Optional[RefreshValue] = None


class AuthResponse(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class PasswordResetRequest(BaseModel):
    email: Email


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: NewPassword


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: NewPassword


class PreferencesRequest(BaseModel):
    notifications_enabled: Optional[bool] = None
    notification_hour: Optional[int] = Field(default=None, ge=0, le=23)
    timezone: Optional[str] = Field(default=None, min_length=1, max_length=64)


class UserResponse(BaseModel):
    id: str
    email: str
    timezone: str
    notifications_enabled: bool
    notification_hour: int
    created_at: datetime
