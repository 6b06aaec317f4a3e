from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class MalformedCredentialError(AuthenticationError):
    """Credential could not be parsed, decoded or signature-checked."""

    def __init__(self, message: str = "malformed credential") -> None:
        super().__init__(message)


class ExpiredCredentialError(AuthenticationError):
    """Credential is well-formed and correctly signed but past its expiry."""

    def __init__(self, message: str = "credential expired") -> None:
        super().__init__(message)


class InvalidRefreshError(AuthenticationError):
    """Refresh credential is not backed by a live session.

    Revoked, rotated, expired and never-issued values all look the same to
    the caller.
    """

    def __init__(self) -> None:
        super().__init__("invalid refresh token")


class UnauthenticatedError(AuthenticationError):
    """Request gate rejection with a ``hint`` for silent refresh."""

    def __init__(self, reason: str, *, hint: str = "invalid") -> None:
        super().__init__(reason, detail={"hint": hint})
        self.reason = reason
        self.hint = hint


class ForbiddenError(ServiceError):
    """Operation not permitted (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MalformedCredentialError",
    "ExpiredCredentialError",
    "InvalidRefreshError",
    "UnauthenticatedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
]
