from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from taskpulse.logging import get_logger
from taskpulse.service.errors import (
    ExpiredCredentialError,
    InvalidRefreshError,
    MalformedCredentialError,
    UnauthenticatedError,
)
from taskpulse.service.registry import SessionRegistry
from taskpulse.service.tokens import ACCESS, REFRESH, CredentialCodec
from taskpulse.storage.models import User

logger = get_logger(__name__)


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    user: User


@dataclass
class TokenPair:
    user_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class Authenticator:
    """Request gate: verifies an access credential and resolves its user.

    Never consults the session registry, so an access credential stays
    valid until its own expiry even after the session that minted it was
    rotated away.
    """

    def __init__(self, codec: CredentialCodec, users: UserLookup) -> None:
        self.codec = codec
        self.users = users

    def authenticate(self, token: Optional[str]) -> AuthContext:
        if not token:
            raise UnauthenticatedError("missing token")
        try:
            claims = self.codec.verify(token)
        except ExpiredCredentialError:
            raise UnauthenticatedError("token expired", hint="token_expired")
        except MalformedCredentialError:
            raise UnauthenticatedError("invalid token")
        if claims.kind != ACCESS:
            logger.warning("access_gate_wrong_kind", kind=claims.kind)
            raise UnauthenticatedError("invalid token")
        user = self.users.get_user(claims.subject_id)
        if user is None:
            raise UnauthenticatedError("unknown subject")
        return AuthContext(user_id=user.id, email=user.email, user=user)

    def authenticate_header(self, authorization: Optional[str]) -> AuthContext:
        return self.authenticate(extract_bearer(authorization))


class SessionService:
    """Login, refresh rotation, logout and mass revocation.

    Rotation deletes the old row and then persists the new one in two
    separate store calls; a crash between them leaves the subject with no
    session and forces a fresh login.
    """

    def __init__(self, codec: CredentialCodec, registry: SessionRegistry) -> None:
        self.codec = codec
        self.registry = registry

    def login(self, subject_id: str) -> TokenPair:
        access = self.codec.mint(subject_id, ACCESS)
        refresh = self.codec.mint(subject_id, REFRESH)
        # StorageError propagates; neither credential leaves this method unless the row exists
        self.registry.create(subject_id, refresh.value, refresh.claims.expires_at)
        logger.info("session_created", user_id=subject_id)
        return TokenPair(
            user_id=subject_id,
            access_token=access.value,
            refresh_token=refresh.value,
            access_expires_at=access.claims.expires_at,
            refresh_expires_at=refresh.claims.expires_at,
        )

    def refresh(self, refresh_value: str) -> TokenPair:
        try:
            claims = self.codec.verify(refresh_value)
        except (MalformedCredentialError, ExpiredCredentialError):
            raise InvalidRefreshError()
        if claims.kind != REFRESH:
            raise InvalidRefreshError()
        session = self.registry.find_live(refresh_value)
        if session is None or session.user_id != claims.subject_id:
            raise InvalidRefreshError()
        # only the caller that actually removes the row may mint a replacement
        if not self.registry.delete_by_value(refresh_value):
            logger.warning("refresh_rotation_lost_race", user_id=claims.subject_id)
            raise InvalidRefreshError()
        logger.info("session_rotated", user_id=claims.subject_id)
        return self.login(claims.subject_id)

    def logout(self, refresh_value: str) -> None:
        if not refresh_value:
            return
        removed = self.registry.delete_by_value(refresh_value)
        logger.info("session_logout", removed=removed)

    def revoke_all(self, subject_id: str) -> int:
        return self.registry.delete_by_owner(subject_id)


__all__ = [
    "AuthContext",
    "Authenticator",
    "SessionService",
    "TokenPair",
    "extract_bearer",
]
