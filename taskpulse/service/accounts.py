from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from taskpulse.logging import get_logger
from taskpulse.service.auth import SessionService, TokenPair
from taskpulse.service.email import EmailService
from taskpulse.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from taskpulse.storage.errors import ConstraintViolation
from taskpulse.storage.models import User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHashing(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, hash: str, password: str) -> bool: ...


class AccountService:
    """Password accounts on top of the session service.

    Password changes and completed resets revoke every session of the user.
    """

    def __init__(
        self,
        store: Any,
        sessions: SessionService,
        *,
        email: Optional[EmailService] = None,
        hasher: Optional[PasswordHashing] = None,
        reset_ttl: timedelta = timedelta(minutes=60),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.email = email
        self.hasher = hasher or PasswordHasher(type=Type.ID)
        self.reset_ttl = reset_ttl
        self._clock = clock or utcnow

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self.hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return bool(self.hasher.verify(stored_hash, password))
        except (InvalidHash, VerificationError):
            return False

    def _set_password(self, user_id: str, password: str) -> None:
        digest, algo = self._hash_password(password)
        self.store.save_password(user_id, digest, algo)

    def register(self, email: str, password: str) -> Tuple[User, TokenPair]:
        try:
            user = self.store.create_user(email)
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail=exc.detail)
        self._set_password(user.id, password)
        logger.info("user_registered", user_id=user.id)
        return user, self.sessions.login(user.id)

    def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            logger.warning("login_failed")
            raise AuthenticationError("invalid credentials")
        logger.info("user_logged_in", user_id=user.id)
        return user, self.sessions.login(user.id)

    def change_password(self, user_id: str, current_password: str, new_password: str) -> int:
        if not self.verify_password(user_id, current_password):
            raise AuthenticationError("current password is incorrect")
        self._set_password(user_id, new_password)
        revoked = self.sessions.revoke_all(user_id)
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    def request_password_reset(self, email: str) -> Optional[str]:
        """Create and email a reset token; unknown emails return None silently."""
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("password_reset_unknown_email")
            return None
        token = secrets.token_urlsafe(32)
        self.store.create_password_reset_token(user.id, token, self._clock() + self.reset_ttl)
        if self.email is not None:
            sent = self.email.send_password_reset(
                user.email, token, ttl_minutes=int(self.reset_ttl.total_seconds() // 60)
            )
            if not sent:
                logger.warning("password_reset_email_failed", user_id=user.id)
        logger.info("password_reset_requested", user_id=user.id)
        return token

    def complete_password_reset(self, token: str, new_password: str) -> bool:
        user_id = self.store.consume_password_reset_token(token, self._clock())
        if not user_id:
            logger.warning("password_reset_token_invalid")
            return False
        self._set_password(user_id, new_password)
        revoked = self.sessions.revoke_all(user_id)
        logger.info("password_reset_completed", user_id=user_id, sessions_revoked=revoked)
        return True

    def update_preferences(
        self,
        user_id: str,
        *,
        notifications_enabled: Optional[bool] = None,
        notification_hour: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> User:
        if notification_hour is not None and not 0 <= notification_hour <= 23:
            raise ValidationError(
                "notification hour must be between 0 and 23",
                detail={"field": "notification_hour"},
            )
        if timezone is not None:
            try:
                ZoneInfo(timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValidationError("unknown timezone", detail={"field": "timezone"})
        user = self.store.update_notification_preferences(
            user_id,
            notifications_enabled=notifications_enabled,
            notification_hour=notification_hour,
            timezone=timezone,
        )
        if user is None:
            raise NotFoundError("user not found")
        return user
