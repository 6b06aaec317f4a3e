from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    timezone: str = "UTC"
    notifications_enabled: bool = True
    notification_hour: int = 8
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """Registry row backing one live refresh credential."""

    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, refresh_token: str, expires_at: datetime) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=expires_at,
            created_at=utcnow(),
        )

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class Task:
    id: str
    user_id: str
    title: str
    status: str = "Backlog"
    priority: str = "Medium"
    due_date: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return not self.is_deleted and self.status != "Complete"


@dataclass
class PasswordResetToken:
    token: str
    user_id: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

