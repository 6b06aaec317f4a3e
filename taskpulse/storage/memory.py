from __future__ import annotations

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from taskpulse.logging import get_logger
from taskpulse.storage.errors import ConstraintViolation, StorageError
from taskpulse.storage.models import (
    PasswordResetToken,
    Session,
    Task,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory user, task and session store with a JSON state file."""

    def __init__(self, fs_root: str = "/tmp/taskpulse") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.tasks: Dict[str, Task] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so nested calls within one thread can re-acquire
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @contextmanager
    def _committing(self) -> Iterator[None]:
        """Apply a mutation and persist it; a failed write restores the prior state."""
        with self._data_lock:
            snapshot = copy.deepcopy(
                (self.users, self.credentials, self.sessions, self.tasks, self.reset_tokens)
            )
            try:
                yield
                self._persist_state()
            except StorageError:
                (
                    self.users,
                    self.credentials,
                    self.sessions,
                    self.tasks,
                    self.reset_tokens,
                ) = snapshot
                raise

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        *,
        timezone: str = "UTC",
        notifications_enabled: bool = True,
        notification_hour: int = 8,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                timezone=timezone,
                notifications_enabled=notifications_enabled,
                notification_hour=notification_hour,
            )
            with self._committing():
                self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email == normalized), None
            )

    def find_users_for_hour(self, hour: int) -> List[User]:
        with self._data_lock:
            return [
                u
                for u in self.users.values()
                if u.notifications_enabled and u.notification_hour == hour
            ]

    def list_notification_users(self) -> List[User]:
        with self._data_lock:
            return [u for u in self.users.values() if u.notifications_enabled]

    def update_notification_preferences(
        self,
        user_id: str,
        *,
        notifications_enabled: Optional[bool] = None,
        notification_hour: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            with self._committing():
                if notifications_enabled is not None:
                    user.notifications_enabled = notifications_enabled
                if notification_hour is not None:
                    user.notification_hour = notification_hour
                if timezone is not None:
                    user.timezone = timezone
                user.updated_at = utcnow()
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            with self._committing():
                self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # password reset
    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        record = PasswordResetToken(token=token, user_id=user_id, expires_at=expires_at)
        with self._committing():
            self.reset_tokens[token] = record
        return record

    def consume_password_reset_token(self, token: str, now: datetime) -> Optional[str]:
        """Mark a live, unused token as used and return its owner."""
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if not record or record.used or record.expires_at <= now:
                return None
            with self._committing():
                record.used = True
            return record.user_id

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.refresh_token in self.sessions:
                raise ConstraintViolation("refresh token already registered")
            with self._committing():
                self.sessions[session.refresh_token] = session
            return session

    def get_session_by_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(refresh_token)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.user_id == user_id]

    def delete_session_by_token(self, refresh_token: str) -> bool:
        with self._data_lock:
            if refresh_token not in self.sessions:
                return False
            with self._committing():
                del self.sessions[refresh_token]
            return True

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [key for key, sess in self.sessions.items() if sess.user_id == user_id]
            if stale:
                with self._committing():
                    for key in stale:
                        del self.sessions[key]
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [key for key, sess in self.sessions.items() if sess.expires_at <= now]
            if expired:
                with self._committing():
                    for key in expired:
                        del self.sessions[key]
            return len(expired)

    # tasks
    def create_task(
        self,
        user_id: str,
        title: str,
        *,
        status: str = "Backlog",
        priority: str = "Medium",
        due_date: Optional[datetime] = None,
    ) -> Task:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            task = Task(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                status=status,
                priority=priority,
                due_date=due_date,
            )
            with self._committing():
                self.tasks[task.id] = task
            return task

    def list_tasks(self, user_id: str, *, include_deleted: bool = False) -> List[Task]:
        with self._data_lock:
            tasks = [
                t
                for t in self.tasks.values()
                if t.user_id == user_id and (include_deleted or not t.is_deleted)
            ]
        tasks.sort(key=lambda t: t.created_at)
        return tasks

    def soft_delete_task(
        self, task_id: str, user_id: str, *, when: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.user_id != user_id or task.is_deleted:
                return False
            with self._committing():
                task.is_deleted = True
                task.deleted_at = when or utcnow()
            return True

    def purge_soft_deleted_tasks(self, cutoff: datetime) -> int:
        """Permanently remove tasks soft-deleted before ``cutoff``."""
        with self._data_lock:
            doomed = [
                tid
                for tid, t in self.tasks.items()
                if t.is_deleted and t.deleted_at is not None and t.deleted_at < cutoff
            ]
            if doomed:
                with self._committing():
                    for tid in doomed:
                        del self.tasks[tid]
            return len(doomed)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
            "reset_tokens": [
                self._serialize_reset_token(r) for r in self.reset_tokens.values()
            ],
        }
        path = self.fs_root / "state" / "memory_store.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(
                "failed to persist in-memory state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["refresh_token"]: self._deserialize_session(s)
            for s in data.get("sessions", [])
        }
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        self.reset_tokens = {
            r["token"]: self._deserialize_reset_token(r)
            for r in data.get("reset_tokens", [])
        }
        self.logger.debug(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            tasks=len(self.tasks),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "timezone": user.timezone,
            "notifications_enabled": user.notifications_enabled,
            "notification_hour": user.notification_hour,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            timezone=data.get("timezone", "UTC"),
            notifications_enabled=data.get("notifications_enabled", True),
            notification_hour=int(data.get("notification_hour", 8)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "user_id": task.user_id,
            "title": task.title,
            "status": task.status,
            "priority": task.priority,
            "due_date": self._serialize_datetime(task.due_date),
            "is_deleted": task.is_deleted,
            "deleted_at": self._serialize_datetime(task.deleted_at),
            "created_at": self._serialize_datetime(task.created_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            status=data.get("status", "Backlog"),
            priority=data.get("priority", "Medium"),
            due_date=self._deserialize_datetime(data.get("due_date")),
            is_deleted=data.get("is_deleted", False),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_reset_token(self, record: PasswordResetToken) -> dict:
        return {
            "token": record.token,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "used": record.used,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_reset_token(self, data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            token=data["token"],
            user_id=data["user_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def close(self) -> None:
        return None
