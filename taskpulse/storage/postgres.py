from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskpulse.logging import get_logger
from taskpulse.storage.errors import ConstraintViolation
from taskpulse.storage.models import PasswordResetToken, Session, Task, User


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        notifications_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        notification_hour SMALLINT NOT NULL DEFAULT 8
            CHECK (notification_hour BETWEEN 0 AND 23),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'Backlog',
        priority TEXT NOT NULL DEFAULT 'Medium',
        due_date TIMESTAMPTZ,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        deleted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for users, tasks and refresh sessions."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", dsn_host=self.dsn.rsplit("@", 1)[-1])

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            timezone=row.get("timezone", "UTC"),
            notifications_enabled=row.get("notifications_enabled", True),
            notification_hour=row.get("notification_hour", 8),
            created_at=row["created_at"],
            updated_at=row.get("updated_at", row["created_at"]),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _task_from_row(row: dict) -> Task:
        return Task(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            status=row.get("status", "Backlog"),
            priority=row.get("priority", "Medium"),
            due_date=row.get("due_date"),
            is_deleted=row.get("is_deleted", False),
            deleted_at=row.get("deleted_at"),
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        timezone: str = "UTC",
        notifications_enabled: bool = True,
        notification_hour: int = 8,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, timezone, notifications_enabled, notification_hour)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, timezone, notifications_enabled, notification_hour),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_users_for_hour(self, hour: int) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM app_user
                WHERE notifications_enabled = TRUE AND notification_hour = %s
                ORDER BY created_at
                """,
                (hour,),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def list_notification_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE notifications_enabled = TRUE ORDER BY created_at"
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_notification_preferences(
        self,
        user_id: str,
        *,
        notifications_enabled: Optional[bool] = None,
        notification_hour: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET notifications_enabled = COALESCE(%s, notifications_enabled),
                    notification_hour = COALESCE(%s, notification_hour),
                    timezone = COALESCE(%s, timezone),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (notifications_enabled, notification_hour, timezone, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # password reset
    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        record = PasswordResetToken(token=token, user_id=user_id, expires_at=expires_at)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_token (token, user_id, expires_at, used, created_at)
                VALUES (%s, %s, %s, FALSE, %s)
                """,
                (token, user_id, expires_at, record.created_at),
            )
        return record

    def consume_password_reset_token(self, token: str, now: datetime) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token
                SET used = TRUE
                WHERE token = %s AND used = FALSE AND expires_at > %s
                RETURNING user_id
                """,
                (token, now),
            ).fetchone()
        return str(row["user_id"]) if row else None

    # sessions
    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.expires_at,
                        session.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already registered")
        return session

    def get_session_by_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_session_by_token(self, refresh_token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token = %s", (refresh_token,)
            )
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return result.rowcount

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
        task_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO task (id, user_id, title, status, priority, due_date)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (task_id, user_id, title, status, priority, due_date),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._task_from_row(row)

    def list_tasks(self, user_id: str, *, include_deleted: bool = False) -> List[Task]:
        query = "SELECT * FROM task WHERE user_id = %s"
        if not include_deleted:
            query += " AND is_deleted = FALSE"
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._task_from_row(row) for row in rows]

    def soft_delete_task(
        self, task_id: str, user_id: str, *, when: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE task SET is_deleted = TRUE, deleted_at = COALESCE(%s, now())
                WHERE id = %s AND user_id = %s AND is_deleted = FALSE
                """,
                (when, task_id, user_id),
            )
            return result.rowcount > 0

    def purge_soft_deleted_tasks(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM task WHERE is_deleted = TRUE AND deleted_at < %s", (cutoff,)
            )
            return result.rowcount

    def close(self) -> None:
        self.pool.close()
