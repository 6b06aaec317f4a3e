from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

import taskpulse.service.runtime as runtime_module
from taskpulse.storage.errors import ConstraintViolation
from taskpulse.storage.models import Session
from taskpulse.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        outcome = self.pool.results.pop(0) if self.pool.results else FakeResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, *results):
        self.results = list(results)
        self.executed = []

    def connection(self):
        return FakeConnection(self)


def _store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*results)
    store.dsn = "postgresql://localhost/taskpulse"
    return store


def _user_row(**overrides):
    row = {
        "id": "0b6f2c4e-0000-4000-8000-000000000001",
        "email": "pg@example.com",
        "timezone": "UTC",
        "notifications_enabled": True,
        "notification_hour": 14,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestUsers:
    def test_create_user_normalizes_email(self):
        store = _store(FakeResult([_user_row()]))

        user = store.create_user(" PG@Example.com ", notification_hour=14)

        sql, params = store.pool.executed[0]
        assert sql.startswith("INSERT INTO app_user")
        assert params[1] == "pg@example.com"
        assert user.notification_hour == 14

    def test_unique_violation_maps_to_constraint(self):
        store = _store(errors.UniqueViolation("duplicate key"))

        with pytest.raises(ConstraintViolation):
            store.create_user("pg@example.com")

    def test_find_users_for_hour_filters_enabled(self):
        store = _store(FakeResult([_user_row(), _user_row(id="other")]))

        users = store.find_users_for_hour(14)

        sql, params = store.pool.executed[0]
        assert "notifications_enabled = TRUE" in sql
        assert params == (14,)
        assert [u.id for u in users] == [_user_row()["id"], "other"]

    def test_missing_user_is_none(self):
        store = _store(FakeResult([]))

        assert store.get_user("missing") is None

    def test_password_for_missing_user(self):
        store = _store(errors.ForeignKeyViolation("no user"))

        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")


class TestSessions:
    def test_insert_session_maps_duplicate_token(self):
        store = _store(errors.UniqueViolation("duplicate key"))

        with pytest.raises(ConstraintViolation):
            store.insert_session(Session.new("u", "refresh-1", NOW))

    def test_delete_by_token_reports_rowcount(self):
        store = _store(FakeResult(rowcount=1), FakeResult(rowcount=0))

        assert store.delete_session_by_token("refresh-1") is True
        assert store.delete_session_by_token("refresh-1") is False

    def test_delete_expired_uses_inclusive_bound(self):
        store = _store(FakeResult(rowcount=3))

        assert store.delete_expired_sessions(NOW) == 3
        sql, params = store.pool.executed[0]
        assert sql == "DELETE FROM auth_session WHERE expires_at <= %s"
        assert params == (NOW,)

    def test_session_row_mapping(self):
        row = {
            "id": "s1",
            "user_id": "u1",
            "refresh_token": "refresh-1",
            "expires_at": NOW + timedelta(days=7),
            "created_at": NOW,
        }
        store = _store(FakeResult([row]))

        session = store.get_session_by_token("refresh-1")
        assert session.user_id == "u1"
        assert session.is_live(NOW)


class TestTasksAndResets:
    def test_purge_uses_strict_cutoff(self):
        store = _store(FakeResult(rowcount=2))
        cutoff = NOW - timedelta(days=30)

        assert store.purge_soft_deleted_tasks(cutoff) == 2
        sql, params = store.pool.executed[0]
        assert "is_deleted = TRUE AND deleted_at < %s" in sql
        assert params == (cutoff,)

    def test_list_tasks_hides_deleted_by_default(self):
        store = _store(FakeResult([]), FakeResult([]))

        store.list_tasks("u1")
        store.list_tasks("u1", include_deleted=True)

        assert "is_deleted = FALSE" in store.pool.executed[0][0]
        assert "is_deleted" not in store.pool.executed[1][0]

    def test_consume_reset_token(self):
        store = _store(FakeResult([{"user_id": "u1"}]), FakeResult([]))

        assert store.consume_password_reset_token("tok", NOW) == "u1"
        assert store.consume_password_reset_token("tok", NOW) is None


def test_runtime_builds_postgres_store_from_dsn_only(monkeypatch):
    calls = []

    class RecordingStore:
        def __init__(self, *args, **kwargs):
            calls.append((args, kwargs))

        def close(self):
            return None

    monkeypatch.setattr(runtime_module, "PostgresStore", RecordingStore)
    monkeypatch.setenv("USE_MEMORY_STORE", "false")
    monkeypatch.setenv("DATABASE_URL", "postgresql://db.internal/taskpulse")

    built = runtime_module.reset_runtime_for_tests()

    assert built.store_type == "postgres"
    assert calls == [(("postgresql://db.internal/taskpulse",), {})]
