import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from realtyauth.storage.errors import ConstraintViolation, StoreUnavailable
from realtyauth.storage.postgres import PostgresStore, _row_to_user


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))
        if isinstance(self.responses, Exception):
            raise self.responses
        if self.responses:
            return self.responses.pop(0)
        return FakeCursor()


class FakePool:
    def __init__(self, responses=None):
        self.conn = FakeConnection(responses if responses is not None else [])

    @contextmanager
    def connection(self):
        yield self.conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.pool = pool
    from realtyauth.logging import get_logger

    store.logger = get_logger("test")
    return store


def _row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "email": "row@example.com",
        "password_hash": "$argon2id$stub",
        "first_name": "Row",
        "last_name": "Mapper",
        "role": "User",
        "permissions": ["listings:read"],
        "is_active": True,
        "is_email_verified": False,
        "refresh_token": None,
        "refresh_token_expiry": None,
        "failed_login_attempts": 0,
        "lockout_end": None,
        "last_login": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "metadata": None,
    }
    row.update(overrides)
    return row


def test_row_to_user_maps_columns():
    row = _row(permissions='["a", "b"]', metadata='{"k": 1}')
    user = _row_to_user(row)

    assert user.id == str(row["id"])
    assert user.full_name == "Row Mapper"
    assert user.permissions == ["a", "b"]
    assert user.metadata == {"k": 1}


def test_blank_lookups_skip_database():
    store = _store(DummyPool())

    assert store.get_user("") is None
    assert store.get_user("not-a-uuid") is None
    assert store.get_user_by_email(" ") is None
    assert store.get_user_by_refresh_token("") is None


def test_get_user_by_email_filters_active_and_lowercases():
    row = _row()
    pool = FakePool([FakeCursor(row)])
    store = _store(pool)

    user = store.get_user_by_email("Row@Example.com")

    query, params = pool.conn.executed[0]
    assert "lower(email) = %s AND is_active" in query
    assert params == ("row@example.com",)
    assert user.email == "row@example.com"


def test_refresh_lookup_without_active_filter():
    pool = FakePool([FakeCursor(None)])
    store = _store(pool)

    assert store.get_user_by_refresh_token("tok", active_only=False) is None
    query, params = pool.conn.executed[0]
    assert "is_active" not in query
    assert params == ("tok",)


def test_create_user_normalizes_email():
    pool = FakePool([FakeCursor(_row(email="new@example.com"))])
    store = _store(pool)

    user = store.create_user("New@Example.com", "hash", "New", "User")

    _, params = pool.conn.executed[0]
    assert params[1] == "new@example.com"
    assert user.email == "new@example.com"


def test_unique_violation_becomes_constraint_violation():
    store = _store(FakePool(errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com", "hash", "Dup", "User")


def test_operational_error_becomes_store_unavailable():
    store = _store(FakePool(psycopg.OperationalError("connection refused")))

    with pytest.raises(StoreUnavailable):
        store.get_user_by_email("down@example.com")


def test_increment_returns_new_count():
    pool = FakePool([FakeCursor({"failed_login_attempts": 3})])
    store = _store(pool)

    assert store.increment_failed_login_attempts(str(uuid.uuid4())) == 3


def test_lock_resets_counter_and_bumps_updated_at():
    pool = FakePool([FakeCursor(rowcount=1)])
    store = _store(pool)
    lockout_end = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert store.lock_user_account("user-1", lockout_end) is True
    query, params = pool.conn.executed[0]
    assert "failed_login_attempts = 0" in query
    assert "updated_at = now()" in query
    assert params == (lockout_end, "user-1")


def test_update_missing_user_returns_false():
    store = _store(FakePool([FakeCursor(rowcount=0)]))

    assert store.update_last_login("missing") is False
