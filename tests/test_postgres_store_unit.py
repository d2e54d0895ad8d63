from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from commerce_auth.storage.errors import ConstraintViolation
from commerce_auth.storage.models import Account
from commerce_auth.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, rows=None, exc=None):
        self.rows = list(rows or [])
        self.exc = exc
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))
        if self.exc is not None:
            raise self.exc
        return FakeCursor(self.rows.pop(0) if self.rows else None)


class FakeUniqueViolation(errors.UniqueViolation):
    def __init__(self, constraint_name):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint_name = constraint_name

    @property
    def diag(self):
        return type("Diag", (), {"constraint_name": self._constraint_name})()


def _store(conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()

    @contextmanager
    def _connect():
        yield conn

    store._connect = _connect
    return store


def _row(**overrides):
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    row = {
        "id": 3,
        "username": "shopper",
        "email": "shopper@example.com",
        "password_digest": "$argon2id$digest",
        "refresh_token": None,
        "refresh_token_expiry": None,
        "last_login_time": None,
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_account_from_row():
    expiry = datetime(2024, 6, 8, tzinfo=timezone.utc)
    account = PostgresStore._account_from_row(_row(refresh_token="tok", refresh_token_expiry=expiry))

    assert account.id == 3
    assert account.refresh_token == "tok"
    assert account.refresh_token_expiry == expiry
    assert account.is_active is True


def test_find_active_by_username_filters_inactive():
    conn = FakeConnection(rows=[_row()])
    account = _store(conn).find_active_by_username("shopper")

    assert account.username == "shopper"
    query, params = conn.executed[0]
    assert "is_active" in query
    assert params == ("shopper",)


def test_find_returns_none_when_missing():
    assert _store(FakeConnection()).find_active_by_id(99) is None


def test_taken_checks():
    conn = FakeConnection(rows=[{"?column?": 1}, None])
    store = _store(conn)

    assert store.username_taken("shopper") is True
    assert store.email_taken("shopper@example.com", excluding_id=3) is False
    assert "id <> %s" in conn.executed[1][0]
    assert conn.executed[1][1] == ("shopper@example.com", 3)


def test_insert_returns_stored_row():
    conn = FakeConnection(rows=[_row(id=11)])
    stored = _store(conn).insert(Account.new("shopper", "shopper@example.com", "digest"))

    assert stored.id == 11
    assert conn.executed[0][0].startswith("INSERT INTO account")


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("account_username_active_uq", "username"),
        ("account_email_active_uq", "email"),
        ("something_else", None),
    ],
)
def test_insert_maps_unique_violation(constraint, field):
    conn = FakeConnection(exc=FakeUniqueViolation(constraint))

    with pytest.raises(ConstraintViolation) as exc_info:
        _store(conn).insert(Account.new("shopper", "shopper@example.com", "digest"))
    assert exc_info.value.field == field


def test_replace_refresh_token_is_conditional():
    expiry = datetime(2024, 6, 8, tzinfo=timezone.utc)
    conn = FakeConnection(rows=[{"id": 3}, None])
    store = _store(conn)

    assert store.replace_refresh_token(3, "old", "new", expiry) is True
    assert store.replace_refresh_token(3, "old", "newer", expiry) is False
    query, params = conn.executed[0]
    assert "refresh_token = %s RETURNING id" in query
    assert params == ("new", expiry, 3, "old")


def test_clear_refresh_token_with_and_without_expected():
    conn = FakeConnection(rows=[{"id": 3}, None])
    store = _store(conn)

    assert store.clear_refresh_token(3, expected="tok") is True
    assert store.clear_refresh_token(3) is False
    assert conn.executed[0][1] == (3, "tok")
    assert "refresh_token IS NOT NULL" in conn.executed[1][0]


def test_deactivate_clears_token():
    conn = FakeConnection(rows=[{"id": 3}])
    assert _store(conn).deactivate(3) is True
    query, _ = conn.executed[0]
    assert "is_active = FALSE" in query
    assert "refresh_token = NULL" in query


def test_persist_refresh_token_params():
    expiry = datetime.now(timezone.utc) + timedelta(days=7)
    conn = FakeConnection()
    _store(conn).persist_refresh_token(3, "tok", expiry)
    assert conn.executed[0][1] == ("tok", expiry, 3)
