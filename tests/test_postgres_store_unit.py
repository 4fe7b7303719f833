from contextlib import contextmanager
from datetime import timedelta

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from authlane.logging import get_logger
from authlane.storage.errors import ConstraintViolation, StoreUnavailable
from authlane.storage.models import RefreshTokenRecord, User, utcnow
from authlane.storage.postgres import SCHEMA_STATEMENTS, PostgresStore


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        if self.error is not None:
            raise self.error
        return self.results.pop(0) if self.results else FakeResult()


class DummyPool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error
        self.closed = False

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        if self.conn is None:
            raise AssertionError("database access should be stubbed in unit tests")
        yield self.conn

    def close(self):
        self.closed = True


def _store(conn=None, error=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.logger = get_logger(__name__)
    store.pool = DummyPool(conn, error)
    return store


def _user_row(**overrides):
    now = utcnow()
    row = {
        "id": "user-1",
        "email": "user@example.com",
        "password_hash": "$argon2id$stub",
        "is_active": True,
        "is_email_verified": False,
        "created_at": now,
        "updated_at": now,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_ensure_schema_runs_every_statement():
    conn = FakeConnection()
    _store(conn).ensure_schema()
    assert len(conn.statements) == len(SCHEMA_STATEMENTS)


def test_email_lookup_is_case_insensitive_and_maps_row():
    conn = FakeConnection([FakeResult([_user_row()])])
    user = _store(conn).get_user_by_email("User@Example.com")

    sql, params = conn.statements[0]
    assert "lower(email) = lower(%s)" in sql
    assert params == ("User@Example.com",)
    assert user.id == "user-1"
    assert user.is_active is True


def test_missing_rows_return_none():
    conn = FakeConnection([FakeResult(), FakeResult()])
    store = _store(conn)
    assert store.get_user("nope") is None
    assert store.get_refresh_token_by_digest("nope") is None


def test_delete_by_digest_reports_rowcount():
    conn = FakeConnection([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = _store(conn)
    assert store.delete_refresh_token_by_digest("digest") is True
    assert store.delete_refresh_token_by_digest("digest") is False


def test_expired_sweep_uses_strict_cutoff():
    conn = FakeConnection([FakeResult(rowcount=3)])
    cutoff = utcnow()
    assert _store(conn).delete_expired_refresh_tokens(cutoff) == 3
    sql, params = conn.statements[0]
    assert "expires_at < %s" in sql
    assert params == (cutoff,)


def test_unique_violation_maps_to_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key value"))
    with pytest.raises(ConstraintViolation):
        _store(conn).create_user(User.new("user@example.com", "digest"))


def test_foreign_key_violation_maps_to_constraint_violation():
    conn = FakeConnection(error=errors.ForeignKeyViolation("missing user"))
    record = RefreshTokenRecord.new("ghost", "digest", utcnow() + timedelta(days=1))
    with pytest.raises(ConstraintViolation):
        _store(conn).create_refresh_token(record)


@pytest.mark.parametrize(
    "conn_error,pool_error",
    [
        (psycopg.OperationalError("server closed the connection"), None),
        (None, PoolTimeout("couldn't get a connection after 5.00 sec")),
    ],
)
def test_driver_failures_map_to_store_unavailable(conn_error, pool_error):
    conn = FakeConnection(error=conn_error) if conn_error else None
    store = _store(conn, pool_error)
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_user("user-1")
    assert excinfo.value.detail == {"op": "get_user"}


def test_ping_and_close():
    conn = FakeConnection([FakeResult([{"?column?": 1}])])
    store = _store(conn)
    store.ping()
    assert conn.statements[0][0] == "SELECT 1"
    store.close()
    assert store.pool.closed is True
