"""Unit tests for PostgresStore SQL handling against a scripted pool."""

import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from taroauth.logging import get_logger
from taroauth.storage.common import LookupStatus
from taroauth.storage.errors import ConstraintViolation, StoreUnavailable
from taroauth.storage.models import LoginLog
from taroauth.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows, rowcount):
        self._rows = rows
        self.rowcount = rowcount

    async def fetchone(self):
        return self._rows[0] if self._rows else None

    async def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    async def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        outcome = self.pool.outcomes.pop(0) if self.pool.outcomes else ([], 0)
        if isinstance(outcome, Exception):
            raise outcome
        rows, rowcount = outcome
        return FakeCursor(rows, rowcount)


class ScriptedPool:
    """Answers each execute() with the next scripted (rows, rowcount) or exception."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.statements = []

    @contextlib.asynccontextmanager
    async def connection(self):
        yield FakeConnection(self)


def _store(*outcomes):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    store.pool = ScriptedPool(*outcomes)
    return store


def _user_row(prefix="", **overrides):
    row = {
        "id": uuid.uuid4(),
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "",
        "full_name": None,
        "avatar_url": None,
        "is_active": True,
        "is_admin": False,
        "is_guest": False,
        "wx_openid": None,
        "wx_unionid": None,
        "wx_session_key": None,
        "last_login_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return {f"{prefix}{key}": value for key, value in row.items()}


def _session_row(user_id, prefix=""):
    row = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "session_token": "tok",
        "user_agent": "pytest",
        "ip_address": "127.0.0.1",
        "expires_at": NOW + timedelta(days=7),
        "created_at": NOW,
        "last_accessed_at": NOW,
    }
    return {f"{prefix}{key}": value for key, value in row.items()}


class TestUsers:
    async def test_create_user_maps_row(self):
        store = _store(([_user_row(is_admin=True)], 1))
        user = await store.create_user("alice", "alice@example.com", "hash", is_admin=True)
        assert user.username == "alice"
        assert user.is_admin is True
        assert isinstance(user.id, str)
        sql, params = store.pool.statements[0]
        assert sql.startswith("INSERT INTO users")
        assert params[:3] == ("alice", "alice@example.com", "hash")

    async def test_duplicate_username(self):
        store = _store(errors.UniqueViolation('duplicate key value violates "users_username_key"'))
        with pytest.raises(ConstraintViolation) as excinfo:
            await store.create_user("alice", "alice@example.com", "hash")
        assert excinfo.value.detail == {"field": "username"}

    async def test_external_user_identity(self):
        store = _store(([_user_row(username="wx_oGZUI0eg", wx_openid="oGZUI0egBJY1")], 1))
        await store.create_external_user("oGZUI0egBJY1", "key")
        _, params = store.pool.statements[0]
        assert params[:2] == ("wx_oGZUI0eg", "oGZUI0egBJ@wx.temp")

    async def test_external_user_suffix(self):
        store = _store(([_user_row(username="wx_oGZUI0eg_a1b2c3", wx_openid="oGZUI0egBJY2")], 1))
        await store.create_external_user("oGZUI0egBJY2", "key", suffix="_a1b2c3")
        _, params = store.pool.statements[0]
        assert params[:2] == ("wx_oGZUI0eg_a1b2c3", "oGZUI0egBJ_a1b2c3@wx.temp")

    async def test_external_user_conflict_names_column(self):
        cases = [
            ("users_wx_openid_key", "wx_openid"),
            ("users_username_key", "username"),
            ("users_email_key", "email"),
        ]
        for constraint, field in cases:
            store = _store(errors.UniqueViolation(f'duplicate key value violates "{constraint}"'))
            with pytest.raises(ConstraintViolation) as excinfo:
                await store.create_external_user("oGZUI0egBJY1", "key")
            assert excinfo.value.detail == {"field": field}

    async def test_duplicate_email(self):
        store = _store(errors.UniqueViolation('duplicate key value violates "users_email_key"'))
        with pytest.raises(ConstraintViolation) as excinfo:
            await store.create_user("alice", "alice@example.com", "hash")
        assert excinfo.value.detail == {"field": "email"}

    async def test_missing_user(self):
        store = _store(([], 0))
        assert await store.get_user(str(uuid.uuid4())) is None

    async def test_username_exists(self):
        store = _store(([{"taken": True}], 1))
        assert await store.username_exists("alice") is True


class TestSessions:
    async def test_lookup_found(self):
        user_row = _user_row("u_")
        store = _store(([{**user_row, **_session_row(user_row["u_id"], "s_")}], 1))
        lookup = await store.lookup_session("tok", NOW)
        assert lookup.status is LookupStatus.FOUND
        assert lookup.user.username == "alice"
        assert lookup.session.session_token == "tok"
        assert lookup.session.ip_address == "127.0.0.1"

    async def test_lookup_expired(self):
        store = _store(([], 0), ([{"present": 1}], 1))
        lookup = await store.lookup_session("tok", NOW)
        assert lookup.status is LookupStatus.EXPIRED

    async def test_lookup_missing(self):
        store = _store(([], 0), ([], 0))
        lookup = await store.lookup_session("tok", NOW)
        assert lookup.status is LookupStatus.NOT_FOUND

    async def test_create_session_normalizes_ip(self):
        user_id = str(uuid.uuid4())
        store = _store(([_session_row(user_id)], 1))
        await store.create_session(user_id, timedelta(days=7), "pytest", "not-an-ip")
        _, params = store.pool.statements[0]
        assert params[0] == user_id
        assert params[3] is None

    async def test_create_session_for_missing_user(self):
        store = _store(errors.ForeignKeyViolation("violates foreign key constraint"))
        with pytest.raises(ConstraintViolation):
            await store.create_session(str(uuid.uuid4()), timedelta(days=7))

    async def test_delete_counts(self):
        store = _store(([], 1), ([], 0), ([], 3))
        assert await store.delete_session("tok") is True
        assert await store.delete_session("tok") is False
        assert await store.delete_expired_sessions(NOW) == 3

    async def test_login_log_insert(self):
        store = _store(([], 1))
        await store.log_login_attempt(
            LoginLog(username="alice", login_success=False, ip_address="::1", failure_reason="x")
        )
        sql, params = store.pool.statements[0]
        assert sql.startswith("INSERT INTO login_logs")
        assert params[1:4] == ("alice", False, "::1")


class TestFailures:
    async def test_connection_failure_is_store_unavailable(self):
        store = _store(psycopg.OperationalError("connection refused"))
        with pytest.raises(StoreUnavailable) as excinfo:
            await store.get_user_by_username("alice")
        assert excinfo.value.operation == "get_user_by_username"

    async def test_ensure_schema_runs_every_statement(self):
        store = _store()
        await store.ensure_schema()
        statements = [sql for sql, _ in store.pool.statements]
        assert any(sql.startswith("CREATE TABLE IF NOT EXISTS users") for sql in statements)
        assert any("user_sessions" in sql for sql in statements)
        assert any("login_logs" in sql for sql in statements)
