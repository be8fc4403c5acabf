from __future__ import annotations

import contextlib
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from psycopg import Error as PsycopgError
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from taroauth.logging import get_logger
from taroauth.storage.common import (
    LookupStatus,
    SessionLookup,
    external_email,
    external_username,
    parse_ip_address,
    safe_row_value,
)
from taroauth.storage.errors import ConstraintViolation, StoreUnavailable
from taroauth.storage.models import LoginLog, Session, User, new_session_token, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        username VARCHAR(50) NOT NULL UNIQUE,
        email VARCHAR(255) NOT NULL UNIQUE,
        password_hash TEXT NOT NULL DEFAULT '',
        full_name VARCHAR(100),
        avatar_url TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        is_guest BOOLEAN NOT NULL DEFAULT FALSE,
        wx_openid VARCHAR(128) UNIQUE,
        wx_unionid VARCHAR(128),
        wx_session_key TEXT,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_sessions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        session_token VARCHAR(255) NOT NULL UNIQUE,
        user_agent TEXT,
        ip_address INET,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_accessed_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_logs (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID REFERENCES users(id) ON DELETE SET NULL,
        username VARCHAR(50) NOT NULL,
        login_success BOOLEAN NOT NULL,
        ip_address INET,
        user_agent TEXT,
        failure_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_user_sessions_user_id ON user_sessions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_user_sessions_expires_at ON user_sessions(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_login_logs_username ON login_logs(username, created_at)",
)

_USER_COLUMNS = (
    "id, username, email, password_hash, full_name, avatar_url, is_active, is_admin, "
    "is_guest, wx_openid, wx_unionid, wx_session_key, last_login_at, created_at, updated_at"
)


def _user_from_row(row: Dict[str, Any], prefix: str = "") -> User:
    def col(name: str, default: Any = None) -> Any:
        return safe_row_value(row, f"{prefix}{name}", default)

    return User(
        id=str(col("id")),
        username=col("username"),
        email=col("email"),
        password_hash=col("password_hash") or "",
        full_name=col("full_name"),
        avatar_url=col("avatar_url"),
        is_active=bool(col("is_active", True)),
        is_admin=bool(col("is_admin", False)),
        is_guest=bool(col("is_guest", False)),
        wx_openid=col("wx_openid"),
        wx_unionid=col("wx_unionid"),
        wx_session_key=col("wx_session_key"),
        last_login_at=col("last_login_at"),
        created_at=col("created_at") or utcnow(),
        updated_at=col("updated_at") or utcnow(),
    )


def _unique_field(exc: errors.UniqueViolation, candidates: Sequence[str]) -> str:
    """Column named by the violated constraint; the last candidate when unknown."""
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    text = f"{constraint} {exc}"
    for column in candidates:
        if column in text:
            return column
    return candidates[-1]


def _session_from_row(row: Dict[str, Any], prefix: str = "") -> Session:
    def col(name: str, default: Any = None) -> Any:
        return safe_row_value(row, f"{prefix}{name}", default)

    ip = col("ip_address")
    return Session(
        id=str(col("id")),
        user_id=str(col("user_id")),
        session_token=col("session_token"),
        expires_at=col("expires_at"),
        created_at=col("created_at"),
        user_agent=col("user_agent"),
        ip_address=str(ip) if ip is not None else None,
        last_accessed_at=col("last_accessed_at"),
    )


class PostgresStore:
    """Postgres-backed durable store on an async connection pool.

    Each query checks out its own connection, so with max_size=1 every query
    is serialized on the single physical connection.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 4) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min(min_size, max_size),
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()

    async def close(self) -> None:
        await self.pool.close()

    @contextlib.asynccontextmanager
    async def _connect(self, operation: str) -> AsyncIterator[Any]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except (errors.UniqueViolation, errors.ForeignKeyViolation):
            raise
        except PsycopgError as exc:
            self.logger.error("store_query_failed", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, exc) from exc

    async def _fetchone(self, operation: str, sql: str, params: Sequence[Any]) -> Optional[Dict[str, Any]]:
        async with self._connect(operation) as conn:
            cur = await conn.execute(sql, params)
            return await cur.fetchone()

    async def _fetchall(self, operation: str, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        async with self._connect(operation) as conn:
            cur = await conn.execute(sql, params)
            return list(await cur.fetchall())

    async def _execute(self, operation: str, sql: str, params: Sequence[Any]) -> int:
        async with self._connect(operation) as conn:
            cur = await conn.execute(sql, params)
            return cur.rowcount

    async def ensure_schema(self) -> None:
        """Create the users, user_sessions and login_logs tables if missing."""

        async with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)

    # users -------------------------------------------------------------

    async def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        is_admin: bool = False,
        is_guest: bool = False,
        is_active: bool = True,
    ) -> User:
        try:
            row = await self._fetchone(
                "create_user",
                f"""
                INSERT INTO users (username, email, password_hash, full_name, is_active, is_admin, is_guest)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (username, email, password_hash, full_name, is_active, is_admin, is_guest),
            )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc, ("username", "email"))
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return _user_from_row(row)

    async def create_external_user(
        self,
        openid: str,
        session_key: str,
        unionid: Optional[str] = None,
        *,
        suffix: str = "",
    ) -> User:
        try:
            row = await self._fetchone(
                "create_external_user",
                f"""
                INSERT INTO users (username, email, password_hash, is_active, is_guest,
                                   wx_openid, wx_unionid, wx_session_key, last_login_at)
                VALUES (%s, %s, '', TRUE, TRUE, %s, %s, %s, now())
                RETURNING {_USER_COLUMNS}
                """,
                (
                    external_username(openid, suffix),
                    external_email(openid, suffix),
                    openid,
                    unionid,
                    session_key,
                ),
            )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc, ("wx_openid", "username", "email"))
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return _user_from_row(row)

    async def get_user(self, user_id: str) -> Optional[User]:
        row = await self._fetchone(
            "get_user", f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
        )
        return _user_from_row(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self._fetchone(
            "get_user_by_username",
            f"SELECT {_USER_COLUMNS} FROM users WHERE username = %s",
            (username,),
        )
        return _user_from_row(row) if row else None

    async def get_user_by_external_id(self, openid: str) -> Optional[User]:
        row = await self._fetchone(
            "get_user_by_external_id",
            f"SELECT {_USER_COLUMNS} FROM users WHERE wx_openid = %s",
            (openid,),
        )
        return _user_from_row(row) if row else None

    async def username_exists(self, username: str) -> bool:
        row = await self._fetchone(
            "username_exists",
            "SELECT EXISTS(SELECT 1 FROM users WHERE username = %s) AS taken",
            (username,),
        )
        return bool(row and row["taken"])

    async def update_external_session_key(
        self, user_id: str, session_key: str, unionid: Optional[str] = None
    ) -> None:
        await self._execute(
            "update_external_session_key",
            """
            UPDATE users
            SET wx_session_key = %s, wx_unionid = COALESCE(%s, wx_unionid),
                last_login_at = now(), updated_at = now()
            WHERE id = %s
            """,
            (session_key, unionid, user_id),
        )

    async def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        row = await self._fetchone(
            "update_profile",
            f"""
            UPDATE users
            SET full_name = COALESCE(%s, full_name), avatar_url = COALESCE(%s, avatar_url),
                updated_at = now()
            WHERE id = %s
            RETURNING {_USER_COLUMNS}
            """,
            (full_name, avatar_url, user_id),
        )
        return _user_from_row(row) if row else None

    async def set_user_flags(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_admin: Optional[bool] = None,
    ) -> Optional[User]:
        row = await self._fetchone(
            "set_user_flags",
            f"""
            UPDATE users
            SET is_active = COALESCE(%s, is_active), is_admin = COALESCE(%s, is_admin),
                updated_at = now()
            WHERE id = %s
            RETURNING {_USER_COLUMNS}
            """,
            (is_active, is_admin, user_id),
        )
        return _user_from_row(row) if row else None

    async def update_last_login(self, user_id: str) -> None:
        await self._execute(
            "update_last_login",
            "UPDATE users SET last_login_at = now(), updated_at = now() WHERE id = %s",
            (user_id,),
        )

    # sessions ----------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        ttl: timedelta,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        now = utcnow()
        try:
            row = await self._fetchone(
                "create_session",
                """
                INSERT INTO user_sessions (user_id, session_token, user_agent, ip_address,
                                           expires_at, created_at, last_accessed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING id, user_id, session_token, user_agent, ip_address,
                          expires_at, created_at, last_accessed_at
                """,
                (
                    user_id,
                    new_session_token(),
                    user_agent,
                    parse_ip_address(ip_address),
                    now + ttl,
                    now,
                    now,
                ),
            )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("session token collision", {"field": "session_token"}) from exc
        return _session_from_row(row)

    async def lookup_session(self, token: str, now: datetime) -> SessionLookup:
        row = await self._fetchone(
            "lookup_session",
            """
            SELECT s.id AS s_id, s.user_id AS s_user_id, s.session_token AS s_session_token,
                   s.user_agent AS s_user_agent, s.ip_address AS s_ip_address,
                   s.expires_at AS s_expires_at, s.created_at AS s_created_at,
                   s.last_accessed_at AS s_last_accessed_at,
                   u.id AS u_id, u.username AS u_username, u.email AS u_email,
                   u.password_hash AS u_password_hash, u.full_name AS u_full_name,
                   u.avatar_url AS u_avatar_url, u.is_active AS u_is_active,
                   u.is_admin AS u_is_admin, u.is_guest AS u_is_guest,
                   u.wx_openid AS u_wx_openid, u.wx_unionid AS u_wx_unionid,
                   u.wx_session_key AS u_wx_session_key, u.last_login_at AS u_last_login_at,
                   u.created_at AS u_created_at, u.updated_at AS u_updated_at
            FROM user_sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.session_token = %s AND s.expires_at > %s AND u.is_active = TRUE
            """,
            (token, now),
        )
        if row:
            return SessionLookup(
                LookupStatus.FOUND,
                _user_from_row(row, "u_"),
                _session_from_row(row, "s_"),
            )
        stale = await self._fetchone(
            "lookup_session_expired",
            """
            SELECT 1 AS present FROM user_sessions s JOIN users u ON u.id = s.user_id
            WHERE s.session_token = %s AND s.expires_at <= %s AND u.is_active = TRUE
            """,
            (token, now),
        )
        if stale:
            return SessionLookup(LookupStatus.EXPIRED)
        return SessionLookup.missing()

    async def touch_session(self, token: str, now: datetime) -> None:
        await self._execute(
            "touch_session",
            "UPDATE user_sessions SET last_accessed_at = %s WHERE session_token = %s",
            (now, token),
        )

    async def delete_session(self, token: str) -> bool:
        count = await self._execute(
            "delete_session",
            "DELETE FROM user_sessions WHERE session_token = %s",
            (token,),
        )
        return count > 0

    async def delete_user_sessions(self, user_id: str) -> int:
        return await self._execute(
            "delete_user_sessions",
            "DELETE FROM user_sessions WHERE user_id = %s",
            (user_id,),
        )

    async def delete_expired_sessions(self, now: datetime) -> int:
        return await self._execute(
            "delete_expired_sessions",
            "DELETE FROM user_sessions WHERE expires_at < %s",
            (now,),
        )

    async def log_login_attempt(self, entry: LoginLog) -> None:
        await self._execute(
            "log_login_attempt",
            """
            INSERT INTO login_logs (user_id, username, login_success, ip_address,
                                    user_agent, failure_reason, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.user_id,
                entry.username,
                entry.login_success,
                parse_ip_address(entry.ip_address),
                entry.user_agent,
                entry.failure_reason,
                entry.created_at,
            ),
        )
