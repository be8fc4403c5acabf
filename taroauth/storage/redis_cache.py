from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from taroauth.logging import get_logger, token_prefix
from taroauth.storage.models import CachedIdentity, CachedSession, CachedUser, User

logger = get_logger(__name__)

T = TypeVar("T")

SESSION_TTL = timedelta(days=7)
USER_INFO_TTL = timedelta(minutes=30)
LOGIN_FAILURE_TTL = timedelta(minutes=15)

SESSION_TOKEN = "session_token"
SESSION_ID = "session"
USER_SESSION = "user_session"
SESSION_ACCESS = "session_access"
USER = "user"
USERNAME = "username"
LOGIN_FAILURES = "login_failures"


# Cache invalidation requests. The set is closed; apply_invalidation handles each.


@dataclass(frozen=True)
class UserInvalidation:
    user_id: str


@dataclass(frozen=True)
class SessionInvalidation:
    token: str


@dataclass(frozen=True)
class AllUserData:
    pass


@dataclass(frozen=True)
class AllEntries:
    pass


CacheInvalidation = Union[UserInvalidation, SessionInvalidation, AllUserData, AllEntries]


@dataclass
class CacheHealth:
    connected: bool
    total_keys: int


class FastCache:
    """Best-effort Redis wrapper for session and identity projections.

    Every public coroutine catches RedisError at this boundary. Reads degrade
    to a miss, writes report False, counters report None. Callers may ignore
    the results of mutating calls.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        prefix: str = "rocket_taro",
        client: Any = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        if client is None and not redis_url:
            raise ValueError("FastCache needs either a redis_url or a client")
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def key(self, category: str, ident: str) -> str:
        return f"{self.prefix}:{category}:{ident}"

    def _strip(self, key: str, category: str) -> str:
        return key[len(self.prefix) + len(category) + 2 :]

    @staticmethod
    def _seconds(ttl: timedelta) -> int:
        return max(1, int(ttl.total_seconds()))

    async def _attempt(
        self, op: str, call: Callable[[], Awaitable[T]], default: T, **log: Any
    ) -> T:
        try:
            return await call()
        except RedisError as exc:
            logger.warning("cache_operation_failed", op=op, error=str(exc), **log)
            return default

    # ------------------------------------------------------------------
    # Generic JSON helpers
    # ------------------------------------------------------------------

    async def _get_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._attempt("get", lambda: self.client.get(key), None, key=key)
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning("cache_payload_corrupt", key=key, error=str(exc))
            return None
        return value if isinstance(value, dict) else None

    async def _set_json(self, key: str, value: Dict[str, Any], ttl: timedelta) -> bool:
        payload = json.dumps(value)

        async def _set() -> bool:
            await self.client.set(key, payload, ex=self._seconds(ttl))
            return True

        return await self._attempt("set", _set, False, key=key)

    async def delete(self, *keys: str) -> bool:
        if not keys:
            return True

        async def _delete() -> bool:
            await self.client.delete(*keys)
            return True

        return await self._attempt("delete", _delete, False, keys=len(keys))

    async def scan(self, pattern: str) -> List[str]:
        """Full keys matching `<prefix>:<pattern>`; empty on failure."""

        match = f"{self.prefix}:{pattern}"

        async def _scan() -> List[str]:
            return [key async for key in self.client.scan_iter(match=match, count=200)]

        return await self._attempt("scan", _scan, [], pattern=pattern)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def store_identity(self, identity: CachedIdentity) -> bool:
        """Write session_token, session and user_session entries in one pipeline."""

        token = identity.session.session_token
        session_payload = json.dumps(identity.session.to_dict())
        combined_payload = json.dumps(identity.to_dict())
        ttl = self._seconds(SESSION_TTL)

        async def _store() -> bool:
            pipe = self.client.pipeline(transaction=False)
            pipe.set(self.key(SESSION_TOKEN, token), session_payload, ex=ttl)
            pipe.set(self.key(SESSION_ID, identity.session.id), session_payload, ex=ttl)
            pipe.set(self.key(USER_SESSION, token), combined_payload, ex=ttl)
            await pipe.execute()
            return True

        return await self._attempt(
            "store_identity", _store, False, token_prefix=token_prefix(token)
        )

    async def get_identity(self, token: str) -> Optional[CachedIdentity]:
        data = await self._get_json(self.key(USER_SESSION, token))
        if data is None:
            return None
        try:
            return CachedIdentity.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "cache_identity_corrupt", token_prefix=token_prefix(token), error=str(exc)
            )
            return None

    async def get_session(self, token: str) -> Optional[CachedSession]:
        data = await self._get_json(self.key(SESSION_TOKEN, token))
        if data is None:
            return None
        try:
            return CachedSession.from_dict(data)
        except (KeyError, TypeError, ValueError):
            return None

    async def delete_session_keys(self, token: str, session_id: Optional[str] = None) -> bool:
        """Remove every key derived from one session.

        Each deletion is issued on its own so one failure does not skip the
        others. Returns True only if all of them succeeded.
        """

        if session_id is None:
            cached = await self.get_session(token)
            if cached is None:
                identity = await self.get_identity(token)
                cached = identity.session if identity else None
            session_id = cached.id if cached else None

        keys = [
            self.key(SESSION_TOKEN, token),
            self.key(USER_SESSION, token),
            self.key(SESSION_ACCESS, token),
        ]
        if session_id:
            keys.append(self.key(SESSION_ID, session_id))
        results = [await self.delete(key) for key in keys]
        ok = all(results)
        if not ok:
            logger.warning(
                "cache_session_delete_partial",
                token_prefix=token_prefix(token),
                failed=results.count(False),
            )
        return ok

    async def touch_session_access(self, token: str, now: Optional[datetime] = None) -> bool:
        stamp = int((now or datetime.now(timezone.utc)).timestamp())

        async def _touch() -> bool:
            await self.client.set(
                self.key(SESSION_ACCESS, token), str(stamp), ex=self._seconds(SESSION_TTL)
            )
            return True

        return await self._attempt(
            "touch_session_access", _touch, False, token_prefix=token_prefix(token)
        )

    async def get_session_access(self, token: str) -> Optional[datetime]:
        raw = await self._attempt(
            "get_session_access",
            lambda: self.client.get(self.key(SESSION_ACCESS, token)),
            None,
        )
        if raw is None:
            return None
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except (TypeError, ValueError):
            return None

    async def purge_user_sessions(self, user_id: str) -> int:
        """Drop cached sessions whose embedded user id matches.

        Only sessions present under the user_session pattern are found; sessions
        that were never cached are left to the durable store.
        """

        removed = 0
        for key in await self.scan(f"{USER_SESSION}:*"):
            token = self._strip(key, USER_SESSION)
            identity = await self.get_identity(token)
            if identity is None or identity.user.id != user_id:
                continue
            await self.delete_session_keys(token, identity.session.id)
            removed += 1
        return removed

    async def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        removed = 0
        for key in await self.scan(f"{SESSION_TOKEN}:*"):
            token = self._strip(key, SESSION_TOKEN)
            cached = await self.get_session(token)
            if cached is None or not cached.is_expired(now):
                continue
            await self.delete_session_keys(token, cached.id)
            removed += 1
        return removed

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def cache_user(self, user: User) -> bool:
        cached = CachedUser.from_user(user)
        stored = await self._set_json(self.key(USER, user.id), cached.to_dict(), USER_INFO_TTL)

        async def _map() -> bool:
            await self.client.set(
                self.key(USERNAME, user.username), user.id, ex=self._seconds(USER_INFO_TTL)
            )
            return True

        mapped = await self._attempt("cache_username", _map, False, user_id=user.id)
        return stored and mapped

    async def get_user(self, user_id: str) -> Optional[CachedUser]:
        data = await self._get_json(self.key(USER, user_id))
        if data is None:
            return None
        try:
            return CachedUser.from_dict(data)
        except (KeyError, TypeError, ValueError):
            return None

    async def get_user_id_by_username(self, username: str) -> Optional[str]:
        return await self._attempt(
            "get_username",
            lambda: self.client.get(self.key(USERNAME, username)),
            None,
        )

    async def invalidate_user(self, user_id: str, username: Optional[str] = None) -> bool:
        keys = [self.key(USER, user_id)]
        if username:
            keys.append(self.key(USERNAME, username))
        return await self.delete(*keys)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    async def incr_with_ttl(self, key: str, ttl: timedelta) -> Optional[int]:
        """Atomically increment and re-arm the TTL; None when Redis is down."""

        async def _incr() -> int:
            pipe = self.client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, self._seconds(ttl))
            count, _ = await pipe.execute()
            return int(count)

        return await self._attempt("incr_with_ttl", _incr, None, key=key)

    async def get_int(self, key: str) -> Optional[int]:
        raw = await self._attempt("get_int", lambda: self.client.get(key), None, key=key)
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def _delete_pattern(self, pattern: str) -> int:
        keys = await self.scan(pattern)
        if keys and await self.delete(*keys):
            return len(keys)
        return 0

    async def apply_invalidation(self, request: CacheInvalidation) -> int:
        """Apply one invalidation request and return how many entries went away."""

        if isinstance(request, UserInvalidation):
            removed = 1 if await self.delete(self.key(USER, request.user_id)) else 0
            return removed + await self.purge_user_sessions(request.user_id)
        if isinstance(request, SessionInvalidation):
            return 1 if await self.delete_session_keys(request.token) else 0
        if isinstance(request, AllUserData):
            total = 0
            for category in (USER, USERNAME, USER_SESSION):
                total += await self._delete_pattern(f"{category}:*")
            return total
        if isinstance(request, AllEntries):
            return await self._delete_pattern("*")
        raise TypeError(f"unsupported cache invalidation: {request!r}")

    async def health(self) -> CacheHealth:
        try:
            await self.client.ping()
        except RedisError as exc:
            logger.warning("cache_health_failed", error=str(exc))
            return CacheHealth(connected=False, total_keys=0)
        return CacheHealth(connected=True, total_keys=len(await self.scan("*")))

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except RedisError as exc:
            logger.warning("cache_close_failed", error=str(exc))


__all__ = [
    "FastCache",
    "CacheHealth",
    "CacheInvalidation",
    "UserInvalidation",
    "SessionInvalidation",
    "AllUserData",
    "AllEntries",
    "SESSION_TTL",
    "USER_INFO_TTL",
    "LOGIN_FAILURE_TTL",
]
