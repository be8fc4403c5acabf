from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

import httpx
from redis import Redis
from redis.exceptions import RedisError

from taroauth.config import Settings, get_settings, reset_settings_cache
from taroauth.logging import get_logger
from taroauth.service.auth import AuthService
from taroauth.service.federated import FederatedLoginFlow, PlatformClient
from taroauth.service.identity import IdentityResolver
from taroauth.service.lockout import LockoutTracker
from taroauth.service.sessions import SessionManager
from taroauth.storage.common import DurableStore
from taroauth.storage.errors import StoreUnavailable
from taroauth.storage.memory import MemoryStore
from taroauth.storage.postgres import PostgresStore
from taroauth.storage.redis_cache import FastCache

logger = get_logger(__name__)

# distinguishes "no cache" (None) from "connect from settings"
_UNSET: Any = object()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _connect_cache(settings: Settings) -> Optional[FastCache]:
    if not settings.redis_url:
        return None
    redis_error: Exception | None = None
    # Short-lived sync client so the async one is not bound to a startup loop
    sync_client = Redis.from_url(settings.redis_url, decode_responses=True, socket_timeout=2.0)
    try:
        sync_client.ping()
    except RedisError as exc:
        redis_error = exc
    finally:
        sync_client.close()
    if redis_error is None:
        return FastCache(settings.redis_url, prefix=settings.cache_prefix)

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for the session cache and login lockout; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run without it."
        ) from redis_error
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error),
        message="Running without Redis; every request resolves against the durable store "
        "and login lockout is disabled.",
    )
    return None


class Runtime:
    """Owns the store, cache and the services wired on top of them."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[DurableStore] = None,
        cache: Any = _UNSET,
        wx_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if store is not None:
            self.store = store
        elif self.settings.use_memory_store:
            self.store = MemoryStore()
        else:
            self.store = PostgresStore(
                self.settings.database_url,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
            )
        self.cache: Optional[FastCache] = (
            _connect_cache(self.settings) if cache is _UNSET else cache
        )

        self.sessions = SessionManager(
            self.store, self.cache, ttl=timedelta(days=self.settings.session_ttl_days)
        )
        self.lockout = LockoutTracker(
            self.cache, window=timedelta(seconds=self.settings.login_failure_window_seconds)
        )
        self.identity = IdentityResolver(self.sessions)
        self.auth = AuthService(
            self.store, self.cache, self.sessions, self.lockout, self.settings
        )
        self.platform = PlatformClient(
            self.settings.wx_app_id,
            self.settings.wx_app_secret,
            url=self.settings.wx_code2session_url,
            timeout=self.settings.wx_exchange_timeout_seconds,
            transport=wx_transport,
        )
        self.federated = FederatedLoginFlow(
            self.store, self.sessions, self.platform, cache=self.cache
        )
        self._sweeper: asyncio.Task | None = None

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            wx_configured=self.settings.wx_configured,
        )

    async def start(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()
        await self.store.ensure_schema()
        interval = self.settings.session_sweep_interval_seconds
        if interval > 0 and self._sweeper is None:
            self._sweeper = asyncio.create_task(run_session_sweeper(self.sessions, interval))

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if self.cache is not None:
            await self.cache.close()
        await self.store.close()


async def run_session_sweeper(sessions: SessionManager, interval_seconds: float) -> None:
    """Delete expired session rows and cache entries until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await sessions.sweep_expired()
        except StoreUnavailable as exc:
            logger.warning("session_sweep_failed", error=str(exc))
        await sessions.cleanup_expired_cache()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides: Any) -> Runtime:
    """Rebuild the runtime from a fresh environment; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime
