from __future__ import annotations

from datetime import timedelta
from typing import Optional

from taroauth.logging import get_logger
from taroauth.storage.redis_cache import LOGIN_FAILURE_TTL, LOGIN_FAILURES, FastCache

logger = get_logger(__name__)


class LockoutTracker:
    """Failed-login counter per attempted username, kept only in the cache.

    Every failure re-arms the TTL, so the window slides from the most recent
    failure. With the cache unavailable nothing is counted and nobody is locked.
    """

    def __init__(self, cache: Optional[FastCache], *, window: timedelta = LOGIN_FAILURE_TTL) -> None:
        self.cache = cache
        self.window = window

    def _key(self, identifier: str) -> str:
        return self.cache.key(LOGIN_FAILURES, identifier)

    async def record_failure(self, identifier: str) -> Optional[int]:
        if not self.cache:
            return None
        count = await self.cache.incr_with_ttl(self._key(identifier), self.window)
        if count is not None:
            logger.info("login_failure_recorded", username=identifier, count=count)
        return count

    async def failure_count(self, identifier: str) -> int:
        if not self.cache:
            return 0
        return await self.cache.get_int(self._key(identifier)) or 0

    async def is_locked(self, identifier: str, max_attempts: int) -> bool:
        return await self.failure_count(identifier) >= max_attempts

    async def clear(self, identifier: str) -> None:
        if self.cache:
            await self.cache.delete(self._key(identifier))
