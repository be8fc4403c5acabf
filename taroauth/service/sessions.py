from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from taroauth.logging import get_logger, token_prefix
from taroauth.service.errors import AuthErrorKind, AuthFailure
from taroauth.storage.common import DurableStore, LookupStatus
from taroauth.storage.errors import StoreUnavailable
from taroauth.storage.models import (
    AuthenticatedIdentity,
    CachedIdentity,
    Session,
    User,
    utcnow,
)
from taroauth.storage.redis_cache import SESSION_TTL, FastCache

logger = get_logger(__name__)


class SessionManager:
    """Session lifecycle over the durable store with a best-effort cache in front.

    The store is the source of truth. Cache entries are projections that can
    always be rebuilt from it; losing or skipping them only costs a query.
    """

    def __init__(
        self,
        store: DurableStore,
        cache: Optional[FastCache],
        *,
        ttl: timedelta = SESSION_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = ttl
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def create(
        self,
        user_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        """Persist a new session; StoreUnavailable propagates to the caller."""
        session = await self.store.create_session(
            user_id, self.ttl, user_agent=user_agent, ip_address=ip_address
        )
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            token_prefix=token_prefix(session.session_token),
        )
        return session

    async def cache_identity(self, user: User, session: Session) -> bool:
        if not self.cache:
            return False
        stored = await self.cache.store_identity(CachedIdentity.build(user, session))
        await self.cache.touch_session_access(session.session_token, self._now())
        return stored

    async def validate(self, token: str) -> AuthenticatedIdentity:
        """Resolve a token to its user and session, cache first.

        Raises AuthFailure with INVALID, EXPIRED or DATABASE_ERROR.
        """
        now = self._now()
        if self.cache:
            cached = await self.cache.get_identity(token)
            if cached is not None:
                if not cached.session.is_expired(now) and cached.user.is_active:
                    await self.cache.touch_session_access(token, now)
                    return AuthenticatedIdentity(cached.user, cached.session, source="cache")
                # stale projection; drop it and let the store decide
                await self.cache.delete_session_keys(token, cached.session.id)

        try:
            lookup = await self.store.lookup_session(token, now)
        except StoreUnavailable as exc:
            logger.error(
                "session_validate_store_failed",
                token_prefix=token_prefix(token),
                error=str(exc),
            )
            raise AuthFailure(AuthErrorKind.DATABASE_ERROR) from exc

        if lookup.status is LookupStatus.EXPIRED:
            raise AuthFailure(AuthErrorKind.EXPIRED)
        if not lookup.found or lookup.user is None or lookup.session is None:
            raise AuthFailure(AuthErrorKind.INVALID)

        try:
            await self.store.touch_session(token, now)
        except StoreUnavailable as exc:
            logger.warning(
                "session_touch_failed", token_prefix=token_prefix(token), error=str(exc)
            )
        await self.cache_identity(lookup.user, lookup.session)

        identity = CachedIdentity.build(lookup.user, lookup.session)
        return AuthenticatedIdentity(identity.user, identity.session, source="store")

    async def invalidate(self, token: str) -> bool:
        """Delete the session row and every cache key derived from it.

        Cache keys are cleared even when the store call fails; the store
        failure is re-raised afterwards. Returns whether a row was deleted.
        """
        session_id: Optional[str] = None
        if self.cache:
            cached = await self.cache.get_session(token)
            session_id = cached.id if cached else None
        try:
            deleted = await self.store.delete_session(token)
        finally:
            if self.cache:
                await self.cache.delete_session_keys(token, session_id)
        logger.info("session_invalidated", token_prefix=token_prefix(token), deleted=deleted)
        return deleted

    async def invalidate_all_for_user(self, user_id: str) -> int:
        """Cache-only cascade for a user; sessions never cached are not touched."""
        if not self.cache:
            return 0
        removed = await self.cache.purge_user_sessions(user_id)
        logger.info("user_sessions_cache_invalidated", user_id=user_id, removed=removed)
        return removed

    async def revoke_all_for_user(self, user_id: str) -> int:
        """Hard revocation: store rows first, then the cached projections."""
        revoked = await self.store.delete_user_sessions(user_id)
        await self.invalidate_all_for_user(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked

    async def sweep_expired(self) -> int:
        removed = await self.store.delete_expired_sessions(self._now())
        if removed:
            logger.info("expired_sessions_swept", removed=removed)
        return removed

    async def cleanup_expired_cache(self) -> int:
        if not self.cache:
            return 0
        removed = await self.cache.purge_expired_sessions(self._now())
        logger.info("expired_session_cache_cleaned", removed=removed)
        return removed
