from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from taroauth.logging import get_logger
from taroauth.service.credentials import RequestInfo
from taroauth.service.crypto import CryptoError, decrypt, verify_signature, verify_watermark
from taroauth.service.errors import AuthenticationError, ServerError, UpstreamAuthError
from taroauth.service.sessions import SessionManager
from taroauth.storage.common import DurableStore
from taroauth.storage.errors import ConstraintViolation, StoreUnavailable
from taroauth.storage.models import User, UserInfo
from taroauth.storage.redis_cache import FastCache

logger = get_logger(__name__)

GRANT_TYPE = "authorization_code"
DEFAULT_USER_AGENT = "WeChat Mini Program"
AUTHORIZATION_FAILED = "authorization failed"
EXTERNAL_CREATE_ATTEMPTS = 3


@dataclass
class PlatformSession:
    openid: str
    session_key: str
    unionid: Optional[str] = None


@dataclass
class ProfileBundle:
    encrypted_data: Optional[str] = None
    iv: Optional[str] = None
    signature: Optional[str] = None
    raw_data: Optional[str] = None

    @property
    def complete(self) -> bool:
        return all((self.encrypted_data, self.iv, self.signature, self.raw_data))


@dataclass
class FederatedLoginResult:
    user: UserInfo
    session_token: str
    expires_at: datetime
    is_new_user: bool = False
    profile_updated: bool = False


class PlatformClient:
    """Code-for-session exchange against the mini-program platform."""

    def __init__(
        self,
        app_id: Optional[str],
        app_secret: Optional[str],
        *,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def exchange(self, code: str) -> PlatformSession:
        """Raise UpstreamAuthError for every failure; upstream text stays in the logs."""
        if not self.app_id or not self.app_secret:
            logger.error("wx_credentials_missing")
            raise UpstreamAuthError(AUTHORIZATION_FAILED)
        params = {
            "appid": self.app_id,
            "secret": self.app_secret,
            "js_code": code,
            "grant_type": GRANT_TYPE,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.url, params=params)
                response.raise_for_status()
                payload: Any = response.json()
        except httpx.TimeoutException as exc:
            logger.warning("wx_exchange_timeout", timeout=self.timeout, error=str(exc))
            raise UpstreamAuthError(AUTHORIZATION_FAILED) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning("wx_exchange_http_error", status_code=exc.response.status_code)
            raise UpstreamAuthError(AUTHORIZATION_FAILED) from exc
        except httpx.HTTPError as exc:
            logger.warning("wx_exchange_transport_error", error=str(exc))
            raise UpstreamAuthError(AUTHORIZATION_FAILED) from exc
        except ValueError as exc:
            logger.warning("wx_exchange_parse_error", error=str(exc))
            raise UpstreamAuthError(AUTHORIZATION_FAILED) from exc

        if not isinstance(payload, dict):
            logger.warning("wx_exchange_unexpected_payload")
            raise UpstreamAuthError(AUTHORIZATION_FAILED)
        errcode = payload.get("errcode")
        if errcode not in (None, 0, "0", ""):
            logger.warning("wx_exchange_rejected", errcode=errcode, errmsg=payload.get("errmsg"))
            raise UpstreamAuthError(AUTHORIZATION_FAILED)
        openid = payload.get("openid")
        session_key = payload.get("session_key")
        if not openid or not session_key:
            logger.warning("wx_exchange_incomplete", has_openid=bool(openid))
            raise UpstreamAuthError(AUTHORIZATION_FAILED)
        return PlatformSession(openid=openid, session_key=session_key, unionid=payload.get("unionid"))


class FederatedLoginFlow:
    """Mini-program login: exchange, find-or-create, optional enrichment, session."""

    def __init__(
        self,
        store: DurableStore,
        sessions: SessionManager,
        client: PlatformClient,
        cache: Optional[FastCache] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.client = client
        self.cache = cache

    async def login(
        self,
        code: str,
        bundle: Optional[ProfileBundle] = None,
        request_info: Optional[RequestInfo] = None,
    ) -> FederatedLoginResult:
        if not code:
            raise UpstreamAuthError(AUTHORIZATION_FAILED)
        platform = await self.client.exchange(code)
        info = request_info or RequestInfo()

        try:
            user, created = await self._find_or_create(platform)
        except StoreUnavailable as exc:
            raise ServerError("try again later") from exc
        if not user.is_active:
            logger.warning("wx_login_inactive_user", user_id=user.id)
            raise AuthenticationError("account disabled")

        profile_updated = False
        if bundle is not None and bundle.complete:
            enriched = await self._enrich_profile(user, platform.session_key, bundle)
            if enriched is not None:
                user, profile_updated = enriched, True

        try:
            session = await self.sessions.create(
                user.id,
                user_agent=info.user_agent or DEFAULT_USER_AGENT,
                ip_address=info.ip_address,
            )
        except StoreUnavailable as exc:
            raise ServerError("try again later") from exc
        await self.sessions.cache_identity(user, session)
        if self.cache:
            await self.cache.cache_user(user)

        logger.info("wx_login_succeeded", user_id=user.id, is_new_user=created)
        return FederatedLoginResult(
            user=UserInfo.from_user(user),
            session_token=session.session_token,
            expires_at=session.expires_at,
            is_new_user=created,
            profile_updated=profile_updated,
        )

    async def _find_or_create(self, platform: PlatformSession) -> tuple[User, bool]:
        user = await self.store.get_user_by_external_id(platform.openid)
        if user:
            try:
                await self.store.update_external_session_key(
                    user.id, platform.session_key, platform.unionid
                )
            except StoreUnavailable as exc:
                logger.warning("wx_session_key_update_failed", user_id=user.id, error=str(exc))
            user.wx_session_key = platform.session_key
            return user, False

        suffix = ""
        for _ in range(EXTERNAL_CREATE_ATTEMPTS):
            try:
                user = await self.store.create_external_user(
                    platform.openid, platform.session_key, platform.unionid, suffix=suffix
                )
            except ConstraintViolation as exc:
                # a concurrent login may have created it first
                user = await self.store.get_user_by_external_id(platform.openid)
                if user is not None:
                    return user, False
                if exc.detail.get("field") not in ("username", "email"):
                    logger.error("wx_user_create_conflict", detail=exc.detail)
                    raise ServerError("try again later") from exc
                # another external id shares the synthesized name
                suffix = f"_{secrets.token_hex(3)}"
                continue
            logger.info("wx_user_created", user_id=user.id, username=user.username)
            return user, True
        logger.error("wx_user_create_exhausted", attempts=EXTERNAL_CREATE_ATTEMPTS)
        raise ServerError("try again later")

    async def _enrich_profile(
        self, user: User, session_key: str, bundle: ProfileBundle
    ) -> Optional[User]:
        """Failures here are logged; login continues with the stub profile."""
        if not verify_signature(bundle.raw_data, session_key, bundle.signature):
            logger.warning("wx_profile_signature_invalid", user_id=user.id)
            return None
        try:
            profile = decrypt(bundle.encrypted_data, session_key, bundle.iv)
        except CryptoError as exc:
            logger.warning("wx_profile_decrypt_failed", user_id=user.id, stage=exc.stage, error=exc.message)
            return None
        verify_watermark(profile, self.client.app_id or "")

        try:
            updated = await self.store.update_profile(
                user.id, full_name=profile.nick_name, avatar_url=profile.avatar_url
            )
        except StoreUnavailable as exc:
            logger.warning("wx_profile_update_failed", user_id=user.id, error=str(exc))
            return None
        if self.cache:
            await self.cache.invalidate_user(user.id, user.username)
        await self.sessions.invalidate_all_for_user(user.id)
        return updated
