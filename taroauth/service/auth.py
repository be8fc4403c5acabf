from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taroauth.config import Settings
from taroauth.logging import get_logger
from taroauth.service.credentials import RequestInfo
from taroauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ServerError,
    ValidationError,
)
from taroauth.service.lockout import LockoutTracker
from taroauth.service.sessions import SessionManager
from taroauth.storage.common import GUEST_EMAIL_DOMAIN, DurableStore
from taroauth.storage.errors import ConstraintViolation, StoreUnavailable
from taroauth.storage.models import LoginLog, Session, User, UserInfo, utcnow
from taroauth.storage.redis_cache import FastCache

logger = get_logger(__name__)

USERNAME_MIN, USERNAME_MAX = 3, 30
PASSWORD_MIN, PASSWORD_MAX = 6, 30
NEW_USER_WINDOW = timedelta(days=7)

INVALID_CREDENTIALS = "invalid username or password"
TOO_MANY_ATTEMPTS = "too many attempts, try again later"
TRY_AGAIN_LATER = "try again later"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class LoginResult:
    user: UserInfo
    session_token: str
    expires_at: datetime
    is_new_user: bool = False
    needs_profile_completion: bool = False


def _validate_registration(username: str, email: str, password: str, confirm_password: str) -> None:
    if password != confirm_password:
        raise ValidationError("passwords do not match", detail={"field": "confirm_password"})
    if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
        raise ValidationError(
            f"username must be {USERNAME_MIN}-{USERNAME_MAX} characters", detail={"field": "username"}
        )
    if not PASSWORD_MIN <= len(password) <= PASSWORD_MAX:
        raise ValidationError(
            f"password must be {PASSWORD_MIN}-{PASSWORD_MAX} characters", detail={"field": "password"}
        )
    if not _EMAIL_PATTERN.match(email):
        raise ValidationError("invalid email address", detail={"field": "email"})


class AuthService:
    """Password, registration, guest and logout use cases."""

    def __init__(
        self,
        store: DurableStore,
        cache: Optional[FastCache],
        sessions: SessionManager,
        lockout: LockoutTracker,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.sessions = sessions
        self.lockout = lockout
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            # guest and federated accounts carry no password
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def _audit(
        self,
        username: str,
        success: bool,
        info: RequestInfo,
        *,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        entry = LoginLog(
            username=username,
            login_success=success,
            user_id=user_id,
            ip_address=info.ip_address,
            user_agent=info.user_agent,
            failure_reason=reason,
        )
        try:
            await self.store.log_login_attempt(entry)
        except StoreUnavailable as exc:
            logger.warning("login_audit_failed", username=username, error=str(exc))

    async def _start_session(self, user: User, info: RequestInfo) -> Session:
        try:
            session = await self.sessions.create(
                user.id, user_agent=info.user_agent, ip_address=info.ip_address
            )
        except StoreUnavailable as exc:
            raise ServerError(TRY_AGAIN_LATER) from exc
        except ConstraintViolation as exc:
            logger.error("session_create_conflict", user_id=user.id, detail=exc.detail)
            raise ServerError(TRY_AGAIN_LATER) from exc
        await self.sessions.cache_identity(user, session)
        if self.cache:
            await self.cache.cache_user(user)
        return session

    def _result(self, user: User, session: Session) -> LoginResult:
        return LoginResult(
            user=UserInfo.from_user(user),
            session_token=session.session_token,
            expires_at=session.expires_at,
            is_new_user=utcnow() - user.created_at < NEW_USER_WINDOW,
            needs_profile_completion=not user.full_name or not user.email,
        )

    async def login(
        self, username: str, password: str, request_info: Optional[RequestInfo] = None
    ) -> LoginResult:
        info = request_info or RequestInfo()
        # lockout is checked before any hashing work
        if await self.lockout.is_locked(username, self.settings.max_login_attempts):
            logger.warning("login_locked", username=username)
            await self._audit(username, False, info, reason="account_locked")
            raise AccountLockedError(TOO_MANY_ATTEMPTS)

        try:
            user = await self.store.get_user_by_username(username)
        except StoreUnavailable as exc:
            raise ServerError(TRY_AGAIN_LATER) from exc

        if user is None or not user.is_active or not self._verify_password(user, password):
            count = await self.lockout.record_failure(username)
            reason = "inactive" if user is not None and not user.is_active else "bad_credentials"
            logger.warning("login_failed", username=username, reason=reason, failures=count)
            await self._audit(
                username, False, info, user_id=user.id if user else None, reason=reason
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        session = await self._start_session(user, info)
        await self.lockout.clear(username)
        try:
            await self.store.update_last_login(user.id)
        except StoreUnavailable as exc:
            logger.warning("last_login_update_failed", user_id=user.id, error=str(exc))
        await self._audit(username, True, info, user_id=user.id)
        logger.info("login_succeeded", user_id=user.id)
        return self._result(user, session)

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        confirm_password: str,
        *,
        full_name: Optional[str] = None,
        request_info: Optional[RequestInfo] = None,
    ) -> LoginResult:
        username = username.strip()
        email = email.strip().lower()
        _validate_registration(username, email, password, confirm_password)
        try:
            if await self.store.username_exists(username):
                raise ConflictError("username already exists", detail={"field": "username"})
            user = await self.store.create_user(
                username, email, self.hash_password(password), full_name=full_name
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except StoreUnavailable as exc:
            raise ServerError(TRY_AGAIN_LATER) from exc
        logger.info("user_registered", user_id=user.id)
        session = await self._start_session(user, request_info or RequestInfo())
        return self._result(user, session)

    async def guest_login(self, request_info: Optional[RequestInfo] = None) -> LoginResult:
        username = f"guest_{secrets.token_hex(6)}"
        try:
            user = await self.store.create_user(
                username, f"{username}@{GUEST_EMAIL_DOMAIN}", "", is_guest=True
            )
        except (ConstraintViolation, StoreUnavailable) as exc:
            logger.error("guest_create_failed", error=str(exc))
            raise ServerError(TRY_AGAIN_LATER) from exc
        logger.info("guest_created", user_id=user.id)
        session = await self._start_session(user, request_info or RequestInfo())
        return self._result(user, session)

    async def logout(self, token: str) -> bool:
        """Never raises for infrastructure failure; reports whether the row went away."""
        try:
            return await self.sessions.invalidate(token)
        except StoreUnavailable as exc:
            logger.error("logout_store_failed", error=str(exc))
            return False

    # user mutations -----------------------------------------------------

    async def _flush_user_caches(self, user: User) -> None:
        if self.cache:
            await self.cache.invalidate_user(user.id, user.username)
        await self.sessions.invalidate_all_for_user(user.id)

    async def _require_user(self, user_id: str) -> User:
        try:
            user = await self.store.get_user(user_id)
        except StoreUnavailable as exc:
            raise ServerError(TRY_AGAIN_LATER) from exc
        if user is None:
            raise ValidationError("user not found", detail={"user_id": user_id})
        return user

    async def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> UserInfo:
        user = await self._require_user(user_id)
        await self._flush_user_caches(user)
        try:
            updated = await self.store.update_profile(
                user_id, full_name=full_name, avatar_url=avatar_url
            )
        except StoreUnavailable as exc:
            raise ServerError(TRY_AGAIN_LATER) from exc
        await self._flush_user_caches(user)
        return UserInfo.from_user(updated or user)

    async def set_flags(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_admin: Optional[bool] = None,
    ) -> UserInfo:
        """Change activation or admin rights.

        Losing a flag the user actually held also revokes their sessions in
        the store.
        """
        user = await self._require_user(user_id)
        await self._flush_user_caches(user)
        try:
            updated = await self.store.set_user_flags(
                user_id, is_active=is_active, is_admin=is_admin
            )
            lost_active = is_active is False and user.is_active
            lost_admin = is_admin is False and user.is_admin
            if lost_active or lost_admin:
                await self.sessions.revoke_all_for_user(user_id)
        except StoreUnavailable as exc:
            raise ServerError(TRY_AGAIN_LATER) from exc
        await self._flush_user_caches(user)
        logger.info("user_flags_changed", user_id=user_id, is_active=is_active, is_admin=is_admin)
        return UserInfo.from_user(updated or user)
