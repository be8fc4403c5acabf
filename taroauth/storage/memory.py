from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from taroauth.logging import get_logger
from taroauth.storage.common import (
    LookupStatus,
    SessionLookup,
    external_email,
    external_username,
    parse_ip_address,
)
from taroauth.storage.errors import ConstraintViolation
from taroauth.storage.models import LoginLog, Session, User, utcnow


class MemoryStore:
    """In-memory durable store for tests and single-process development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # keyed by session token
        self.sessions: Dict[str, Session] = {}
        self.login_logs: List[LoginLog] = []
        # RLock for all data operations; never held across an await
        self._data_lock = threading.RLock()

    async def ensure_schema(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # users -------------------------------------------------------------

    def _check_unique(self, username: str, email: str) -> None:
        for existing in self.users.values():
            if existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})

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
        with self._data_lock:
            self._check_unique(username, email)
            user = User.new(
                username,
                email,
                password_hash=password_hash,
                full_name=full_name,
                is_admin=is_admin,
                is_guest=is_guest,
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    async def create_external_user(
        self,
        openid: str,
        session_key: str,
        unionid: Optional[str] = None,
        *,
        suffix: str = "",
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.wx_openid == openid:
                    raise ConstraintViolation("external id already linked", {"field": "wx_openid"})
            username = external_username(openid, suffix)
            email = external_email(openid, suffix)
            self._check_unique(username, email)
            user = User.new(
                username,
                email,
                password_hash="",
                is_guest=True,
                wx_openid=openid,
                wx_unionid=unionid,
                wx_session_key=session_key,
                last_login_at=utcnow(),
            )
            self.users[user.id] = user
            return replace(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return replace(user)
        return None

    async def get_user_by_external_id(self, openid: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.wx_openid == openid:
                    return replace(user)
        return None

    async def username_exists(self, username: str) -> bool:
        return await self.get_user_by_username(username) is not None

    async def update_external_session_key(
        self, user_id: str, session_key: str, unionid: Optional[str] = None
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.wx_session_key = session_key
            if unionid:
                user.wx_unionid = unionid
            user.last_login_at = user.updated_at = utcnow()

    async def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if full_name is not None:
                user.full_name = full_name
            if avatar_url is not None:
                user.avatar_url = avatar_url
            user.updated_at = utcnow()
            return replace(user)

    async def set_user_flags(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_admin: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if is_active is not None:
                user.is_active = is_active
            if is_admin is not None:
                user.is_admin = is_admin
            user.updated_at = utcnow()
            return replace(user)

    async def update_last_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = user.updated_at = utcnow()

    # sessions ----------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        ttl: timedelta,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                ttl,
                user_agent=user_agent,
                ip_address=parse_ip_address(ip_address),
            )
            self.sessions[sess.session_token] = sess
            return replace(sess)

    async def lookup_session(self, token: str, now: datetime) -> SessionLookup:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess:
                return SessionLookup.missing()
            user = self.users.get(sess.user_id)
            if not user or not user.is_active:
                return SessionLookup.missing()
            if sess.expires_at <= now:
                return SessionLookup(LookupStatus.EXPIRED)
            return SessionLookup(LookupStatus.FOUND, replace(user), replace(sess))

    async def touch_session(self, token: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(token)
            if sess:
                sess.last_accessed_at = now

    async def delete_session(self, token: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(token, None) is not None

    async def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [t for t, s in self.sessions.items() if s.user_id == user_id]
            for token in doomed:
                del self.sessions[token]
            return len(doomed)

    async def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [t for t, s in self.sessions.items() if s.expires_at < now]
            for token in doomed:
                del self.sessions[token]
            return len(doomed)

    async def log_login_attempt(self, entry: LoginLog) -> None:
        with self._data_lock:
            self.login_logs.append(entry)
