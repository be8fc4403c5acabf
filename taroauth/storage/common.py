"""Shared storage contract and helpers for the memory and postgres stores."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from ipaddress import ip_address
from typing import Any, Optional, Protocol

from taroauth.storage.models import LoginLog, Session, User

# Synthesized identities for guest and federated accounts
EXTERNAL_USERNAME_PREFIX = "wx_"
EXTERNAL_EMAIL_DOMAIN = "wx.temp"
GUEST_EMAIL_DOMAIN = "guest.local"


class LookupStatus(str, Enum):
    FOUND = "found"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class SessionLookup:
    status: LookupStatus
    user: Optional[User] = None
    session: Optional[Session] = None

    @classmethod
    def missing(cls) -> "SessionLookup":
        return cls(LookupStatus.NOT_FOUND)

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


class DurableStore(Protocol):
    """System of record for users, sessions and the login audit trail.

    Implementations raise StoreUnavailable on infrastructure failure and
    ConstraintViolation on unique/FK conflicts.
    """

    async def ensure_schema(self) -> None: ...

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
    ) -> User: ...

    async def create_external_user(
        self,
        openid: str,
        session_key: str,
        unionid: Optional[str] = None,
        *,
        suffix: str = "",
    ) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    async def get_user_by_external_id(self, openid: str) -> Optional[User]: ...

    async def username_exists(self, username: str) -> bool: ...

    async def update_external_session_key(
        self, user_id: str, session_key: str, unionid: Optional[str] = None
    ) -> None: ...

    async def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]: ...

    async def set_user_flags(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_admin: Optional[bool] = None,
    ) -> Optional[User]: ...

    async def update_last_login(self, user_id: str) -> None: ...

    async def create_session(
        self,
        user_id: str,
        ttl: timedelta,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session: ...

    async def lookup_session(self, token: str, now: datetime) -> SessionLookup: ...

    async def touch_session(self, token: str, now: datetime) -> None: ...

    async def delete_session(self, token: str) -> bool: ...

    async def delete_user_sessions(self, user_id: str) -> int: ...

    async def delete_expired_sessions(self, now: datetime) -> int: ...

    async def log_login_attempt(self, entry: LoginLog) -> None: ...

    async def close(self) -> None: ...


def external_username(openid: str, suffix: str = "") -> str:
    return f"{EXTERNAL_USERNAME_PREFIX}{openid[:8]}{suffix}"


def external_email(openid: str, suffix: str = "") -> str:
    """`suffix` disambiguates external ids that share a leading prefix."""
    return f"{openid[:10]}{suffix}"


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalize an IP for an INET column; unparseable input becomes None."""
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
