from __future__ import annotations

import base64
import secrets
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

SESSION_TOKEN_BYTES = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_token() -> str:
    """32 random bytes, standard base64."""
    return base64.b64encode(secrets.token_bytes(SESSION_TOKEN_BYTES)).decode("ascii")


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str = ""
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False
    is_guest: bool = False
    wx_openid: Optional[str] = None
    wx_unionid: Optional[str] = None
    wx_session_key: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, username: str, email: str, **kwargs: Any) -> "User":
        return cls(id=str(uuid.uuid4()), username=username, email=email, **kwargs)


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    created_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    last_accessed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_token=new_session_token(),
            expires_at=now + ttl,
            created_at=now,
            user_agent=user_agent,
            ip_address=ip_address,
            last_accessed_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class LoginLog:
    username: str
    login_success: bool
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserInfo:
    """Public projection of a user, safe to hand to clients."""

    id: str
    username: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    is_guest: bool = False

    @classmethod
    def from_user(cls, user: "User | CachedUser") -> "UserInfo":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            avatar_url=user.avatar_url,
            is_admin=user.is_admin,
            is_guest=getattr(user, "is_guest", False),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Cache projections. These never carry credentials.


@dataclass
class CachedUser:
    id: str
    username: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False
    is_guest: bool = False

    @classmethod
    def from_user(cls, user: User) -> "CachedUser":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            avatar_url=user.avatar_url,
            is_active=user.is_active,
            is_admin=user.is_admin,
            is_guest=user.is_guest,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedUser":
        return cls(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            full_name=data.get("full_name"),
            avatar_url=data.get("avatar_url"),
            is_active=bool(data.get("is_active", True)),
            is_admin=bool(data.get("is_admin", False)),
            is_guest=bool(data.get("is_guest", False)),
        )


@dataclass
class CachedSession:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    created_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "CachedSession":
        return cls(
            id=session.id,
            user_id=session.user_id,
            session_token=session.session_token,
            expires_at=session.expires_at,
            created_at=session.created_at,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_token": self.session_token,
            "expires_at": _format_dt(self.expires_at),
            "created_at": _format_dt(self.created_at),
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedSession":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            session_token=data["session_token"],
            expires_at=_parse_dt(data["expires_at"]),
            created_at=_parse_dt(data["created_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )


@dataclass
class CachedIdentity:
    """Combined user and session projection stored under the session token."""

    user: CachedUser
    session: CachedSession

    @classmethod
    def build(cls, user: User, session: Session) -> "CachedIdentity":
        return cls(user=CachedUser.from_user(user), session=CachedSession.from_session(session))

    def to_dict(self) -> Dict[str, Any]:
        return {"user": self.user.to_dict(), "session": self.session.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedIdentity":
        return cls(
            user=CachedUser.from_dict(data["user"]),
            session=CachedSession.from_dict(data["session"]),
        )


@dataclass
class AuthenticatedIdentity:
    """What a guard hands to request handlers."""

    user: CachedUser
    session: CachedSession
    source: str = "cache"

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.user.is_admin

    @property
    def token(self) -> str:
        return self.session.session_token
