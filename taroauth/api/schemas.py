from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from taroauth.storage.models import UserInfo
from taroauth.storage.redis_cache import (
    AllEntries,
    AllUserData,
    CacheInvalidation,
    SessionInvalidation,
    UserInvalidation,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "authorization_failed",
    "forbidden",
    "not_found",
    "account_locked",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=50)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)
    confirm_password: str = Field(..., max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=100)


class WxLoginRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=256)
    encrypted_data: Optional[str] = Field(default=None, max_length=16384)
    iv: Optional[str] = Field(default=None, max_length=64)
    signature: Optional[str] = Field(default=None, max_length=128)
    raw_data: Optional[str] = Field(default=None, max_length=8192)


class CacheInvalidateRequest(BaseModel):
    kind: Literal["user", "session", "all_user_data", "all"]
    user_id: Optional[str] = None
    token: Optional[str] = None

    @model_validator(mode="after")
    def _require_target(self):
        if self.kind == "user" and not self.user_id:
            raise ValueError("user_id is required for kind=user")
        if self.kind == "session" and not self.token:
            raise ValueError("token is required for kind=session")
        return self

    def to_invalidation(self) -> CacheInvalidation:
        if self.kind == "user":
            return UserInvalidation(self.user_id)
        if self.kind == "session":
            return SessionInvalidation(self.token)
        if self.kind == "all_user_data":
            return AllUserData()
        return AllEntries()


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    is_guest: bool = False

    @classmethod
    def from_info(cls, info: UserInfo) -> "UserResponse":
        return cls(**info.to_dict())


class LoginResponse(BaseModel):
    user: UserResponse
    session_token: str
    expires_at: datetime
    is_new_user: bool = False
    needs_profile_completion: bool = False


class AuthStatusResponse(BaseModel):
    authenticated: bool
    user: Optional[UserResponse] = None


class CacheHealthResponse(BaseModel):
    connected: bool
    total_keys: int
