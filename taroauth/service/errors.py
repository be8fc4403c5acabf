from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - authorization_failed (401)
    - forbidden (403)
    - validation_error (400)
    - conflict (409)
    - account_locked (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Too many failed logins for this username (429)."""
    status_code = 429
    error_code = "account_locked"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamAuthError(AuthenticationError):
    """Federated platform rejected or failed the code exchange (401)."""
    error_code = "authorization_failed"


class AuthErrorKind(str, Enum):
    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"
    DATABASE_ERROR = "database_error"


_AUTH_MESSAGES = {
    AuthErrorKind.MISSING: "authentication required",
    AuthErrorKind.INVALID: "invalid or expired session",
    AuthErrorKind.EXPIRED: "invalid or expired session",
    AuthErrorKind.DATABASE_ERROR: "try again later",
}


class AuthFailure(ServiceError):
    """Typed outcome of identity resolution.

    EXPIRED is kept apart from INVALID internally but renders identically.
    DATABASE_ERROR is a server fault and never reads as bad credentials.
    """

    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        kind: AuthErrorKind,
        *,
        status_code: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        if kind is AuthErrorKind.DATABASE_ERROR:
            super().__init__(
                message or _AUTH_MESSAGES[kind],
                status_code=status_code or 500,
                error_code="server_error",
            )
        elif status_code == 403:
            super().__init__(
                message or "admin privileges required",
                status_code=403,
                error_code="forbidden",
            )
        else:
            super().__init__(message or _AUTH_MESSAGES[kind], status_code=status_code)
        self.kind = kind


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "AccountLockedError",
    "ServerError",
    "UpstreamAuthError",
    "AuthErrorKind",
    "AuthFailure",
]
