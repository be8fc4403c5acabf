from __future__ import annotations

from typing import Optional

from taroauth.logging import get_logger
from taroauth.service.credentials import extract_token
from taroauth.service.errors import AuthErrorKind, AuthFailure
from taroauth.service.sessions import SessionManager
from taroauth.storage.models import AuthenticatedIdentity

logger = get_logger(__name__)


class IdentityResolver:
    """Request-time guard turning a credential into an identity or AuthFailure."""

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    async def resolve(self, token: Optional[str]) -> AuthenticatedIdentity:
        if not token:
            raise AuthFailure(AuthErrorKind.MISSING)
        return await self.sessions.validate(token)

    async def resolve_request(
        self, cookie: Optional[str], authorization: Optional[str]
    ) -> AuthenticatedIdentity:
        return await self.resolve(extract_token(cookie, authorization))

    async def resolve_optional(self, token: Optional[str]) -> Optional[AuthenticatedIdentity]:
        try:
            return await self.resolve(token)
        except AuthFailure as exc:
            if exc.kind is AuthErrorKind.DATABASE_ERROR:
                logger.warning("optional_identity_store_failed")
            return None

    async def resolve_admin(self, token: Optional[str]) -> AuthenticatedIdentity:
        identity = await self.resolve(token)
        if not identity.is_admin:
            logger.warning("admin_access_denied", user_id=identity.user_id)
            raise AuthFailure(AuthErrorKind.INVALID, status_code=403)
        return identity
