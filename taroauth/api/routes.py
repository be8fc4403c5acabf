from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from taroauth.api.schemas import (
    AuthStatusResponse,
    CacheHealthResponse,
    CacheInvalidateRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    UserResponse,
    WxLoginRequest,
)
from taroauth.logging import get_logger
from taroauth.service.auth import LoginResult
from taroauth.service.credentials import RequestInfo, extract_token
from taroauth.service.federated import ProfileBundle
from taroauth.service.runtime import get_runtime
from taroauth.storage.models import AuthenticatedIdentity, UserInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _token_from(request: Request, authorization: Optional[str]) -> Optional[str]:
    cookie_name = get_runtime().settings.cookie_name
    return extract_token(request.cookies.get(cookie_name), authorization)


async def request_info(request: Request) -> RequestInfo:
    runtime = get_runtime()
    peer = request.client.host if request.client else None
    return RequestInfo.from_headers(
        request.headers, peer, trust_proxy=runtime.settings.trust_proxy_headers
    )


async def require_identity(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthenticatedIdentity:
    runtime = get_runtime()
    return await runtime.identity.resolve(_token_from(request, authorization))


async def optional_identity(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[AuthenticatedIdentity]:
    runtime = get_runtime()
    return await runtime.identity.resolve_optional(_token_from(request, authorization))


async def require_admin(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthenticatedIdentity:
    runtime = get_runtime()
    return await runtime.identity.resolve_admin(_token_from(request, authorization))


def _apply_session_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.cookie_ttl_hours * 3600,
        path="/",
    )


def _login_envelope(result: LoginResult, response: Response) -> Envelope:
    _apply_session_cookie(response, result.session_token)
    body = LoginResponse(
        user=UserResponse.from_info(result.user),
        session_token=result.session_token,
        expires_at=result.expires_at,
        is_new_user=result.is_new_user,
        needs_profile_completion=result.needs_profile_completion,
    )
    return Envelope(status="ok", data=body.model_dump(mode="json"))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, response: Response, info: RequestInfo = Depends(request_info)
):
    """Password login.

    Raises:
        401: invalid username or password
        429: too many failed attempts for this username
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password, info)
    return _login_envelope(result, response)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest, response: Response, info: RequestInfo = Depends(request_info)
):
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        body.confirm_password,
        full_name=body.full_name,
        request_info=info,
    )
    return _login_envelope(result, response)


@router.post("/auth/guest", response_model=Envelope, tags=["auth"])
async def guest_login(response: Response, info: RequestInfo = Depends(request_info)):
    runtime = get_runtime()
    result = await runtime.auth.guest_login(info)
    return _login_envelope(result, response)


@router.post("/auth/wx-login", response_model=Envelope, tags=["auth"])
async def wx_login(
    body: WxLoginRequest, response: Response, info: RequestInfo = Depends(request_info)
):
    """Mini-program login; profile enrichment failures do not fail the login."""
    runtime = get_runtime()
    bundle = ProfileBundle(
        encrypted_data=body.encrypted_data,
        iv=body.iv,
        signature=body.signature,
        raw_data=body.raw_data,
    )
    result = await runtime.federated.login(body.code, bundle, info)
    _apply_session_cookie(response, result.session_token)
    body_out = LoginResponse(
        user=UserResponse.from_info(result.user),
        session_token=result.session_token,
        expires_at=result.expires_at,
        is_new_user=result.is_new_user,
        needs_profile_completion=not result.user.full_name,
    )
    return Envelope(status="ok", data=body_out.model_dump(mode="json"))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response, identity: AuthenticatedIdentity = Depends(require_identity)
):
    runtime = get_runtime()
    destroyed = await runtime.auth.logout(identity.token)
    response.delete_cookie(runtime.settings.cookie_name, path="/", samesite="lax")
    return Envelope(status="ok", data={"session_destroyed": destroyed})


@router.get("/auth/current", response_model=Envelope, tags=["auth"])
async def current_user(identity: AuthenticatedIdentity = Depends(require_identity)):
    user = UserResponse.from_info(UserInfo.from_user(identity.user))
    return Envelope(status="ok", data=user.model_dump())


@router.get("/auth/status", response_model=Envelope, tags=["auth"])
async def auth_status(identity: Optional[AuthenticatedIdentity] = Depends(optional_identity)):
    if identity is None:
        return Envelope(status="ok", data=AuthStatusResponse(authenticated=False).model_dump())
    status = AuthStatusResponse(
        authenticated=True, user=UserResponse.from_info(UserInfo.from_user(identity.user))
    )
    return Envelope(status="ok", data=status.model_dump())


@router.get("/auth/check", response_model=Envelope, tags=["auth"])
async def check_auth():
    """Reachability check for clients; needs no credentials."""
    return Envelope(status="ok", data=True)


@router.get("/cache/health", response_model=Envelope, tags=["admin"])
async def cache_health(admin: AuthenticatedIdentity = Depends(require_admin)):
    runtime = get_runtime()
    if runtime.cache is None:
        health = CacheHealthResponse(connected=False, total_keys=0)
    else:
        result = await runtime.cache.health()
        health = CacheHealthResponse(connected=result.connected, total_keys=result.total_keys)
    return Envelope(status="ok", data=health.model_dump())


@router.post("/cache/invalidate", response_model=Envelope, tags=["admin"])
async def cache_invalidate(
    body: CacheInvalidateRequest, admin: AuthenticatedIdentity = Depends(require_admin)
):
    runtime = get_runtime()
    removed = 0
    if runtime.cache is not None:
        removed = await runtime.cache.apply_invalidation(body.to_invalidation())
    logger.info("cache_invalidated", kind=body.kind, removed=removed, admin_id=admin.user_id)
    return Envelope(status="ok", data={"kind": body.kind, "removed": removed})


@router.post("/cache/cleanup", response_model=Envelope, tags=["admin"])
async def cache_cleanup(admin: AuthenticatedIdentity = Depends(require_admin)):
    runtime = get_runtime()
    removed = await runtime.sessions.cleanup_expired_cache()
    return Envelope(status="ok", data={"removed": removed})


@router.post("/sessions/sweep", response_model=Envelope, tags=["admin"])
async def sessions_sweep(admin: AuthenticatedIdentity = Depends(require_admin)):
    runtime = get_runtime()
    removed = await runtime.sessions.sweep_expired()
    return Envelope(status="ok", data={"removed": removed})
