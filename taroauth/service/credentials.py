from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

BEARER_PREFIX = "Bearer "


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX) :].strip()
    return token or None


def extract_token(cookie: Optional[str], authorization: Optional[str]) -> Optional[str]:
    """Session token from the cookie, else from an `Authorization: Bearer` header."""
    if cookie and cookie.strip():
        return cookie.strip()
    return extract_bearer(authorization)


@dataclass
class RequestInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        peer: Optional[str] = None,
        *,
        trust_proxy: bool = True,
    ) -> "RequestInfo":
        """Never fails; missing pieces stay None.

        `headers` must be case-insensitive (Starlette's Headers is).
        """
        ip: Optional[str] = None
        if trust_proxy:
            real_ip = (headers.get("x-real-ip") or "").strip()
            if real_ip:
                ip = real_ip
            else:
                forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
                ip = forwarded or None
        return cls(ip_address=ip or peer, user_agent=headers.get("user-agent"))
