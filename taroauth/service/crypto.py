"""Integrity checks for profile bundles sent by the mini-program platform.

The platform signs the raw profile JSON with SHA1(raw || session_key) and
ships the full profile encrypted with AES-128-CBC, keyed by the session key.
Callers must run verify_signature, then decrypt, then verify_watermark.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from taroauth.logging import get_logger

logger = get_logger(__name__)

AES_KEY_BYTES = 16
AES_BLOCK_BITS = 128


class CryptoError(Exception):
    """A federated payload failed one of the verification stages."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message


class Watermark(BaseModel):
    appid: str
    timestamp: int


class DecryptedProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    open_id: str = Field(alias="openId")
    nick_name: str = Field(alias="nickName")
    avatar_url: str = Field(alias="avatarUrl")
    gender: int = 0
    language: str = ""
    city: str = ""
    province: str = ""
    country: str = ""
    union_id: Optional[str] = Field(default=None, alias="unionId")
    watermark: Watermark


def verify_signature(raw_data: str, session_key: str, signature: str) -> bool:
    digest = hashlib.sha1((raw_data + session_key).encode("utf-8")).hexdigest()
    supplied = (signature or "").strip().lower().encode("utf-8")
    return hmac.compare_digest(digest.encode("ascii"), supplied)


def _b64(stage: str, value: str) -> bytes:
    try:
        return base64.b64decode(value or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError(stage, f"invalid base64: {exc}") from exc


def decrypt(encrypted_data: str, session_key: str, iv: str) -> DecryptedProfile:
    """Decrypt and parse a profile bundle.

    Raises CryptoError naming the failing stage; never lets a cipher or
    parser exception escape.
    """
    ciphertext = _b64("decode", encrypted_data)
    key = _b64("decode", session_key)
    iv_bytes = _b64("decode", iv)
    if len(key) != AES_KEY_BYTES:
        raise CryptoError("key_length", f"expected {AES_KEY_BYTES} bytes, got {len(key)}")
    if len(iv_bytes) != AES_KEY_BYTES:
        raise CryptoError("iv_length", f"expected {AES_KEY_BYTES} bytes, got {len(iv_bytes)}")

    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv_bytes)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise CryptoError("decrypt", str(exc) or "bad padding") from exc

    try:
        text = plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CryptoError("utf8", str(exc)) from exc
    try:
        payload: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CryptoError("json", str(exc)) from exc
    try:
        return DecryptedProfile.model_validate(payload)
    except SchemaError as exc:
        raise CryptoError("schema", f"{exc.error_count()} field error(s)") from exc


def verify_watermark(profile: DecryptedProfile, expected_app_id: str) -> bool:
    """Soft check: a mismatch is logged and reported, never raised."""
    if profile.watermark.appid == expected_app_id:
        return True
    logger.warning(
        "wx_watermark_mismatch",
        expected=expected_app_id,
        actual=profile.watermark.appid,
        watermark_ts=profile.watermark.timestamp,
    )
    return False
