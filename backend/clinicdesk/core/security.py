# clinicdesk/core/security.py
from __future__ import annotations

import hmac
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt

from clinicdesk.core.config import settings


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _require_jwt_secret() -> None:
    if not settings.JWT_SECRET or not settings.JWT_SECRET.strip():
        raise RuntimeError("JWT_SECRET must be set (auth is required).")


def create_access_token(subject: str) -> str:
    """
    Access token used for API auth: Authorization: Bearer <token>
    subject = the user's id (auth provider uid)
    """
    _require_jwt_secret()

    now = _now_utc()
    exp = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": subject,
        "purpose": "access",
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }

    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    _require_jwt_secret()
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


def verify_token_purpose(token: str, expected_purpose: str) -> dict[str, Any]:
    """
    Decode + validate token signature/exp and ensure it's the right token type.
    Raises JWTError / ValueError on failure.
    """
    payload = decode_token(token)
    purpose = payload.get("purpose")
    if purpose != expected_purpose:
        raise ValueError("Invalid token purpose")
    return payload


def internal_token_matches(candidate: str | None) -> bool:
    expected = settings.INTERNAL_API_TOKEN
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))
