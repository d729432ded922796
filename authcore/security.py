from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from jose import JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from authcore.errors import ApiError
from authcore.settings import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_TOKEN_TYPE = "session"

_DUMMY_PASSWORD_HASH: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        # Invalid/legacy hash values should not crash auth flow.
        return False


def burn_password_check(password: str) -> None:
    """Spend one hash verification so unknown accounts take as long as known ones."""
    global _DUMMY_PASSWORD_HASH
    if _DUMMY_PASSWORD_HASH is None:
        _DUMMY_PASSWORD_HASH = pwd_context.hash("authcore-placeholder-password")
    verify_password(password, _DUMMY_PASSWORD_HASH)


def create_session_token(
    *,
    user_id: int,
    session_id: int,
    email: str,
    expires_at: datetime,
    issued_at: datetime | None = None,
) -> str:
    settings = get_settings()
    now = issued_at or _utcnow()
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "user_id": user_id,
        "session_id": session_id,
        "email": email,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "typ": SESSION_TOKEN_TYPE,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


def decode_session_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Session is invalid.") from exc

    if payload.get("typ") != SESSION_TOKEN_TYPE:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Session is invalid.")
    if not isinstance(payload.get("session_id"), int) or not isinstance(payload.get("user_id"), int):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Session is invalid.")
    return payload


def peek_session_token(token: str) -> dict[str, Any] | None:
    """Read claims without checking expiry; the signature must still verify."""
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"verify_exp": False},
        )
    except JWTError:
        return None


def extract_session_token(request: Request) -> str | None:
    authorization = (request.headers.get("authorization") or "").strip()
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    cookie_value = request.cookies.get(get_settings().session_cookie_name)
    return cookie_value or None
