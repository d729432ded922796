from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from authcore.errors import ApiError
from authcore.models import LoginAnalytics, User, UserDevice, UserSession, as_utc
from authcore.security import create_session_token
from authcore.services.client_context import ClientContext
from authcore.settings import get_settings

logger = logging.getLogger("authcore.sessions")


@dataclass(frozen=True, slots=True)
class IssuedSession:
    session: UserSession
    token: str
    expires_at: datetime
    max_age: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def session_lifetime(trusted: bool) -> timedelta:
    settings = get_settings()
    days = settings.trusted_session_days if trusted else settings.untrusted_session_days
    return timedelta(days=days)


def issue_session(
    db: Session,
    *,
    user: User,
    device: UserDevice,
    trusted: bool,
    context: ClientContext,
    bypassed_2fa: bool = False,
    session_type: str = "signin",
) -> IssuedSession:
    """Persist a session row, then sign a bearer token expiring with it.

    The lifetime is picked once from `trusted` and never revisited.
    """
    now = _utc_now()
    lifetime = session_lifetime(trusted)
    expires_at = now + lifetime

    row = UserSession(
        user_id=user.id,
        device_id=device.id,
        session_token=uuid.uuid4().hex,
        refresh_token=uuid.uuid4().hex,
        ip_address=context.ip,
        user_agent=context.user_agent,
        location=context.location,
        country=context.country,
        city=context.city,
        session_type=session_type,
        trusted=trusted,
        bypassed_2fa=bypassed_2fa,
        is_active=True,
        expires_at=expires_at,
        last_used=now,
    )
    db.add(row)
    db.commit()

    token = create_session_token(
        user_id=user.id,
        session_id=row.id,
        email=user.email,
        expires_at=expires_at,
        issued_at=now,
    )
    logger.info(
        "session_issued",
        extra={
            "user_id": user.id,
            "session_id": row.id,
            "device_id": device.id,
            "trusted": trusted,
            "bypassed_2fa": bypassed_2fa,
            "expires_at": expires_at.isoformat(),
        },
    )
    return IssuedSession(
        session=row,
        token=token,
        expires_at=expires_at,
        max_age=int(lifetime.total_seconds()),
    )


def record_login_analytics(
    db: Session,
    *,
    user_id: int,
    context: ClientContext,
    local_time: datetime,
    is_new_device: bool,
    is_new_location: bool,
    risk_score: int,
    auth_method: str,
    device_type: str | None = None,
) -> None:
    """Best effort: a failed insert is logged and rolled back, never raised."""
    try:
        db.add(
            LoginAnalytics(
                user_id=user_id,
                login_time=local_time.astimezone(timezone.utc),
                day_of_week=local_time.weekday(),
                hour_of_day=local_time.hour,
                country=context.country,
                region=context.region,
                city=context.city,
                device_type=device_type or context.device_type,
                browser=context.browser,
                os=context.os,
                is_new_device=is_new_device,
                is_new_location=is_new_location,
                risk_score=risk_score,
                auth_method=auth_method,
            )
        )
        db.commit()
    except Exception:
        try:
            db.rollback()
        except Exception:
            logger.exception("login_analytics_rollback_failed", extra={"user_id": user_id})
        logger.exception("login_analytics_write_failed", extra={"user_id": user_id})


def _invalid_session() -> ApiError:
    return ApiError(status_code=401, code="INVALID_TOKEN", message="Session is invalid.")


def get_active_session(db: Session, claims: dict[str, Any]) -> tuple[UserSession, User]:
    row = db.get(UserSession, claims["session_id"])
    if row is None or row.user_id != claims["user_id"] or not row.is_active:
        raise _invalid_session()
    expires_at = as_utc(row.expires_at)
    if expires_at is None or expires_at <= _utc_now():
        raise _invalid_session()
    user = db.get(User, row.user_id)
    if user is None:
        raise _invalid_session()
    return row, user


def revoke_session(db: Session, *, session_id: int, user_id: int) -> bool:
    """Mark a session inactive. Returns False when there was nothing to revoke."""
    row = db.scalar(
        select(UserSession).where(
            UserSession.id == session_id,
            UserSession.user_id == user_id,
        )
    )
    if row is None or not row.is_active:
        return False
    row.is_active = False
    db.commit()
    logger.info("session_revoked", extra={"user_id": user_id, "session_id": session_id})
    return True
