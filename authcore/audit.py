from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from authcore.models import AuthAction, AuthLog
from authcore.services.client_context import ClientContext

logger = logging.getLogger("authcore.audit")


def log_auth_event(
    db: Session,
    *,
    action: AuthAction,
    email: str | None,
    context: ClientContext,
    success: bool,
    user_id: int | None = None,
    risk_score: int | None = None,
    flagged: bool = False,
    error_code: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Record one sign-in event. Never raises; callers commit their own work first."""
    try:
        db.add(
            AuthLog(
                user_id=user_id,
                email=email,
                action=action.value,
                success=success,
                error_code=error_code,
                ip_address=context.ip,
                user_agent=context.user_agent,
                location=context.location,
                country=context.country,
                city=context.city,
                device_type=context.device_type,
                browser=context.browser,
                risk_score=risk_score,
                flagged=flagged,
                details=details or {},
            )
        )
        db.commit()
    except Exception:
        try:
            db.rollback()
        except Exception:
            logger.exception("audit_rollback_failed", extra={"request_id": request_id})
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action.value,
                "user_id": user_id,
                "success": success,
                "flagged": flagged,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action.value,
            "user_id": user_id,
            "email": email if user_id is None else None,
            "ip": context.ip,
            "success": success,
            "flagged": flagged,
            "risk_score": risk_score,
            "error_code": error_code,
        },
    )
