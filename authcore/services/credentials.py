from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from authcore.models import User, as_utc
from authcore.settings import get_settings


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def find_user_by_email(db: Session, email: str) -> User | None:
    return db.scalar(select(User).where(func.lower(User.email) == normalize_email(email)))


def lock_remaining_minutes(user: User, *, now: datetime | None = None) -> int | None:
    """Minutes left on the account lock, or None when the account is not locked."""
    locked_until = as_utc(user.locked_until)
    current = now or datetime.now(timezone.utc)
    if locked_until is None or locked_until <= current:
        return None
    return max(1, math.ceil((locked_until - current).total_seconds() / 60))


def register_login_failure(db: Session, user: User, *, now: datetime | None = None) -> tuple[int, bool]:
    """Count a bad password. Returns (consecutive_failures, locked_now).

    The increment happens in the UPDATE itself so concurrent failures are not lost.
    """
    settings = get_settings()
    current = now or datetime.now(timezone.utc)
    attempts = db.execute(
        update(User)
        .where(User.id == user.id)
        .values(login_attempts=func.coalesce(User.login_attempts, 0) + 1)
        .returning(User.login_attempts)
        .execution_options(synchronize_session="fetch")
    ).scalar_one()
    should_lock = attempts >= settings.account_lock_threshold
    if should_lock:
        user.locked_until = current + timedelta(minutes=settings.account_lock_minutes)
    db.commit()
    return attempts, should_lock


def register_login_success(db: Session, user: User, *, now: datetime | None = None) -> None:
    user.login_attempts = 0
    user.locked_until = None
    user.last_login = now or datetime.now(timezone.utc)
    db.commit()
