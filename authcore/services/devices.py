from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authcore.models import UserDevice
from authcore.schemas import DeviceInfo
from authcore.services.client_context import UNKNOWN, ClientContext
from authcore.settings import get_settings
from authcore.store import RedisStore, StoreUnavailableError

logger = logging.getLogger("authcore.devices")

TRUST_CACHE_PREFIX = "2fa:device:"
MAX_FINGERPRINT_LENGTH = 255


@dataclass(frozen=True, slots=True)
class DeviceMetadata:
    device_type: str
    device_name: str
    browser: str
    browser_version: str
    os: str
    os_version: str
    timezone: str
    language: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_fallback_fingerprint(context: ClientContext) -> str:
    material = f"{context.user_agent}{context.ip}{context.browser}{context.os}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def choose_fingerprint(
    *,
    cookie_value: str | None,
    payload_value: str | None,
    context: ClientContext,
) -> str:
    """Cookie beats client payload beats a hash of the request's own signals."""
    for candidate in (cookie_value, payload_value):
        cleaned = (candidate or "").strip()
        if cleaned and len(cleaned) <= MAX_FINGERPRINT_LENGTH:
            return cleaned
    return compute_fallback_fingerprint(context)


def build_device_metadata(device_info: DeviceInfo, context: ClientContext) -> DeviceMetadata:
    parsed_type = context.device_type if context.device_type in {"desktop", "mobile", "tablet"} else None
    return DeviceMetadata(
        device_type=device_info.device_type or parsed_type or "desktop",
        device_name=(device_info.device_name or "").strip() or context.device_name,
        browser=context.browser,
        browser_version=context.browser_version,
        os=context.os,
        os_version=context.os_version,
        timezone=device_info.timezone or "UTC",
        language=device_info.language or "en",
    )


def trust_cache_key(user_id: int, fingerprint: str) -> str:
    return f"{TRUST_CACHE_PREFIX}{user_id}:{fingerprint}"


def find_device(db: Session, *, user_id: int, fingerprint: str) -> UserDevice | None:
    return db.scalar(
        select(UserDevice).where(
            UserDevice.user_id == user_id,
            UserDevice.fingerprint == fingerprint,
        )
    )


def _record_usage(device: UserDevice, metadata: DeviceMetadata) -> None:
    device.last_used = _utc_now()
    device.usage_count = int(device.usage_count or 0) + 1
    if metadata.browser != UNKNOWN:
        device.browser = metadata.browser
        device.browser_version = metadata.browser_version
    if metadata.os != UNKNOWN:
        device.os = metadata.os
        device.os_version = metadata.os_version


def resolve_device(
    db: Session,
    *,
    user_id: int,
    fingerprint: str,
    metadata: DeviceMetadata,
) -> tuple[UserDevice, bool]:
    """Find or create the (user, fingerprint) device. Returns (device, created).

    Only usage fields are written here. `trusted` and
    `is_account_creation_device` keep whatever value the row already has, and
    new rows always start untrusted.
    """
    device = find_device(db, user_id=user_id, fingerprint=fingerprint)
    if device is not None:
        _record_usage(device, metadata)
        db.commit()
        return device, False

    device = UserDevice(
        user_id=user_id,
        fingerprint=fingerprint,
        device_name=metadata.device_name,
        device_type=metadata.device_type,
        browser=metadata.browser,
        browser_version=metadata.browser_version,
        os=metadata.os,
        os_version=metadata.os_version,
        trusted=False,
        is_account_creation_device=False,
        usage_count=1,
        last_used=_utc_now(),
    )
    db.add(device)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request inserted the same (user, fingerprint) first.
        db.rollback()
        existing = find_device(db, user_id=user_id, fingerprint=fingerprint)
        if existing is None:
            raise
        logger.info(
            "device_insert_race_resolved",
            extra={"user_id": user_id, "device_id": existing.id, "fingerprint": fingerprint},
        )
        _record_usage(existing, metadata)
        db.commit()
        return existing, False

    logger.info(
        "device_created",
        extra={"user_id": user_id, "device_id": device.id, "fingerprint": fingerprint},
    )
    return device, True


def is_device_trusted(store: RedisStore, device: UserDevice) -> bool:
    """Persistent flag OR the cached mirror; either one is enough."""
    if device.trusted:
        return True
    try:
        return store.exists(trust_cache_key(device.user_id, device.fingerprint))
    except StoreUnavailableError:
        logger.warning(
            "trust_cache_read_failed",
            extra={"user_id": device.user_id, "device_id": device.id},
        )
        return False


def trust_device(db: Session, store: RedisStore, *, device: UserDevice) -> None:
    """Mark a device trusted after the account owner explicitly asked for it."""
    device.trusted = True
    db.commit()

    ttl_seconds = int(timedelta(days=get_settings().trust_cache_days).total_seconds())
    try:
        store.set(trust_cache_key(device.user_id, device.fingerprint), "1", ttl_seconds)
    except StoreUnavailableError:
        logger.warning(
            "trust_cache_write_failed",
            extra={"user_id": device.user_id, "device_id": device.id},
        )
    logger.info(
        "device_trusted",
        extra={"user_id": device.user_id, "device_id": device.id, "fingerprint": device.fingerprint},
    )
