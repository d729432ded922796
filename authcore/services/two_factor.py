from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import struct
from datetime import datetime, timezone
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from sqlalchemy import select
from sqlalchemy.orm import Session

from authcore.models import TwoFactorBackupCode, TwoFactorMethod, User
from authcore.security import verify_password
from authcore.settings import get_settings
from authcore.store import RedisStore

logger = logging.getLogger("authcore.signin")

MFA_SECRET_ENC_PREFIX = "MFA1:"
SECOND_FACTOR_CODE_PREFIX = "2fa:code:"

PRIMARY_METHODS = (
    TwoFactorMethod.APP.value,
    TwoFactorMethod.SMS.value,
    TwoFactorMethod.EMAIL.value,
    TwoFactorMethod.BACKUP.value,
)
ADDITIONAL_METHODS = (
    TwoFactorMethod.PASSKEY.value,
    TwoFactorMethod.RECOVERY_EMAIL.value,
    TwoFactorMethod.RECOVERY_PHONE.value,
)
DELIVERED_METHODS = {
    TwoFactorMethod.SMS.value,
    TwoFactorMethod.EMAIL.value,
    TwoFactorMethod.RECOVERY_EMAIL.value,
    TwoFactorMethod.RECOVERY_PHONE.value,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_totp_secret(raw_secret: str | None) -> bytes | None:
    cleaned = "".join(ch for ch in (raw_secret or "").strip().upper() if ch.isalnum())
    if not cleaned:
        return None
    padding = "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(cleaned + padding, casefold=True)
    except (binascii.Error, ValueError):
        return None


def _hotp(secret: bytes, counter: int, digits: int = 6) -> str:
    packed_counter = struct.pack(">Q", counter)
    digest = hmac.new(secret, packed_counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10**digits)).zfill(digits)


def _normalize_code(code: str | None) -> str:
    return "".join(ch for ch in (code or "").strip() if ch.isdigit())


def _normalize_backup_code(value: str | None) -> str:
    return "".join(ch for ch in (value or "").strip().upper() if ch.isalnum())


def _derive_fernet(material: str) -> Fernet:
    derived = base64.urlsafe_b64encode(hashlib.sha256(material.encode("utf-8")).digest())
    return Fernet(derived)


def _mfa_cipher() -> MultiFernet:
    # Encrypts with the first key; decrypts with any, so secrets written
    # before MFA_SECRET_KEY was configured stay readable.
    settings = get_settings()
    materials: list[str] = []
    for candidate in (settings.mfa_secret_key, settings.jwt_secret):
        cleaned = (candidate or "").strip()
        if cleaned and cleaned not in materials:
            materials.append(cleaned)
    if not materials:
        materials.append("dev-authcore-mfa-key")
    return MultiFernet([_derive_fernet(material) for material in materials])


def encrypt_totp_secret(secret_key: str) -> str:
    payload = secret_key.strip()
    if not payload:
        return ""
    return MFA_SECRET_ENC_PREFIX + _mfa_cipher().encrypt(payload.encode("utf-8")).decode("utf-8")


def decrypt_totp_secret(token: str | None) -> str | None:
    raw = (token or "").strip()
    if not raw:
        return None
    if not raw.startswith(MFA_SECRET_ENC_PREFIX):
        return raw
    payload = raw[len(MFA_SECRET_ENC_PREFIX) :]
    try:
        decoded = _mfa_cipher().decrypt(payload.encode("utf-8"))
    except InvalidToken:
        return None
    return decoded.decode("utf-8").strip() or None


def verify_totp_code(secret_key: str | None, code: str | None, *, now_utc: datetime | None = None) -> bool:
    secret = _normalize_totp_secret(secret_key)
    if secret is None:
        return False

    normalized_code = _normalize_code(code)
    if len(normalized_code) != 6:
        return False

    settings = get_settings()
    step_seconds = max(15, int(settings.mfa_step_seconds or 30))
    window_steps = max(0, min(6, int(settings.mfa_window_steps)))
    now = now_utc or _utc_now()
    base_counter = int(now.timestamp()) // step_seconds

    for offset in range(-window_steps, window_steps + 1):
        candidate = _hotp(secret, base_counter + offset, digits=6)
        if hmac.compare_digest(candidate, normalized_code):
            return True
    return False


def verify_user_totp_code(user: User, code: str | None, *, now_utc: datetime | None = None) -> bool:
    secret_key = decrypt_totp_secret(user.totp_secret_enc)
    if secret_key is None:
        return False
    return verify_totp_code(secret_key, code, now_utc=now_utc)


def consume_backup_code(db: Session, *, user: User, backup_code: str | None) -> bool:
    normalized_code = _normalize_backup_code(backup_code)
    if not normalized_code:
        return False
    candidate_rows = list(
        db.scalars(
            select(TwoFactorBackupCode).where(
                TwoFactorBackupCode.user_id == user.id,
                TwoFactorBackupCode.used_at.is_(None),
            )
        ).all()
    )
    for row in candidate_rows:
        if verify_password(normalized_code, row.code_hash):
            row.used_at = _utc_now()
            return True
    return False


def _has_unused_backup_code(db: Session, user_id: int) -> bool:
    return (
        db.scalar(
            select(TwoFactorBackupCode.id)
            .where(
                TwoFactorBackupCode.user_id == user_id,
                TwoFactorBackupCode.used_at.is_(None),
            )
            .limit(1)
        )
        is not None
    )


def primary_method_for(user: User) -> str:
    method = (user.two_factor_method or TwoFactorMethod.APP.value).strip().lower()
    if method == "app":
        return TwoFactorMethod.APP.value
    return method


def get_enrolled_methods(db: Session, user: User) -> list[str]:
    if not user.two_factor_enabled:
        return []

    methods: list[str] = []
    primary = primary_method_for(user)
    if primary == TwoFactorMethod.APP.value:
        if (user.totp_secret_enc or "").strip():
            methods.append(TwoFactorMethod.APP.value)
    elif primary == TwoFactorMethod.SMS.value:
        if user.phone and user.phone_verified:
            methods.append(TwoFactorMethod.SMS.value)
    elif primary == TwoFactorMethod.EMAIL.value:
        if user.email and user.email_verified:
            methods.append(TwoFactorMethod.EMAIL.value)

    if _has_unused_backup_code(db, user.id):
        methods.append(TwoFactorMethod.BACKUP.value)
    if int(user.passkey_count or 0) > 0:
        methods.append(TwoFactorMethod.PASSKEY.value)
    if (
        user.recovery_email
        and user.recovery_email_verified
        and user.recovery_email.strip().lower() != (user.email or "").strip().lower()
    ):
        methods.append(TwoFactorMethod.RECOVERY_EMAIL.value)
    if user.recovery_phone and user.recovery_phone_verified and user.recovery_phone != user.phone:
        methods.append(TwoFactorMethod.RECOVERY_PHONE.value)
    return methods


def partition_methods(methods: list[str]) -> tuple[list[str], list[str]]:
    primary = [method for method in methods if method in PRIMARY_METHODS]
    additional = [method for method in methods if method in ADDITIONAL_METHODS]
    return primary, additional


def destination_for(user: User, method: str) -> str | None:
    if method == TwoFactorMethod.SMS.value:
        return user.phone
    if method == TwoFactorMethod.EMAIL.value:
        return user.email
    if method == TwoFactorMethod.RECOVERY_EMAIL.value:
        return user.recovery_email
    if method == TwoFactorMethod.RECOVERY_PHONE.value:
        return user.recovery_phone
    return None


def mask_destination(destination: str) -> str:
    value = (destination or "").strip()
    if "@" in value:
        local, _, domain = value.partition("@")
        visible = local[:2] if len(local) > 2 else local[:1]
        return f"{visible}***@{domain}"
    digits = [ch for ch in value if ch.isdigit()]
    if len(digits) <= 4:
        return "***"
    return "***" + "".join(digits[-4:])


class CodeDispatcher(Protocol):
    def dispatch(self, *, method: str, destination: str, code: str, user_id: int) -> None: ...


class LoggingCodeDispatcher:
    """Default dispatcher: records the dispatch without the code or full destination."""

    def dispatch(self, *, method: str, destination: str, code: str, user_id: int) -> None:
        logger.info(
            "second_factor_code_dispatched",
            extra={"user_id": user_id, "method": method, "destination": mask_destination(destination)},
        )


def get_code_dispatcher() -> CodeDispatcher:
    return LoggingCodeDispatcher()


def _code_key(challenge_id: str, method: str) -> str:
    return f"{SECOND_FACTOR_CODE_PREFIX}{challenge_id}:{method}"


def _code_digest(challenge_id: str, method: str, code: str) -> str:
    settings = get_settings()
    key = (settings.mfa_secret_key or settings.jwt_secret or "dev-authcore-mfa-key").encode("utf-8")
    message = f"{challenge_id}:{method}:{code}".encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def issue_delivery_code(store: RedisStore, *, challenge_id: str, method: str) -> tuple[str, int]:
    """Create a one-time numeric code for a delivered method. Returns (code, ttl_seconds)."""
    ttl_seconds = get_settings().second_factor_code_ttl_seconds
    code = f"{secrets.randbelow(10**6):06d}"
    store.set(_code_key(challenge_id, method), _code_digest(challenge_id, method, code), ttl_seconds)
    return code, ttl_seconds


def verify_delivery_code(store: RedisStore, *, challenge_id: str, method: str, code: str | None) -> bool:
    normalized_code = _normalize_code(code)
    if len(normalized_code) != 6:
        return False
    key = _code_key(challenge_id, method)
    expected = store.get(key)
    if not expected:
        return False
    if not hmac.compare_digest(expected, _code_digest(challenge_id, method, normalized_code)):
        return False
    # Single use: a concurrent verifier that loses the take sees None.
    return store.take(key) is not None


def discard_delivery_codes(store: RedisStore, *, challenge_id: str) -> None:
    for method in sorted(DELIVERED_METHODS):
        store.delete(_code_key(challenge_id, method))
