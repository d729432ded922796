from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from authcore.audit import log_auth_event
from authcore.errors import ApiError, service_unavailable
from authcore.models import AuthAction, TwoFactorMethod, User, UserDevice
from authcore.schemas import TwoFactorCodeRequest, TwoFactorCodeResponse, TwoFactorVerifyRequest
from authcore.services.challenges import Challenge, consume_challenge, load_challenge, record_failure
from authcore.services.client_context import ClientContext
from authcore.services.devices import is_device_trusted, trust_device
from authcore.services.risk import server_local_time
from authcore.services.sessions import IssuedSession, issue_session, record_login_analytics
from authcore.services.two_factor import (
    DELIVERED_METHODS,
    CodeDispatcher,
    consume_backup_code,
    destination_for,
    discard_delivery_codes,
    issue_delivery_code,
    mask_destination,
    verify_delivery_code,
    verify_user_totp_code,
)
from authcore.settings import get_settings
from authcore.store import RedisStore, StoreUnavailableError

logger = logging.getLogger("authcore.signin")


@dataclass(slots=True)
class VerificationOutcome:
    user: User
    device: UserDevice
    device_trusted: bool
    issued: IssuedSession
    security_score: int
    redirect_url: str


def _invalid_challenge() -> ApiError:
    return ApiError(
        status_code=400,
        code="INVALID_CHALLENGE",
        message="Verification session is invalid or expired. Please sign in again.",
    )


def _load(store: RedisStore, challenge_id: str) -> Challenge:
    try:
        challenge = load_challenge(store, challenge_id)
    except StoreUnavailableError as exc:
        raise service_unavailable() from exc
    if challenge is None:
        raise _invalid_challenge()
    return challenge


def _check_method(challenge: Challenge, method: str) -> None:
    if method == TwoFactorMethod.PASSKEY.value:
        raise ApiError(
            status_code=400,
            code="UNSUPPORTED_METHOD",
            message="Passkey verification is not available for this sign-in.",
        )
    if method not in challenge.methods:
        raise ApiError(
            status_code=400,
            code="UNSUPPORTED_METHOD",
            message="This verification method is not available for your account.",
        )


def _code_matches(
    db: Session,
    store: RedisStore,
    *,
    user: User,
    challenge: Challenge,
    method: str,
    code: str | None,
) -> bool:
    if method == TwoFactorMethod.APP.value:
        return verify_user_totp_code(user, code)
    if method == TwoFactorMethod.BACKUP.value:
        return consume_backup_code(db, user=user, backup_code=code)
    if method in DELIVERED_METHODS:
        return verify_delivery_code(store, challenge_id=challenge.id, method=method, code=code)
    return False


def verify_challenge(
    db: Session,
    store: RedisStore,
    *,
    payload: TwoFactorVerifyRequest,
    context: ClientContext,
    request_id: str | None = None,
) -> VerificationOutcome:
    settings = get_settings()
    challenge = _load(store, payload.challenge_id)
    method = payload.method.strip().lower()
    _check_method(challenge, method)

    user = db.get(User, challenge.user_id)
    if user is None:
        raise _invalid_challenge()

    try:
        matched = _code_matches(db, store, user=user, challenge=challenge, method=method, code=payload.code)
    except StoreUnavailableError as exc:
        db.rollback()
        raise service_unavailable() from exc

    if not matched:
        db.rollback()
        try:
            failed, discarded = record_failure(store, challenge)
        except StoreUnavailableError as exc:
            raise service_unavailable() from exc
        show_additional = (
            failed >= settings.challenge_reveal_additional_after and bool(challenge.additional_methods)
        )
        attempts_remaining = max(0, settings.challenge_max_failed_attempts - failed)
        log_auth_event(
            db,
            action=AuthAction.TWO_FACTOR_FAILED,
            email=user.email,
            context=context,
            success=False,
            user_id=user.id,
            risk_score=challenge.risk_score,
            error_code="INVALID_CODE",
            details={"method": method, "failed_attempts": failed, "challenge_discarded": discarded},
            request_id=request_id,
        )
        message = "Invalid verification code"
        if discarded:
            message = "Too many failed attempts. Please sign in again."
        raise ApiError(
            status_code=400,
            code="INVALID_CODE",
            message=message,
            details={
                "failed_attempts": failed,
                "attempts_remaining": attempts_remaining,
                "show_additional_methods": show_additional,
                "additional_methods": challenge.additional_methods if show_additional else [],
            },
        )

    try:
        consumed = consume_challenge(store, challenge.id)
    except StoreUnavailableError as exc:
        db.rollback()
        raise service_unavailable() from exc
    if consumed is None:
        # Another request already used this challenge.
        db.rollback()
        raise _invalid_challenge()

    device = db.get(UserDevice, consumed.device_id)
    if device is None or device.user_id != user.id:
        db.rollback()
        raise _invalid_challenge()

    now = datetime.now(timezone.utc)
    user.last_login = now
    if method in (TwoFactorMethod.APP.value, TwoFactorMethod.SMS.value, TwoFactorMethod.EMAIL.value):
        user.two_factor_method = method
    db.commit()

    device_trusted = is_device_trusted(store, device)
    newly_trusted = bool((payload.trust_this_device or consumed.trust_this_device) and not device_trusted)
    device_trusted = device_trusted or newly_trusted

    issued = issue_session(
        db,
        user=user,
        device=device,
        trusted=device_trusted,
        context=context,
        session_type="two_factor",
    )
    if newly_trusted:
        trust_device(db, store, device=device)

    try:
        discard_delivery_codes(store, challenge_id=consumed.id)
    except StoreUnavailableError:
        logger.warning("second_factor_code_cleanup_failed", extra={"user_id": user.id})

    record_login_analytics(
        db,
        user_id=user.id,
        context=context,
        local_time=server_local_time(now),
        is_new_device=consumed.is_new_device,
        is_new_location=any(factor.startswith("new_location") for factor in consumed.risk_factors),
        risk_score=consumed.risk_score,
        auth_method=f"2fa:{method}",
    )
    log_auth_event(
        db,
        action=AuthAction.TWO_FACTOR_VERIFIED,
        email=user.email,
        context=context,
        success=True,
        user_id=user.id,
        risk_score=consumed.risk_score,
        details={
            "method": method,
            "device_id": device.id,
            "device_trusted": device_trusted,
            "newly_trusted": newly_trusted,
            "remember_me": consumed.remember_me,
            "session_id": issued.session.id,
        },
        request_id=request_id,
    )
    return VerificationOutcome(
        user=user,
        device=device,
        device_trusted=device_trusted,
        issued=issued,
        security_score=100 - consumed.risk_score,
        redirect_url=consumed.redirect_url,
    )


def request_code(
    db: Session,
    store: RedisStore,
    dispatcher: CodeDispatcher,
    *,
    payload: TwoFactorCodeRequest,
) -> TwoFactorCodeResponse:
    challenge = _load(store, payload.challenge_id)
    method = payload.method
    _check_method(challenge, method)

    user = db.get(User, challenge.user_id)
    if user is None:
        raise _invalid_challenge()
    destination = destination_for(user, method)
    if not destination:
        raise ApiError(
            status_code=400,
            code="UNSUPPORTED_METHOD",
            message="This verification method is not available for your account.",
        )

    try:
        code, ttl_seconds = issue_delivery_code(store, challenge_id=challenge.id, method=method)
    except StoreUnavailableError as exc:
        raise service_unavailable() from exc

    dispatcher.dispatch(method=method, destination=destination, code=code, user_id=user.id)
    return TwoFactorCodeResponse(
        ok=True,
        method=method,
        destination=mask_destination(destination),
        expires_in=ttl_seconds,
    )
