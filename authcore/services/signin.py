from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from authcore.audit import log_auth_event
from authcore.errors import ApiError, service_unavailable
from authcore.models import AuthAction, User, UserDevice
from authcore.schemas import SignInRequest
from authcore.security import burn_password_check, verify_password
from authcore.services.challenges import Challenge, create_challenge
from authcore.services.client_context import ClientContext
from authcore.services.credentials import (
    find_user_by_email,
    lock_remaining_minutes,
    normalize_email,
    register_login_failure,
    register_login_success,
)
from authcore.services.devices import (
    DeviceMetadata,
    build_device_metadata,
    choose_fingerprint,
    is_device_trusted,
    resolve_device,
    trust_device,
)
from authcore.services.rate_limiter import check_rate_limit, clear_rate_limit
from authcore.services.risk import RiskAssessment, RiskEngine, RiskSignals, server_local_time
from authcore.services.sessions import IssuedSession, issue_session, record_login_analytics
from authcore.services.two_factor import get_enrolled_methods, partition_methods, primary_method_for
from authcore.settings import get_settings
from authcore.store import RedisStore, StoreUnavailableError

logger = logging.getLogger("authcore.signin")

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
UNKNOWN_ACCOUNT_RISK_SCORE = 40


class SignInState(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    CREDENTIAL_REJECTED = "credential_rejected"
    BYPASSED_SESSION = "bypassed_session"
    CHALLENGE_ISSUED = "challenge_issued"
    DIRECT_SESSION = "direct_session"


@dataclass(slots=True)
class SignInOutcome:
    """Result of a sign-in that got past credential checks.

    Rejecting states never produce an outcome; they raise ApiError after
    their audit record is written.
    """

    state: SignInState
    user: User
    device: UserDevice
    fingerprint: str
    device_trusted: bool
    is_new_device: bool
    assessment: RiskAssessment
    redirect_url: str
    issued: IssuedSession | None = None
    challenge: Challenge | None = None

    @property
    def security_score(self) -> int:
        return self.assessment.security_score

    @property
    def suspicious_activity(self) -> bool:
        return self.assessment.score >= get_settings().suspicious_risk_score


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_credentials(payload: SignInRequest) -> tuple[str, str]:
    email = normalize_email(payload.email)
    password = payload.password or ""
    if not email or not password:
        raise ApiError(status_code=400, code="INVALID_REQUEST", message="Email and password are required")
    return email, password


def _clear_rate_limit_after_success(store: RedisStore, *, ip: str, email: str, user_id: int) -> None:
    # The decision is already durable; a stale counter only expires later.
    try:
        clear_rate_limit(store, ip=ip, identifier=email)
    except StoreUnavailableError:
        logger.warning("signin_rate_limit_clear_failed", extra={"user_id": user_id})


def _enforce_rate_limit(
    db: Session,
    store: RedisStore,
    *,
    email: str,
    context: ClientContext,
    request_id: str | None,
) -> None:
    try:
        status = check_rate_limit(store, ip=context.ip, identifier=email)
    except StoreUnavailableError as exc:
        logger.error("signin_rate_limiter_unavailable", extra={"request_id": request_id, "ip": context.ip})
        raise service_unavailable() from exc

    if not status.exceeded:
        return

    minutes = status.retry_after_minutes
    logger.warning(
        "signin_rate_limited",
        extra={"request_id": request_id, "ip": context.ip, "attempt_count": status.attempt_count},
    )
    log_auth_event(
        db,
        action=AuthAction.RATE_LIMITED,
        email=email,
        context=context,
        success=False,
        risk_score=get_settings().rate_limited_risk_score,
        flagged=True,
        error_code="TOO_MANY_ATTEMPTS",
        details={"attempt_count": status.attempt_count, "retry_after_minutes": minutes},
        request_id=request_id,
    )
    raise ApiError(
        status_code=429,
        code="TOO_MANY_ATTEMPTS",
        message=f"Too many login attempts. Try again in {minutes} minutes.",
        details={"retry_after_minutes": minutes},
    )


def _verify_credentials(
    db: Session,
    *,
    email: str,
    password: str,
    context: ClientContext,
    request_id: str | None,
) -> User:
    user = find_user_by_email(db, email)
    if user is None or not user.password_hash:
        burn_password_check(password)
        log_auth_event(
            db,
            action=AuthAction.LOGIN_FAILED,
            email=email,
            context=context,
            success=False,
            risk_score=UNKNOWN_ACCOUNT_RISK_SCORE,
            error_code="INVALID_CREDENTIALS",
            details={"reason": "unknown_account"},
            request_id=request_id,
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message=INVALID_CREDENTIALS_MESSAGE)

    minutes = lock_remaining_minutes(user)
    if minutes is not None:
        log_auth_event(
            db,
            action=AuthAction.LOGIN_FAILED,
            email=email,
            context=context,
            success=False,
            user_id=user.id,
            risk_score=get_settings().rate_limited_risk_score,
            flagged=True,
            error_code="ACCOUNT_LOCKED",
            details={"reason": "account_locked", "lock_remaining_minutes": minutes},
            request_id=request_id,
        )
        raise ApiError(
            status_code=423,
            code="ACCOUNT_LOCKED",
            message=f"Account is locked. Try again in {minutes} minutes.",
            details={"retry_after_minutes": minutes},
        )

    if not verify_password(password, user.password_hash):
        attempts, locked_now = register_login_failure(db, user)
        if locked_now:
            logger.warning("account_locked", extra={"user_id": user.id, "login_attempts": attempts})
        log_auth_event(
            db,
            action=AuthAction.LOGIN_FAILED,
            email=email,
            context=context,
            success=False,
            user_id=user.id,
            risk_score=min(100, 50 + attempts * 10),
            flagged=locked_now,
            error_code="INVALID_CREDENTIALS",
            details={"reason": "wrong_password", "login_attempts": attempts, "account_locked": locked_now},
            request_id=request_id,
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message=INVALID_CREDENTIALS_MESSAGE)

    register_login_success(db, user)
    return user


def _record_analytics(
    db: Session,
    *,
    user: User,
    context: ClientContext,
    metadata: DeviceMetadata,
    local_time: datetime,
    is_new_device: bool,
    assessment: RiskAssessment,
    auth_method: str,
) -> None:
    record_login_analytics(
        db,
        user_id=user.id,
        context=context,
        local_time=local_time,
        is_new_device=is_new_device,
        is_new_location=any(factor.startswith("new_location") for factor in assessment.factors),
        risk_score=assessment.score,
        auth_method=auth_method,
        device_type=metadata.device_type,
    )


def sign_in(
    db: Session,
    store: RedisStore,
    risk_engine: RiskEngine,
    *,
    payload: SignInRequest,
    context: ClientContext,
    cookie_fingerprint: str | None = None,
    request_id: str | None = None,
) -> SignInOutcome:
    email, password = _require_credentials(payload)
    _enforce_rate_limit(db, store, email=email, context=context, request_id=request_id)
    user = _verify_credentials(db, email=email, password=password, context=context, request_id=request_id)

    fingerprint = choose_fingerprint(
        cookie_value=cookie_fingerprint,
        payload_value=payload.device_fingerprint,
        context=context,
    )
    metadata = build_device_metadata(payload.device_info, context)
    device, is_new_device = resolve_device(db, user_id=user.id, fingerprint=fingerprint, metadata=metadata)
    device_trusted = is_device_trusted(store, device)

    local_time = server_local_time(_utc_now())
    assessment = risk_engine.score(
        RiskSignals(
            user_id=user.id,
            ip=context.ip,
            country=context.country,
            city=context.city,
            region=context.region,
            fingerprint=fingerprint,
            device_trusted=device_trusted,
            device_is_new=is_new_device,
            login_time=local_time,
        )
    )

    outcome = SignInOutcome(
        state=SignInState.DIRECT_SESSION,
        user=user,
        device=device,
        fingerprint=fingerprint,
        device_trusted=device_trusted,
        is_new_device=is_new_device,
        assessment=assessment,
        redirect_url=payload.redirect_url,
    )
    base_details = {
        "device_id": device.id,
        "is_new_device": is_new_device,
        "risk_factors": assessment.factors,
        "remember_me": payload.remember_me,
    }

    if user.two_factor_enabled and device_trusted and assessment.allow_trusted_device_bypass:
        outcome.state = SignInState.BYPASSED_SESSION
        outcome.issued = issue_session(
            db,
            user=user,
            device=device,
            trusted=True,
            context=context,
            bypassed_2fa=True,
            session_type="trusted_device_bypass",
        )
        _clear_rate_limit_after_success(store, ip=context.ip, email=email, user_id=user.id)
        _record_analytics(
            db,
            user=user,
            context=context,
            metadata=metadata,
            local_time=local_time,
            is_new_device=is_new_device,
            assessment=assessment,
            auth_method="trusted_device_bypass",
        )
        log_auth_event(
            db,
            action=AuthAction.LOGIN_SUCCESS_TRUSTED_DEVICE,
            email=email,
            context=context,
            success=True,
            user_id=user.id,
            risk_score=assessment.score,
            details={**base_details, "bypassed_2fa": True, "session_id": outcome.issued.session.id},
            request_id=request_id,
        )
        return outcome

    if user.two_factor_enabled:
        primary_methods, additional_methods = partition_methods(get_enrolled_methods(db, user))
        try:
            challenge = create_challenge(
                store,
                user_id=user.id,
                device_id=device.id,
                fingerprint=fingerprint,
                device_trusted=device_trusted,
                is_new_device=is_new_device,
                trust_this_device=payload.trust_this_device,
                remember_me=payload.remember_me,
                risk_score=assessment.score,
                risk_factors=list(assessment.factors),
                primary_methods=primary_methods,
                additional_methods=additional_methods,
                primary_method=primary_method_for(user),
                ip=context.ip,
                user_agent=context.user_agent,
                location=context.location,
                country=context.country,
                city=context.city,
                region=context.region,
                timezone=metadata.timezone,
                redirect_url=payload.redirect_url,
            )
        except StoreUnavailableError as exc:
            logger.error("challenge_store_unavailable", extra={"request_id": request_id, "user_id": user.id})
            raise service_unavailable() from exc

        outcome.state = SignInState.CHALLENGE_ISSUED
        outcome.challenge = challenge
        _clear_rate_limit_after_success(store, ip=context.ip, email=email, user_id=user.id)
        log_auth_event(
            db,
            action=AuthAction.LOGIN_2FA_REQUIRED,
            email=email,
            context=context,
            success=True,
            user_id=user.id,
            risk_score=assessment.score,
            details={**base_details, "device_trusted": device_trusted, "methods": challenge.methods},
            request_id=request_id,
        )
        return outcome

    # The session row is durable before trust is granted.
    newly_trusted = bool(payload.trust_this_device and not device_trusted)
    device_trusted = device_trusted or newly_trusted
    outcome.device_trusted = device_trusted
    outcome.issued = issue_session(db, user=user, device=device, trusted=device_trusted, context=context)
    if newly_trusted:
        trust_device(db, store, device=device)
    _clear_rate_limit_after_success(store, ip=context.ip, email=email, user_id=user.id)
    _record_analytics(
        db,
        user=user,
        context=context,
        metadata=metadata,
        local_time=local_time,
        is_new_device=is_new_device,
        assessment=assessment,
        auth_method="password",
    )
    log_auth_event(
        db,
        action=AuthAction.LOGIN_SUCCESS,
        email=email,
        context=context,
        success=True,
        user_id=user.id,
        risk_score=assessment.score,
        details={
            **base_details,
            "device_trusted": device_trusted,
            "newly_trusted": newly_trusted,
            "session_id": outcome.issued.session.id,
        },
        request_id=request_id,
    )
    return outcome
