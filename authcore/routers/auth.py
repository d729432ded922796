from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from authcore.audit import log_auth_event
from authcore.db import get_db
from authcore.errors import ApiError, get_request_id
from authcore.models import AuthAction, User
from authcore.schemas import (
    LogoutResponse,
    SessionIssuedResponse,
    SessionRead,
    SessionStatusResponse,
    SignInRequest,
    SignInUser,
    TwoFactorCodeRequest,
    TwoFactorCodeResponse,
    TwoFactorRequiredResponse,
    TwoFactorVerifyRequest,
)
from authcore.security import decode_session_token, extract_session_token, peek_session_token
from authcore.services.client_context import extract_client_context
from authcore.services.risk import RiskEngine, get_risk_engine
from authcore.services.sessions import IssuedSession, get_active_session, revoke_session
from authcore.services.signin import SignInState, sign_in
from authcore.services.two_factor import CodeDispatcher, get_code_dispatcher
from authcore.services.verification import request_code, verify_challenge
from authcore.settings import get_settings, use_secure_cookies
from authcore.store import RedisStore, get_store

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _set_session_cookies(response: Response, *, issued: IssuedSession, fingerprint: str) -> None:
    settings = get_settings()
    secure = use_secure_cookies()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=issued.token,
        max_age=issued.max_age,
        path="/",
        samesite="lax",
        secure=secure,
        httponly=True,
    )
    response.set_cookie(
        key=settings.device_cookie_name,
        value=fingerprint,
        max_age=settings.device_cookie_days * 24 * 60 * 60,
        path="/",
        samesite="lax",
        secure=secure,
        httponly=True,
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=get_settings().session_cookie_name,
        path="/",
        samesite="lax",
        secure=use_secure_cookies(),
        httponly=True,
    )


@router.post("/signin", response_model=SessionIssuedResponse | TwoFactorRequiredResponse)
def signin(
    payload: SignInRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    store: RedisStore = Depends(get_store),
    risk_engine: RiskEngine = Depends(get_risk_engine),
) -> SessionIssuedResponse | TwoFactorRequiredResponse:
    request.state.actor = "anonymous"
    context = extract_client_context(request.headers)
    outcome = sign_in(
        db,
        store,
        risk_engine,
        payload=payload,
        context=context,
        cookie_fingerprint=request.cookies.get(get_settings().device_cookie_name),
        request_id=get_request_id(request),
    )
    request.state.actor = "user"
    request.state.actor_id = str(outcome.user.id)
    request.state.signin_state = outcome.state.value

    if outcome.state == SignInState.CHALLENGE_ISSUED and outcome.challenge is not None:
        challenge = outcome.challenge
        return TwoFactorRequiredResponse(
            challenge_id=challenge.id,
            two_factor_methods=challenge.methods,
            primary_methods=challenge.primary_methods,
            additional_methods=challenge.additional_methods,
            primary_method=challenge.primary_method,
            has_additional_methods=bool(challenge.additional_methods),
            is_new_device=outcome.is_new_device,
            device_trusted=outcome.device_trusted,
            suspicious_activity=outcome.suspicious_activity,
            risk_score=outcome.assessment.score,
            risk_factors=outcome.assessment.factors,
            has_passkeys="passkey" in challenge.methods,
            recommendations=outcome.assessment.recommendations,
            redirect_url=outcome.redirect_url,
        )

    if outcome.issued is None:
        raise RuntimeError(f"sign-in state {outcome.state.value} did not issue a session")
    _set_session_cookies(response, issued=outcome.issued, fingerprint=outcome.fingerprint)
    return SessionIssuedResponse(
        user=SignInUser.model_validate(outcome.user),
        device_trusted=outcome.device_trusted,
        bypassed_2fa=outcome.state == SignInState.BYPASSED_SESSION,
        security_score=outcome.security_score,
        redirect_url=outcome.redirect_url,
    )


@router.post("/2fa/request-code", response_model=TwoFactorCodeResponse)
def request_two_factor_code(
    payload: TwoFactorCodeRequest,
    request: Request,
    db: Session = Depends(get_db),
    store: RedisStore = Depends(get_store),
    dispatcher: CodeDispatcher = Depends(get_code_dispatcher),
) -> TwoFactorCodeResponse:
    request.state.actor = "anonymous"
    return request_code(db, store, dispatcher, payload=payload)


@router.post("/2fa/verify", response_model=SessionIssuedResponse)
def verify_two_factor(
    payload: TwoFactorVerifyRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    store: RedisStore = Depends(get_store),
) -> SessionIssuedResponse:
    request.state.actor = "anonymous"
    outcome = verify_challenge(
        db,
        store,
        payload=payload,
        context=extract_client_context(request.headers),
        request_id=get_request_id(request),
    )
    request.state.actor = "user"
    request.state.actor_id = str(outcome.user.id)
    _set_session_cookies(response, issued=outcome.issued, fingerprint=outcome.device.fingerprint)
    return SessionIssuedResponse(
        user=SignInUser.model_validate(outcome.user),
        device_trusted=outcome.device_trusted,
        bypassed_2fa=False,
        security_score=outcome.security_score,
        redirect_url=outcome.redirect_url,
    )


@router.get("/session", response_model=SessionStatusResponse)
def current_session(request: Request, db: Session = Depends(get_db)) -> SessionStatusResponse:
    token = extract_session_token(request)
    if not token:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Session is invalid.")
    claims = decode_session_token(token)
    session_row, user = get_active_session(db, claims)
    request.state.actor = "user"
    request.state.actor_id = str(user.id)
    return SessionStatusResponse(
        user=SignInUser.model_validate(user),
        session=SessionRead.model_validate(session_row),
    )


@router.post("/logout", response_model=LogoutResponse)
def logout(request: Request, response: Response, db: Session = Depends(get_db)) -> LogoutResponse:
    token = extract_session_token(request)
    claims = peek_session_token(token) if token else None
    if claims and isinstance(claims.get("session_id"), int) and isinstance(claims.get("user_id"), int):
        user_id = claims["user_id"]
        if revoke_session(db, session_id=claims["session_id"], user_id=user_id):
            user = db.get(User, user_id)
            log_auth_event(
                db,
                action=AuthAction.LOGOUT,
                email=user.email if user is not None else claims.get("email"),
                context=extract_client_context(request.headers),
                success=True,
                user_id=user_id,
                details={"session_id": claims["session_id"]},
                request_id=get_request_id(request),
            )
    _clear_session_cookie(response)
    return LogoutResponse(ok=True)
