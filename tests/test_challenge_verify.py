from __future__ import annotations

import os
import time
import unittest
from collections.abc import Generator
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from authcore.db import Base, get_db
from authcore.main import app
from authcore.models import AuthLog, TwoFactorBackupCode, User, UserDevice, UserSession
from authcore.security import hash_password
from authcore.services.challenges import challenge_key
from authcore.services.devices import trust_cache_key
from authcore.services.risk import BehaviorAnalysis, RiskEngine, RiskSignals, get_risk_engine
from authcore.services.two_factor import (
    _hotp,
    _normalize_totp_secret,
    encrypt_totp_secret,
    get_code_dispatcher,
)
from authcore.settings import get_settings
from authcore.store import StoreUnavailableError, get_store

TEST_ENV = {"JWT_SECRET": "challenge-verify-test-secret-0123456789ab"}
EMAIL = "ada@example.com"
PASSWORD = "correct horse battery staple"
PASSWORD_HASH = hash_password(PASSWORD)
TOTP_SECRET = "JBSWY3DPEHPK3PXP"
DAY_SECONDS = 24 * 60 * 60


def _current_totp() -> str:
    return _hotp(_normalize_totp_secret(TOTP_SECRET), int(time.time()) // 30)  # type: ignore[arg-type]


def _wrong_totp() -> str:
    secret = _normalize_totp_secret(TOTP_SECRET)
    counter = int(time.time()) // 30
    valid = {_hotp(secret, counter + offset) for offset in range(-2, 3)}  # type: ignore[arg-type]
    return next(code for code in ("000000", "111111", "222222") if code not in valid)


class _MemoryStore:
    def __init__(self) -> None:
        self.now = 1_000_000
        self.down = False
        self.values: dict[str, str] = {}
        self._expiry: dict[str, int] = {}

    def _check(self) -> None:
        if self.down:
            raise StoreUnavailableError("store down")

    def _alive(self, key: str) -> bool:
        expires = self._expiry.get(key)
        if expires is not None and expires <= self.now:
            self.values.pop(key, None)
            self._expiry.pop(key, None)
        return key in self.values

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        self._check()
        if not self._alive(key):
            self.values[key] = "0"
            self._expiry[key] = self.now + ttl_seconds
        count = int(self.values[key]) + 1
        self.values[key] = str(count)
        return count, self.ttl(key)

    def get(self, key: str) -> str | None:
        self._check()
        return self.values.get(key) if self._alive(key) else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self.values[key] = value
        self._expiry[key] = self.now + max(1, int(ttl_seconds))

    def delete(self, key: str) -> None:
        self._check()
        self.values.pop(key, None)
        self._expiry.pop(key, None)

    def exists(self, key: str) -> bool:
        self._check()
        return self._alive(key)

    def ttl(self, key: str) -> int:
        self._check()
        if not self._alive(key):
            return -2
        return self._expiry[key] - self.now

    def take(self, key: str) -> str | None:
        value = self.get(key)
        self.delete(key)
        return value

    def ping(self) -> bool:
        return not self.down


class _StubAnalyzer:
    def analyze(self, signals: RiskSignals) -> BehaviorAnalysis:
        return BehaviorAnalysis(score=25, factors=["new_device"], allow_bypass=False)


class _CapturingDispatcher:
    def __init__(self) -> None:
        self.sent: list[dict[str, object]] = []

    def dispatch(self, *, method: str, destination: str, code: str, user_id: int) -> None:
        self.sent.append({"method": method, "destination": destination, "code": code, "user_id": user_id})


def _override_get_db(session_factory: sessionmaker[Session]):  # type: ignore[no-untyped-def]
    def _override() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _override


def _set_cookie_header(response, name: str) -> str | None:  # type: ignore[no-untyped-def]
    for header in response.headers.get_list("set-cookie"):
        if header.startswith(f"{name}="):
            return header
    return None


class _ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, TEST_ENV, clear=False)
        self._env.start()
        get_settings.cache_clear()

        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        self.session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self.store = _MemoryStore()
        self.dispatcher = _CapturingDispatcher()
        risk_engine = RiskEngine(_StubAnalyzer())

        app.dependency_overrides[get_db] = _override_get_db(self.session_factory)
        app.dependency_overrides[get_store] = lambda: self.store
        app.dependency_overrides[get_risk_engine] = lambda: risk_engine
        app.dependency_overrides[get_code_dispatcher] = lambda: self.dispatcher
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self._env.stop()
        get_settings.cache_clear()

    def _create_user(self, **values) -> int:  # type: ignore[no-untyped-def]
        with self.session_factory() as db:
            user = User(
                email=EMAIL,
                password_hash=PASSWORD_HASH,
                email_verified=True,
                two_factor_enabled=True,
                two_factor_method="2fa",
                totp_secret_enc=encrypt_totp_secret(TOTP_SECRET),
            )
            for key, value in values.items():
                setattr(user, key, value)
            db.add(user)
            db.commit()
            return user.id

    def _signin(self, **extra) -> dict:  # type: ignore[no-untyped-def]
        response = self.client.post(
            "/api/auth/signin",
            json={"email": EMAIL, "password": PASSWORD, "deviceFingerprint": "fp-laptop", **extra},
            headers={"X-Forwarded-For": "203.0.113.7"},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["requiresTwoFactor"])
        return body

    def _verify(self, challenge_id: str, code: str | None, *, method: str = "2fa", **extra):  # type: ignore[no-untyped-def]
        return self.client.post(
            "/api/auth/2fa/verify",
            json={"challengeId": challenge_id, "method": method, "code": code, **extra},
            headers={"X-Forwarded-For": "203.0.113.7"},
        )

    def _count(self, model) -> int:  # type: ignore[no-untyped-def]
        with self.session_factory() as db:
            return int(db.scalar(select(func.count(model.id))) or 0)


class ChallengeVerificationTests(_ApiTestCase):
    def test_valid_code_issues_untrusted_session(self) -> None:
        self._create_user()
        challenge_id = self._signin()["challengeId"]

        response = self._verify(challenge_id, _current_totp())

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertFalse(body["deviceTrusted"])
        self.assertFalse(body["bypassed2FA"])
        self.assertEqual(body["securityScore"], 75)
        self.assertIn(f"Max-Age={20 * DAY_SECONDS}", _set_cookie_header(response, "auth-token"))  # type: ignore[arg-type]
        self.assertNotIn(challenge_key(challenge_id), self.store.values)
        with self.session_factory() as db:
            session_row = db.scalar(select(UserSession))
            self.assertEqual(session_row.session_type, "two_factor")  # type: ignore[union-attr]
            self.assertFalse(session_row.bypassed_2fa)  # type: ignore[union-attr]
            verified = db.scalars(select(AuthLog).where(AuthLog.action == "2fa_verified")).all()
            self.assertEqual(len(verified), 1)

    def test_challenge_cannot_be_used_twice(self) -> None:
        self._create_user()
        challenge_id = self._signin()["challengeId"]
        code = _current_totp()

        self.assertEqual(self._verify(challenge_id, code).status_code, 200)
        again = self._verify(challenge_id, code)

        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["error"]["code"], "INVALID_CHALLENGE")
        self.assertEqual(self._count(UserSession), 1)

    def test_trust_can_be_requested_at_verification(self) -> None:
        user_id = self._create_user()
        challenge_id = self._signin()["challengeId"]

        response = self._verify(challenge_id, _current_totp(), trustThisDevice=True)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["deviceTrusted"])
        self.assertIn(f"Max-Age={150 * DAY_SECONDS}", _set_cookie_header(response, "auth-token"))  # type: ignore[arg-type]
        self.assertEqual(self.store.ttl(trust_cache_key(user_id, "fp-laptop")), 150 * DAY_SECONDS)
        with self.session_factory() as db:
            self.assertTrue(db.scalar(select(UserDevice.trusted)))

    def test_trust_requested_at_sign_in_applies_after_verification(self) -> None:
        self._create_user()
        challenge_id = self._signin(trustThisDevice=True)["challengeId"]

        with self.session_factory() as db:
            self.assertFalse(db.scalar(select(UserDevice.trusted)))

        response = self._verify(challenge_id, _current_totp())

        self.assertTrue(response.json()["deviceTrusted"])

    def test_device_stays_untrusted_when_session_cannot_be_saved(self) -> None:
        user_id = self._create_user()
        challenge_id = self._signin()["challengeId"]
        client = TestClient(app, raise_server_exceptions=False)

        with patch(
            "authcore.services.verification.issue_session",
            side_effect=RuntimeError("user_sessions unavailable"),
        ):
            response = client.post(
                "/api/auth/2fa/verify",
                json={"challengeId": challenge_id, "method": "2fa", "code": _current_totp(), "trustThisDevice": True},
                headers={"X-Forwarded-For": "203.0.113.7"},
            )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(self._count(UserSession), 0)
        self.assertNotIn(trust_cache_key(user_id, "fp-laptop"), self.store.values)
        with self.session_factory() as db:
            self.assertFalse(db.scalar(select(UserDevice.trusted)))

    def test_additional_methods_revealed_after_three_failures(self) -> None:
        self._create_user(recovery_email="ada.recovery@example.org", recovery_email_verified=True)
        body = self._signin()
        self.assertEqual(body["primaryMethods"], ["2fa"])
        self.assertEqual(body["additionalMethods"], ["recovery_email"])
        self.assertTrue(body["hasAdditionalMethods"])
        wrong = _wrong_totp()

        second = None
        for _ in range(2):
            second = self._verify(body["challengeId"], wrong)
        third = self._verify(body["challengeId"], wrong)

        self.assertFalse(second.json()["error"]["show_additional_methods"])  # type: ignore[union-attr]
        error = third.json()["error"]
        self.assertEqual(third.status_code, 400)
        self.assertEqual(error["code"], "INVALID_CODE")
        self.assertEqual(error["failed_attempts"], 3)
        self.assertEqual(error["attempts_remaining"], 2)
        self.assertTrue(error["show_additional_methods"])
        self.assertEqual(error["additional_methods"], ["recovery_email"])

    def test_fifth_failure_discards_challenge(self) -> None:
        self._create_user()
        challenge_id = self._signin()["challengeId"]
        wrong = _wrong_totp()

        responses = [self._verify(challenge_id, wrong) for _ in range(5)]

        self.assertEqual(responses[-1].json()["error"]["message"], "Too many failed attempts. Please sign in again.")
        self.assertEqual(responses[-1].json()["error"]["attempts_remaining"], 0)
        after = self._verify(challenge_id, _current_totp())
        self.assertEqual(after.json()["error"]["code"], "INVALID_CHALLENGE")
        self.assertEqual(self._count(UserSession), 0)

        with self.session_factory() as db:
            failures = db.scalars(select(AuthLog).where(AuthLog.action == "2fa_failed")).all()
            self.assertEqual(len(failures), 5)

    def test_failure_does_not_extend_challenge_lifetime(self) -> None:
        self._create_user()
        challenge_id = self._signin()["challengeId"]
        self.store.now += 500

        self._verify(challenge_id, _wrong_totp())

        self.assertEqual(self.store.ttl(challenge_key(challenge_id)), 100)
        self.assertEqual(self.store.ttl(f"{challenge_key(challenge_id)}:failures"), 100)
        self.store.now += 100
        expired = self._verify(challenge_id, _current_totp())
        self.assertEqual(expired.json()["error"]["code"], "INVALID_CHALLENGE")

    def test_backup_code_verifies_once(self) -> None:
        user_id = self._create_user()
        with self.session_factory() as db:
            codes = ["ABCDE-FGHJK", "KMNPQ-RSTUV"]
            for code in codes:
                db.add(TwoFactorBackupCode(user_id=user_id, code_hash=hash_password(code.replace("-", ""))))
            db.commit()

        body = self._signin()
        self.assertEqual(body["primaryMethods"], ["2fa", "backup"])
        response = self._verify(body["challengeId"], codes[0], method="backup")
        self.assertEqual(response.status_code, 200)

        with self.session_factory() as db:
            used = db.scalars(select(TwoFactorBackupCode).where(TwoFactorBackupCode.used_at.is_not(None))).all()
            self.assertEqual(len(used), 1)

        retry = self._verify(self._signin()["challengeId"], codes[0], method="backup")
        self.assertEqual(retry.json()["error"]["code"], "INVALID_CODE")

    def test_email_code_is_delivered_and_verified(self) -> None:
        user_id = self._create_user(two_factor_method="email", totp_secret_enc=None)
        body = self._signin()
        self.assertEqual(body["primaryMethod"], "email")
        self.assertEqual(body["twoFactorMethods"], ["email"])

        sent = self.client.post(
            "/api/auth/2fa/request-code",
            json={"challengeId": body["challengeId"], "method": "email"},
        )

        self.assertEqual(sent.status_code, 200)
        self.assertEqual(
            sent.json(),
            {"ok": True, "method": "email", "destination": "ad***@example.com", "expiresIn": 600},
        )
        self.assertEqual(len(self.dispatcher.sent), 1)
        delivered = self.dispatcher.sent[0]
        self.assertEqual((delivered["destination"], delivered["user_id"]), (EMAIL, user_id))

        response = self._verify(body["challengeId"], str(delivered["code"]), method="email")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(any(key.startswith("2fa:code:") for key in self.store.values))

    def test_method_outside_challenge_is_rejected(self) -> None:
        self._create_user()
        challenge_id = self._signin()["challengeId"]

        sms = self._verify(challenge_id, "123456", method="sms")
        passkey = self._verify(challenge_id, None, method="passkey")
        request = self.client.post(
            "/api/auth/2fa/request-code",
            json={"challengeId": challenge_id, "method": "sms"},
        )

        for response in (sms, passkey, request):
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["error"]["code"], "UNSUPPORTED_METHOD")
        self.assertEqual(self.dispatcher.sent, [])
        self.assertIn(challenge_key(challenge_id), self.store.values)

    def test_unknown_challenge_is_rejected(self) -> None:
        response = self._verify("does-not-exist", "123456")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json()["error"]["message"],
            "Verification session is invalid or expired. Please sign in again.",
        )


class SessionEndpointTests(_ApiTestCase):
    def _signed_in_token(self) -> str:
        self._create_user()
        challenge_id = self._signin()["challengeId"]
        response = self._verify(challenge_id, _current_totp())
        self.assertEqual(response.status_code, 200)
        return response.cookies["auth-token"]

    def test_current_session_is_read_from_cookie(self) -> None:
        self._signed_in_token()

        response = self.client.get("/api/auth/session")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user"]["email"], EMAIL)
        self.assertTrue(body["user"]["twoFactorEnabled"])
        self.assertFalse(body["session"]["trusted"])
        self.assertFalse(body["session"]["bypassed2FA"])

    def test_logout_revokes_session(self) -> None:
        token = self._signed_in_token()

        response = self.client.post("/api/auth/logout")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True})
        cleared = _set_cookie_header(response, "auth-token")
        self.assertIsNotNone(cleared)
        self.assertIn("Max-Age=0", cleared)  # type: ignore[arg-type]

        after = self.client.get("/api/auth/session", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(after.status_code, 401)
        self.assertEqual(after.json()["error"]["code"], "INVALID_TOKEN")

    def test_logout_is_idempotent(self) -> None:
        token = self._signed_in_token()
        headers = {"Authorization": f"Bearer {token}"}

        first = self.client.post("/api/auth/logout", headers=headers)
        second = self.client.post("/api/auth/logout", headers=headers)
        anonymous = TestClient(app).post("/api/auth/logout")

        for response in (first, second, anonymous):
            self.assertEqual(response.status_code, 200)
        with self.session_factory() as db:
            logouts = db.scalars(select(AuthLog).where(AuthLog.action == "logout")).all()
            self.assertEqual(len(logouts), 1)

    def test_session_requires_token(self) -> None:
        response = TestClient(app).get("/api/auth/session")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")


if __name__ == "__main__":
    unittest.main()
