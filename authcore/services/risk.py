from __future__ import annotations

import json
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from authcore.models import AuthLog, LoginAnalytics, UserSession
from authcore.services.client_context import UNKNOWN
from authcore.settings import get_settings
from authcore.store import RedisStore, StoreUnavailableError

logger = logging.getLogger("authcore.risk")

PROFILE_CACHE_PREFIX = "behavior:profile:"
PROFILE_HISTORY_LIMIT = 100
MAX_RISK_SCORE = 100

CRITICAL_FACTORS = {
    "velocity_attack",
    "impossible_travel_trusted_device",
    "impossible_travel_untrusted_device",
}
RISK_UNAVAILABLE_FACTOR = "risk_engine_unavailable"


@dataclass(frozen=True, slots=True)
class RiskSignals:
    user_id: int
    ip: str
    country: str
    city: str
    region: str
    fingerprint: str
    device_trusted: bool
    device_is_new: bool
    login_time: datetime


@dataclass(frozen=True, slots=True)
class BehaviorAnalysis:
    score: int
    factors: list[str] = field(default_factory=list)
    allow_bypass: bool = False
    recommendations: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    score: int
    factors: list[str]
    allow_trusted_device_bypass: bool
    recommendations: list[str] = field(default_factory=list)

    @property
    def security_score(self) -> int:
        return MAX_RISK_SCORE - self.score


@dataclass(slots=True)
class BehaviorProfile:
    common_locations: list[tuple[str, str]]
    common_times: list[tuple[int, int]]
    login_count: int

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> BehaviorProfile:
        data = json.loads(raw)
        return cls(
            common_locations=[(str(country), str(city)) for country, city in data.get("common_locations", [])],
            common_times=[(int(day), int(hour)) for day, hour in data.get("common_times", [])],
            login_count=int(data.get("login_count", 0)),
        )


class BehaviorAnalyzer(Protocol):
    def analyze(self, signals: RiskSignals) -> BehaviorAnalysis: ...


def server_local_time(login_time: datetime) -> datetime:
    """Weekday and hour for scoring come from the server zone, never from the client."""
    zone_name = (get_settings().server_timezone or "").strip()
    try:
        zone = ZoneInfo(zone_name) if zone_name else timezone.utc
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("server_timezone_invalid", extra={"server_timezone": zone_name})
        zone = timezone.utc
    return login_time.astimezone(zone)


def recommendations_for(score: int, device_trusted: bool) -> list[str]:
    if score >= 80:
        return [
            "Force password change",
            "Require additional identity verification",
            "Lock account temporarily",
        ]
    if score >= 60:
        return ["Require 2FA even for trusted devices", "Send security alert email"]
    if score >= 40:
        return ["Monitor session closely", "Require 2FA"]
    if not device_trusted:
        return ["Require 2FA for untrusted device"]
    return []


class DatabaseBehaviorAnalyzer:
    """Scores an attempt against the account's own login history."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: RedisStore | None = None,
        *,
        now: Callable[[], datetime] | None = None,
    ):
        self._session_factory = session_factory
        self._store = store
        self._now = now or (lambda: datetime.now(timezone.utc))

    def analyze(self, signals: RiskSignals) -> BehaviorAnalysis:
        with self._session_factory() as db:
            profile = self._load_profile(db, signals.user_id)
            recent_attempts = self._count_recent_attempts(db, signals.user_id)
            active_countries = self._recent_session_countries(db, signals.user_id)

        trusted = signals.device_trusted
        score = 0
        factors: list[str] = []

        if not trusted:
            score += 10
            factors.append("untrusted_device_baseline")

        # location
        location_key = (signals.country, signals.city)
        if location_key not in profile.common_locations:
            score += 12 if trusted else 30
            factors.append("new_location_trusted_device" if trusted else "new_location_untrusted_device")
            known_countries = {country for country, _ in profile.common_locations}
            if signals.country not in known_countries:
                score += 10 if trusted else 20
                factors.append("new_country_trusted_device" if trusted else "new_country_untrusted_device")

        # device
        if signals.device_is_new:
            score += 25
            factors.append("new_device")
        elif not trusted:
            score += 15
            factors.append("untrusted_device")

        # time of day
        day = signals.login_time.weekday()
        hour = signals.login_time.hour
        is_common_time = any(
            common_day == day and abs(common_hour - hour) <= 2
            for common_day, common_hour in profile.common_times
        )
        if not is_common_time:
            score += 7 if trusted else 15
            factors.append("unusual_time_trusted_device" if trusted else "unusual_time_untrusted_device")
        if 1 <= hour <= 5:
            if trusted:
                score += 5
            else:
                score += 10
                factors.append("late_night_login_untrusted")

        # velocity
        if recent_attempts > 5:
            score += 40
            factors.append("velocity_attack")
        elif recent_attempts > 3:
            score += 20
            factors.append("rapid_login_attempts")

        # concurrent sessions in different countries
        if len(active_countries) > 1:
            score += 30 if trusted else 50
            factors.append("impossible_travel_trusted_device" if trusted else "impossible_travel_untrusted_device")

        score = min(MAX_RISK_SCORE, score)
        has_critical = any(factor in CRITICAL_FACTORS for factor in factors)
        allow_bypass = trusted and not has_critical and score < get_settings().bypass_risk_ceiling

        return BehaviorAnalysis(
            score=score,
            factors=factors,
            allow_bypass=allow_bypass,
            recommendations=recommendations_for(score, trusted),
        )

    def _load_profile(self, db: Session, user_id: int) -> BehaviorProfile:
        cache_key = f"{PROFILE_CACHE_PREFIX}{user_id}"
        if self._store is not None:
            try:
                cached = self._store.get(cache_key)
            except StoreUnavailableError:
                cached = None
            if cached:
                try:
                    return BehaviorProfile.from_json(cached)
                except (ValueError, TypeError, KeyError):
                    logger.warning("behavior_profile_cache_corrupt", extra={"user_id": user_id})

        rows = list(
            db.scalars(
                select(LoginAnalytics)
                .where(LoginAnalytics.user_id == user_id)
                .order_by(LoginAnalytics.login_time.desc())
                .limit(PROFILE_HISTORY_LIMIT)
            ).all()
        )
        location_counts = Counter((row.country, row.city) for row in rows)
        time_counts = Counter((row.day_of_week, row.hour_of_day) for row in rows)
        profile = BehaviorProfile(
            common_locations=[key for key, _ in location_counts.most_common(5)],
            common_times=[key for key, _ in time_counts.most_common(10)],
            login_count=len(rows),
        )

        if self._store is not None:
            try:
                self._store.set(cache_key, profile.to_json(), get_settings().behavior_profile_cache_seconds)
            except StoreUnavailableError:
                logger.warning("behavior_profile_cache_write_failed", extra={"user_id": user_id})
        return profile

    def _count_recent_attempts(self, db: Session, user_id: int) -> int:
        since = self._now() - timedelta(minutes=5)
        count = db.scalar(
            select(func.count(AuthLog.id)).where(
                AuthLog.user_id == user_id,
                AuthLog.created_at >= since,
            )
        )
        return int(count or 0)

    def _recent_session_countries(self, db: Session, user_id: int) -> set[str]:
        since = self._now() - timedelta(minutes=30)
        countries = db.scalars(
            select(UserSession.country).where(
                UserSession.user_id == user_id,
                UserSession.is_active.is_(True),
                UserSession.last_used >= since,
            )
        ).all()
        return {country for country in countries if country and country != UNKNOWN}


_RISK_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="risk-analysis")


class RiskEngine:
    def __init__(
        self,
        analyzer: BehaviorAnalyzer,
        *,
        timeout_seconds: float | None = None,
        bypass_ceiling: int | None = None,
    ):
        settings = get_settings()
        self._analyzer = analyzer
        self._timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.risk_timeout_seconds
        self._bypass_ceiling = bypass_ceiling if bypass_ceiling is not None else settings.bypass_risk_ceiling

    def unavailable(self, signals: RiskSignals) -> RiskAssessment:
        return RiskAssessment(
            score=MAX_RISK_SCORE,
            factors=[RISK_UNAVAILABLE_FACTOR],
            allow_trusted_device_bypass=False,
            recommendations=recommendations_for(MAX_RISK_SCORE, signals.device_trusted),
        )

    def score(self, signals: RiskSignals) -> RiskAssessment:
        future = _RISK_EXECUTOR.submit(self._analyzer.analyze, signals)
        try:
            analysis = future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "risk_engine_timeout",
                extra={"user_id": signals.user_id, "timeout_seconds": self._timeout_seconds},
            )
            return self.unavailable(signals)
        except Exception:
            logger.exception("risk_engine_failed", extra={"user_id": signals.user_id})
            return self.unavailable(signals)

        score = max(0, min(MAX_RISK_SCORE, int(analysis.score)))
        allow_bypass = bool(
            signals.device_trusted
            and analysis.allow_bypass
            and score < self._bypass_ceiling
        )
        return RiskAssessment(
            score=score,
            factors=list(analysis.factors),
            allow_trusted_device_bypass=allow_bypass,
            recommendations=list(analysis.recommendations),
        )


@lru_cache
def get_risk_engine() -> RiskEngine:
    from authcore.db import SessionLocal
    from authcore.store import get_store

    return RiskEngine(DatabaseBehaviorAnalyzer(SessionLocal, get_store()))
