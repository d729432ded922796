from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone

from authcore.settings import get_settings
from authcore.store import RedisStore, dumps

logger = logging.getLogger("authcore.signin")

CHALLENGE_PREFIX = "2fa:challenge:"
FAILURES_SUFFIX = ":failures"


@dataclass(slots=True)
class Challenge:
    id: str
    user_id: int
    device_id: int
    fingerprint: str
    device_trusted: bool
    is_new_device: bool
    trust_this_device: bool
    remember_me: bool
    risk_score: int
    risk_factors: list[str] = field(default_factory=list)
    primary_methods: list[str] = field(default_factory=list)
    additional_methods: list[str] = field(default_factory=list)
    primary_method: str = "2fa"
    ip: str = ""
    user_agent: str = ""
    location: str = ""
    country: str = ""
    city: str = ""
    region: str = ""
    timezone: str = "UTC"
    redirect_url: str = "/users"
    created_at: str = ""

    @property
    def methods(self) -> list[str]:
        return [*self.primary_methods, *self.additional_methods]


def challenge_key(challenge_id: str) -> str:
    return f"{CHALLENGE_PREFIX}{challenge_id}"


def _failures_key(challenge_id: str) -> str:
    return f"{CHALLENGE_PREFIX}{challenge_id}{FAILURES_SUFFIX}"


def _decode(raw: str | None) -> Challenge | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("challenge_payload_corrupt")
        return None
    known = {item.name for item in fields(Challenge)}
    try:
        return Challenge(**{key: value for key, value in data.items() if key in known})
    except TypeError:
        logger.warning("challenge_payload_corrupt")
        return None


def create_challenge(store: RedisStore, **values) -> Challenge:
    challenge = Challenge(
        id=uuid.uuid4().hex,
        created_at=datetime.now(timezone.utc).isoformat(),
        **values,
    )
    store.set(challenge_key(challenge.id), dumps(asdict(challenge)), get_settings().challenge_ttl_seconds)
    return challenge


def load_challenge(store: RedisStore, challenge_id: str) -> Challenge | None:
    return _decode(store.get(challenge_key(challenge_id)))


def failed_attempts(store: RedisStore, challenge_id: str) -> int:
    raw = store.get(_failures_key(challenge_id))
    try:
        return int(raw or 0)
    except ValueError:
        return 0


def record_failure(store: RedisStore, challenge: Challenge) -> tuple[int, bool]:
    """Count one failed verification. Returns (failed_attempts, discarded).

    The counter expires together with the challenge so a failure never
    extends the challenge's lifetime.
    """
    settings = get_settings()
    remaining = store.ttl(challenge_key(challenge.id))
    if remaining <= 0:
        return failed_attempts(store, challenge.id) + 1, True

    count, _ = store.incr_with_expiry(_failures_key(challenge.id), remaining)
    if count >= settings.challenge_max_failed_attempts:
        discard_challenge(store, challenge.id)
        logger.warning(
            "challenge_discarded_after_failures",
            extra={"user_id": challenge.user_id, "failed_attempts": count},
        )
        return count, True
    return count, False


def consume_challenge(store: RedisStore, challenge_id: str) -> Challenge | None:
    """Take the challenge out of the store. Only one caller can ever win."""
    challenge = _decode(store.take(challenge_key(challenge_id)))
    if challenge is not None:
        store.delete(_failures_key(challenge_id))
    return challenge


def discard_challenge(store: RedisStore, challenge_id: str) -> None:
    store.delete(challenge_key(challenge_id))
    store.delete(_failures_key(challenge_id))
