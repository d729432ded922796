from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass

from authcore.settings import get_settings
from authcore.store import RedisStore

RATE_KEY_PREFIX = "rate:signin:"


@dataclass(frozen=True, slots=True)
class RateLimitStatus:
    attempt_count: int
    remaining_ttl: int
    limit: int

    @property
    def exceeded(self) -> bool:
        return self.attempt_count > self.limit

    @property
    def retry_after_minutes(self) -> int:
        return max(1, math.ceil(self.remaining_ttl / 60))


def rate_limit_key(ip: str, identifier: str) -> str:
    normalized = f"{ip.strip()}|{identifier.strip().lower()}"
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return f"{RATE_KEY_PREFIX}{digest}"


def check_rate_limit(store: RedisStore, *, ip: str, identifier: str) -> RateLimitStatus:
    """Count this attempt against (ip, identifier).

    StoreUnavailableError propagates: an unreachable store is never treated as
    "not limited".
    """
    settings = get_settings()
    count, remaining = store.incr_with_expiry(
        rate_limit_key(ip, identifier),
        settings.rate_limit_window_seconds,
    )
    return RateLimitStatus(
        attempt_count=count,
        remaining_ttl=remaining,
        limit=settings.rate_limit_max_attempts,
    )


def clear_rate_limit(store: RedisStore, *, ip: str, identifier: str) -> None:
    store.delete(rate_limit_key(ip, identifier))
