from __future__ import annotations

import unittest

from authcore.services.rate_limiter import check_rate_limit, clear_rate_limit, rate_limit_key
from authcore.settings import get_settings
from authcore.store import StoreUnavailableError


class _FakeStore:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now
        self._values: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _purge(self, key: str) -> None:
        expires = self._expiry.get(key)
        if expires is not None and expires <= self.now:
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        self._purge(key)
        if key not in self._values:
            self._values[key] = "0"
            self._expiry[key] = self.now + ttl_seconds
        count = int(self._values[key]) + 1
        self._values[key] = str(count)
        return count, self.ttl(key)

    def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self._values:
            return -2
        return int(self._expiry[key] - self.now)

    def exists(self, key: str) -> bool:
        self._purge(key)
        return key in self._values

    def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._expiry.pop(key, None)


class _DownStore:
    def incr_with_expiry(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        raise StoreUnavailableError("incr_with_expiry failed")


class RateLimiterTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()

    def tearDown(self) -> None:
        get_settings.cache_clear()

    def test_sixth_attempt_in_window_is_exceeded(self) -> None:
        store = _FakeStore()
        statuses = [
            check_rate_limit(store, ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]
            for _ in range(6)
        ]

        self.assertEqual([status.attempt_count for status in statuses], [1, 2, 3, 4, 5, 6])
        self.assertEqual([status.exceeded for status in statuses], [False] * 5 + [True])
        self.assertEqual(statuses[-1].remaining_ttl, 15 * 60)
        self.assertEqual(statuses[-1].retry_after_minutes, 15)

    def test_retry_after_rounds_up_to_whole_minutes(self) -> None:
        store = _FakeStore()
        check_rate_limit(store, ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]
        store.now += 15 * 60 - 61

        status = check_rate_limit(store, ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]

        self.assertEqual(status.remaining_ttl, 61)
        self.assertEqual(status.retry_after_minutes, 2)

    def test_window_expiry_starts_a_fresh_count(self) -> None:
        store = _FakeStore()
        for _ in range(6):
            check_rate_limit(store, ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]
        store.now += 15 * 60

        status = check_rate_limit(store, ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]

        self.assertEqual(status.attempt_count, 1)
        self.assertFalse(status.exceeded)

    def test_key_is_scoped_to_ip_and_case_insensitive_identifier(self) -> None:
        self.assertEqual(
            rate_limit_key("203.0.113.7", "Ada@Example.com"),
            rate_limit_key("203.0.113.7", "ada@example.com"),
        )
        self.assertNotEqual(
            rate_limit_key("203.0.113.7", "ada@example.com"),
            rate_limit_key("198.51.100.2", "ada@example.com"),
        )
        self.assertNotIn("ada@example.com", rate_limit_key("203.0.113.7", "ada@example.com"))

    def test_clear_resets_the_counter(self) -> None:
        store = _FakeStore()
        for _ in range(4):
            check_rate_limit(store, ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]

        clear_rate_limit(store, ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]

        self.assertFalse(store.exists(rate_limit_key("203.0.113.7", "ada@example.com")))
        status = check_rate_limit(store, ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]
        self.assertEqual(status.attempt_count, 1)

    def test_unavailable_store_is_not_treated_as_allowed(self) -> None:
        with self.assertRaises(StoreUnavailableError):
            check_rate_limit(_DownStore(), ip="203.0.113.7", identifier="ada@example.com")  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
