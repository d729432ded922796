from __future__ import annotations

import json
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any

import redis

from authcore.settings import get_settings

logger = logging.getLogger("authcore.store")


class StoreUnavailableError(Exception):
    """The counter/cache store could not answer within its timeout."""


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Type {type(value)} not serializable")


def dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default)


class RedisStore:
    """Counter/cache store used by the sign-in core.

    Every method either answers or raises StoreUnavailableError; nothing here
    turns an outage into an empty result.
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float) -> RedisStore:
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def _fail(self, operation: str, key: str, exc: Exception) -> StoreUnavailableError:
        logger.error(
            "store_operation_failed",
            extra={"operation": operation, "key": key, "error": exc.__class__.__name__},
        )
        return StoreUnavailableError(f"{operation} failed for {key}")

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        """Increment `key`, starting its TTL on first use, in one MULTI/EXEC round trip.

        Returns (count, remaining_ttl_seconds).
        """
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.set(key, 0, ex=ttl_seconds, nx=True)
            pipe.incr(key)
            pipe.ttl(key)
            _, count, remaining = pipe.execute()
        except redis.RedisError as exc:
            raise self._fail("incr_with_expiry", key, exc) from exc
        if remaining is None or int(remaining) < 0:
            remaining = ttl_seconds
        return int(count), int(remaining)

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            raise self._fail("get", key, exc) from exc

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.set(key, value, ex=max(1, int(ttl_seconds)))
        except redis.RedisError as exc:
            raise self._fail("set", key, exc) from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise self._fail("delete", key, exc) from exc

    def exists(self, key: str) -> bool:
        try:
            return bool(self._client.exists(key))
        except redis.RedisError as exc:
            raise self._fail("exists", key, exc) from exc

    def ttl(self, key: str) -> int:
        try:
            remaining = self._client.ttl(key)
        except redis.RedisError as exc:
            raise self._fail("ttl", key, exc) from exc
        return int(remaining) if remaining is not None else -2

    def take(self, key: str) -> str | None:
        """Atomically read and delete `key`; only one caller ever sees the value."""
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.get(key)
            pipe.delete(key)
            value, _ = pipe.execute()
        except redis.RedisError as exc:
            raise self._fail("take", key, exc) from exc
        return value

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False


@lru_cache
def get_store() -> RedisStore:
    settings = get_settings()
    return RedisStore.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )
