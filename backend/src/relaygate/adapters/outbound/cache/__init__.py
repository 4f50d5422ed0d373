"""State store adapters implementing StateStore.

``InMemoryStateStore`` is the single-instance baseline: circuit and rate-limit
state live in this process only.  ``RedisStateStore`` shares the same state
across instances through atomic Redis commands (HINCRBY, SET NX PX).
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

import redis.asyncio as redis
import structlog

from relaygate.ports.outbound import StateStore

logger = structlog.get_logger(__name__)


def _encode(fields: dict[str, Any]) -> tuple[dict[str, str], list[str]]:
    """Split into (values to write, fields to remove); ``None`` means remove."""
    to_set: dict[str, str] = {}
    to_clear: list[str] = []
    for name, value in fields.items():
        if value is None:
            to_clear.append(name)
        elif isinstance(value, bool):
            to_set[name] = "1" if value else "0"
        else:
            to_set[name] = str(value)
    return to_set, to_clear


class InMemoryStateStore(StateStore):
    """Process-local store; every operation runs under one lock with no await inside."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._hashes: dict[str, dict[str, str]] = {}
        self._claims: dict[str, tuple[str, float]] = {}
        self._clock = clock
        self._lock = threading.Lock()

    async def get(self, key: str) -> dict[str, str] | None:
        with self._lock:
            data = self._hashes.get(key)
            return dict(data) if data else None

    async def set_fields(self, key: str, fields: dict[str, Any]) -> None:
        to_set, to_clear = _encode(fields)
        with self._lock:
            data = self._hashes.setdefault(key, {})
            data.update(to_set)
            for name in to_clear:
                data.pop(name, None)

    async def increment(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            data = self._hashes.setdefault(key, {})
            value = int(data.get(field, "0")) + amount
            data[field] = str(value)
            return value

    async def set_if_absent(self, key: str, value: str, *, ttl_seconds: float) -> bool:
        with self._lock:
            now = self._clock()
            held = self._claims.get(key)
            if held is not None and held[1] > now:
                return False
            self._claims[key] = (value, now + ttl_seconds)
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._hashes.pop(key, None)
            self._claims.pop(key, None)


class RedisStateStore(StateStore):
    """Async Redis store for deployments that share circuit state."""

    def __init__(self, url: str, max_connections: int = 50, *, prefix: str = "relaygate:") -> None:
        self._prefix = prefix
        self._pool = redis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )
        self._client = redis.Redis(connection_pool=self._pool)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> dict[str, str] | None:
        data = await self._client.hgetall(self._k(key))
        return data or None

    async def set_fields(self, key: str, fields: dict[str, Any]) -> None:
        to_set, to_clear = _encode(fields)
        async with self._client.pipeline(transaction=True) as pipe:
            if to_set:
                pipe.hset(self._k(key), mapping=to_set)
            if to_clear:
                pipe.hdel(self._k(key), *to_clear)
            await pipe.execute()

    async def increment(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._client.hincrby(self._k(key), field, amount))

    async def set_if_absent(self, key: str, value: str, *, ttl_seconds: float) -> bool:
        claimed = await self._client.set(
            self._k(key), value, nx=True, px=max(1, int(ttl_seconds * 1000))
        )
        return bool(claimed)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._k(key))

    async def close(self) -> None:
        await self._client.aclose()
        await self._pool.aclose()

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError as exc:
            logger.error("redis_ping_failed", error=str(exc))
            return False


def create_state_store(url: str = "", max_connections: int = 50) -> StateStore:
    """Redis when a URL is configured, otherwise the in-process store."""
    if not url:
        logger.info("state_store_in_memory")
        return InMemoryStateStore()
    logger.info("state_store_redis", url=url.split("@")[-1])
    return RedisStateStore(url, max_connections)
