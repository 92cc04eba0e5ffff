"""
Short-lived replay registry (first idempotency tier).

Keys are claimed atomically; a claimed key stays marked until its TTL expires or
it is released after a processing failure so the provider can retry. This tier is
a fast path only: the durable `webhook_events` table is the source of truth.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional, Protocol

import structlog
from upstash_redis.asyncio import Redis as AsyncRedis

from app.shared.core.config import Settings

logger = structlog.get_logger()

KEY_PREFIX = "webhook:replay"


class ReplayRegistry(Protocol):
    async def claim(self, key: str) -> bool:
        """Mark `key` as seen. Returns False when it was already marked."""
        ...

    async def contains(self, key: str) -> bool: ...

    async def release(self, key: str) -> None: ...

    async def clear(self) -> None: ...


class InMemoryReplayRegistry:
    """Process-local registry with lazy expiry."""

    def __init__(
        self,
        ttl_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._expires_at: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _purge(self, now: float) -> None:
        expired = [key for key, deadline in self._expires_at.items() if deadline <= now]
        for key in expired:
            del self._expires_at[key]

    async def claim(self, key: str) -> bool:
        async with self._lock:
            now = self.clock()
            self._purge(now)
            if key in self._expires_at:
                return False
            self._expires_at[key] = now + self.ttl_seconds
            return True

    async def contains(self, key: str) -> bool:
        async with self._lock:
            self._purge(self.clock())
            return key in self._expires_at

    async def release(self, key: str) -> None:
        async with self._lock:
            self._expires_at.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._expires_at.clear()

    def __len__(self) -> int:
        return len(self._expires_at)


class UpstashReplayRegistry:
    """
    Registry shared across workers via Upstash Redis (`SET NX EX`).

    Redis errors fail open: the claim is granted and the durable tier decides.
    """

    def __init__(self, client: AsyncRedis, ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(key: str) -> str:
        return f"{KEY_PREFIX}:{key}"

    async def claim(self, key: str) -> bool:
        try:
            result = await self.client.set(
                self._key(key), "1", nx=True, ex=self.ttl_seconds
            )
        except Exception as exc:
            logger.warning("replay_registry_claim_error", key=key, error=str(exc))
            return True
        return bool(result)

    async def contains(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(self._key(key)))
        except Exception as exc:
            logger.warning("replay_registry_lookup_error", key=key, error=str(exc))
            return False

    async def release(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except Exception as exc:
            logger.warning("replay_registry_release_error", key=key, error=str(exc))

    async def clear(self) -> None:
        cursor = 0
        try:
            while True:
                next_cursor, keys = await self.client.scan(
                    cursor, match=f"{KEY_PREFIX}:*", count=100
                )
                if keys:
                    await self.client.delete(*keys)
                cursor = int(next_cursor)
                if cursor == 0:
                    break
        except Exception as exc:
            logger.warning("replay_registry_clear_error", error=str(exc))


def build_replay_registry(
    settings: Settings, client: Optional[AsyncRedis] = None
) -> ReplayRegistry:
    """Upstash-backed when credentials are configured, in-memory otherwise."""
    ttl = settings.WEBHOOK_REPLAY_TTL_SECONDS
    if client is None and settings.UPSTASH_REDIS_URL and settings.UPSTASH_REDIS_TOKEN:
        client = AsyncRedis(
            url=settings.UPSTASH_REDIS_URL, token=settings.UPSTASH_REDIS_TOKEN
        )
    if client is not None:
        logger.info("replay_registry_configured", backend="upstash", ttl_seconds=ttl)
        return UpstashReplayRegistry(client, ttl)

    logger.info("replay_registry_configured", backend="memory", ttl_seconds=ttl)
    return InMemoryReplayRegistry(ttl)
