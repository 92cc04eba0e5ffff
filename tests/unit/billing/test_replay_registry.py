from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.modules.billing.domain.billing.replay_registry import (
    InMemoryReplayRegistry,
    UpstashReplayRegistry,
    build_replay_registry,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_in_memory_claim_is_first_writer_wins() -> None:
    registry = InMemoryReplayRegistry(ttl_seconds=60)

    assert await registry.claim("PAYSTACK:evt-1") is True
    assert await registry.claim("PAYSTACK:evt-1") is False
    assert await registry.contains("PAYSTACK:evt-1") is True
    assert await registry.contains("FLW:evt-1") is False


@pytest.mark.asyncio
async def test_in_memory_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    registry = InMemoryReplayRegistry(ttl_seconds=60, clock=clock)
    await registry.claim("k")

    clock.now += 59
    assert await registry.contains("k") is True

    clock.now += 1
    assert await registry.contains("k") is False
    assert len(registry) == 0
    assert await registry.claim("k") is True


@pytest.mark.asyncio
async def test_in_memory_release_and_clear() -> None:
    registry = InMemoryReplayRegistry(ttl_seconds=60)
    await registry.claim("a")
    await registry.claim("b")

    await registry.release("a")
    await registry.release("missing")
    assert await registry.contains("a") is False
    assert await registry.claim("a") is True

    await registry.clear()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_upstash_claim_uses_set_nx_with_ttl() -> None:
    client = MagicMock()
    client.set = AsyncMock(side_effect=[True, None])
    registry = UpstashReplayRegistry(client, ttl_seconds=600)

    assert await registry.claim("PAYSTACK:evt-1") is True
    assert await registry.claim("PAYSTACK:evt-1") is False
    client.set.assert_awaited_with("webhook:replay:PAYSTACK:evt-1", "1", nx=True, ex=600)


@pytest.mark.asyncio
async def test_upstash_contains_and_release() -> None:
    client = MagicMock()
    client.exists = AsyncMock(return_value=1)
    client.delete = AsyncMock(return_value=1)
    registry = UpstashReplayRegistry(client, ttl_seconds=600)

    assert await registry.contains("FLW#charge.completed:1") is True
    client.exists.assert_awaited_once_with("webhook:replay:FLW#charge.completed:1")

    await registry.release("FLW:evt-1")
    client.delete.assert_awaited_once_with("webhook:replay:FLW:evt-1")


@pytest.mark.asyncio
async def test_upstash_fails_open_on_redis_errors() -> None:
    client = MagicMock()
    client.set = AsyncMock(side_effect=RuntimeError("redis down"))
    client.exists = AsyncMock(side_effect=RuntimeError("redis down"))
    client.delete = AsyncMock(side_effect=RuntimeError("redis down"))
    registry = UpstashReplayRegistry(client, ttl_seconds=600)

    assert await registry.claim("k") is True
    assert await registry.contains("k") is False
    await registry.release("k")


@pytest.mark.asyncio
async def test_upstash_clear_scans_prefixed_keys() -> None:
    client = MagicMock()
    client.scan = AsyncMock(
        side_effect=[
            (7, ["webhook:replay:a", "webhook:replay:b"]),
            (0, []),
        ]
    )
    client.delete = AsyncMock(return_value=2)
    registry = UpstashReplayRegistry(client, ttl_seconds=600)

    await registry.clear()

    assert client.scan.await_count == 2
    client.scan.assert_any_await(0, match="webhook:replay:*", count=100)
    client.delete.assert_awaited_once_with("webhook:replay:a", "webhook:replay:b")


def test_build_replay_registry_defaults_to_memory(settings) -> None:
    registry = build_replay_registry(settings)
    assert isinstance(registry, InMemoryReplayRegistry)
    assert registry.ttl_seconds == settings.WEBHOOK_REPLAY_TTL_SECONDS


def test_build_replay_registry_uses_supplied_client(settings) -> None:
    registry = build_replay_registry(settings, client=MagicMock())
    assert isinstance(registry, UpstashReplayRegistry)
