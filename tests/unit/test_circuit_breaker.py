import asyncio

import pytest

from src.engines.analysis.circuit_breaker import (
    BreakerState,
    CircuitBreakerRegistry,
    InMemoryBreakerStore,
    ProviderHealth,
)
from src.engines.analysis.schemas import FailureKind


async def trip(registry, provider="openai", times=3):
    for _ in range(times):
        await registry.record_outcome(provider, success=False, kind=FailureKind.TRANSIENT)


@pytest.mark.asyncio
async def test_closed_breaker_admits_calls(registry):
    assert await registry.acquire("openai")
    assert (await registry.snapshot("openai")).state == BreakerState.CLOSED.value


@pytest.mark.asyncio
async def test_opens_after_threshold_health_failures(registry):
    await trip(registry, times=2)
    assert (await registry.snapshot("openai")).state == BreakerState.CLOSED.value

    await trip(registry, times=1)

    health = await registry.snapshot("openai")
    assert health.state == BreakerState.OPEN.value
    assert health.consecutive_failures == 3
    assert await registry.is_open("openai")
    assert not await registry.acquire("openai")


@pytest.mark.asyncio
async def test_non_health_failures_do_not_trip(registry):
    for kind in (FailureKind.AUTH_CONFIG, FailureKind.PERMANENT, FailureKind.MALFORMED_RESPONSE) * 2:
        await registry.record_outcome("openai", success=False, kind=kind)

    health = await registry.snapshot("openai")
    assert health.state == BreakerState.CLOSED.value
    assert health.consecutive_failures == 0


@pytest.mark.asyncio
async def test_success_resets_failure_count(registry):
    await trip(registry, times=2)
    await registry.record_outcome("openai", success=True)
    await trip(registry, times=2)

    assert (await registry.snapshot("openai")).state == BreakerState.CLOSED.value


@pytest.mark.asyncio
async def test_failures_outside_window_start_a_new_count(registry, clock):
    await trip(registry, times=2)
    clock.advance(61)
    await trip(registry, times=1)

    health = await registry.snapshot("openai")
    assert health.state == BreakerState.CLOSED.value
    assert health.consecutive_failures == 1


@pytest.mark.asyncio
async def test_half_open_admits_single_trial_after_cooldown(registry, clock):
    await trip(registry)
    clock.advance(29)
    assert not await registry.acquire("openai")

    clock.advance(1)
    assert await registry.acquire("openai")
    assert (await registry.snapshot("openai")).state == BreakerState.HALF_OPEN.value
    assert not await registry.acquire("openai")


@pytest.mark.asyncio
async def test_successful_trial_closes_breaker(registry, clock):
    await trip(registry)
    clock.advance(30)
    await registry.acquire("openai")

    health = await registry.record_outcome("openai", success=True)

    assert health.state == BreakerState.CLOSED.value
    assert health.cooldown_ms == 30_000
    assert not health.trial_in_flight
    assert await registry.acquire("openai")


@pytest.mark.asyncio
async def test_failed_trial_reopens_with_doubled_cooldown(registry, clock):
    await trip(registry)
    clock.advance(30)
    await registry.acquire("openai")

    health = await registry.record_outcome("openai", success=False, kind=FailureKind.RATE_LIMITED)

    assert health.state == BreakerState.OPEN.value
    assert health.cooldown_ms == 60_000
    clock.advance(30)
    assert not await registry.acquire("openai")
    clock.advance(30)
    assert await registry.acquire("openai")


@pytest.mark.asyncio
async def test_cooldown_is_bounded(registry, clock):
    await trip(registry)
    for _ in range(5):
        clock.advance(200)
        assert await registry.acquire("openai")
        await registry.record_outcome("openai", success=False, kind=FailureKind.TRANSIENT)

    assert (await registry.snapshot("openai")).cooldown_ms == 120_000


@pytest.mark.asyncio
async def test_released_trial_frees_the_slot(registry, clock):
    await trip(registry)
    clock.advance(30)
    assert await registry.acquire("openai")

    await registry.release("openai")

    assert await registry.acquire("openai")


@pytest.mark.asyncio
async def test_abandoned_trial_is_freed_after_cooldown(registry, clock):
    await trip(registry)
    clock.advance(30)
    assert await registry.acquire("openai")

    clock.advance(30)

    assert await registry.acquire("openai")


@pytest.mark.asyncio
async def test_reset_forces_closed(registry):
    await trip(registry)

    health = await registry.reset("openai")

    assert health.state == BreakerState.CLOSED.value
    assert health.consecutive_failures == 0
    assert await registry.acquire("openai")


@pytest.mark.asyncio
async def test_breakers_are_per_provider(registry):
    await trip(registry, "openai")

    assert not await registry.acquire("openai")
    assert await registry.acquire("anthropic")


@pytest.mark.asyncio
async def test_all_states_lists_known_and_used_providers(clock):
    registry = CircuitBreakerRegistry(InMemoryBreakerStore(), clock=clock, providers=["google-vision"])
    await registry.record_outcome("openai", success=False, kind=FailureKind.TRANSIENT)

    states = await registry.all_states()

    assert sorted(states) == ["google-vision", "openai"]
    assert states["openai"].consecutive_failures == 1


class ConflictingStore(InMemoryBreakerStore):
    """Simulates another process writing between our read and our swap."""

    def __init__(self, conflicts: int, clock):
        super().__init__()
        self.conflicts = conflicts
        self.clock = clock
        self.swaps = 0

    async def compare_and_swap(self, expected_version, health):
        self.swaps += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            current = await self.load(health.provider) or ProviderHealth(health.provider, cooldown_ms=30_000)
            current.consecutive_failures += 1
            current.window_started_at = current.window_started_at or self.clock()
            await super().compare_and_swap(current.version, ProviderHealth(**{
                **current.to_dict(), "version": current.version + 1
            }))
            return False
        return await super().compare_and_swap(expected_version, health)


@pytest.mark.asyncio
async def test_cas_conflicts_are_retried_without_losing_updates(clock):
    store = ConflictingStore(conflicts=2, clock=clock)
    registry = CircuitBreakerRegistry(store, failure_threshold=3, clock=clock)

    health = await registry.record_outcome("openai", success=False, kind=FailureKind.TRANSIENT)

    assert store.swaps == 3
    assert health.consecutive_failures == 3
    assert health.state == BreakerState.OPEN.value
    assert health.version == 3


@pytest.mark.asyncio
async def test_concurrent_outcomes_are_all_counted(clock):
    registry = CircuitBreakerRegistry(InMemoryBreakerStore(), failure_threshold=50, clock=clock)

    await asyncio.gather(*[
        registry.record_outcome("openai", success=False, kind=FailureKind.TRANSIENT)
        for _ in range(20)
    ])

    assert (await registry.snapshot("openai")).consecutive_failures == 20
