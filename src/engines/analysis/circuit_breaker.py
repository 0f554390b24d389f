"""
Circuit Breaker Registry

Per-provider health gate shared by every run.

States:
- closed:    normal operation, calls pass through
- open:      too many consecutive health failures, calls fail fast
- half-open: cool-down elapsed, exactly one trial call is admitted

ProviderHealth lives in a BreakerStore. Every update is a read-modify-write
guarded by the record's `version`: the write only lands if nobody else
changed the record in between, otherwise the update is re-applied to the
fresh state. Racing runs therefore never lose increments.
"""

import json
import time
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from redis.exceptions import WatchError

from src.core.config import settings
from src.core.logging import get_logger
from src.core.metrics import record_breaker_transition, record_breaker_conflict
from src.engines.analysis.schemas import FailureKind

logger = get_logger(__name__)

# Failure kinds that say something about provider health
HEALTH_FAILURE_KINDS = {FailureKind.TRANSIENT, FailureKind.RATE_LIMITED}

MAX_CAS_ATTEMPTS = 32


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class ProviderHealth:
    provider: str
    cooldown_ms: int
    consecutive_failures: int = 0
    window_started_at: Optional[float] = None
    opened_at: Optional[float] = None
    state: str = BreakerState.CLOSED.value
    trial_in_flight: bool = False
    trial_started_at: Optional[float] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw) -> "ProviderHealth":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return cls(**json.loads(raw))


# =============================================================================
# Stores
# =============================================================================

class BreakerStore(ABC):
    """Shared storage for ProviderHealth with compare-and-swap writes."""

    @abstractmethod
    async def load(self, provider: str) -> Optional[ProviderHealth]:
        ...

    @abstractmethod
    async def compare_and_swap(self, expected_version: int, health: ProviderHealth) -> bool:
        """Store `health` only if the stored version is still `expected_version`."""
        ...

    @abstractmethod
    async def providers(self) -> List[str]:
        ...


class InMemoryBreakerStore(BreakerStore):
    """Single-process store guarded by a lock."""

    def __init__(self):
        self._records: Dict[str, ProviderHealth] = {}
        self._lock = threading.Lock()

    async def load(self, provider: str) -> Optional[ProviderHealth]:
        with self._lock:
            record = self._records.get(provider)
            return replace(record) if record else None

    async def compare_and_swap(self, expected_version: int, health: ProviderHealth) -> bool:
        with self._lock:
            current = self._records.get(health.provider)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._records[health.provider] = replace(health)
            return True

    async def providers(self) -> List[str]:
        with self._lock:
            return sorted(self._records)


class RedisBreakerStore(BreakerStore):
    """Redis store using WATCH/MULTI optimistic transactions."""

    def __init__(self, redis_client, prefix: str = "breaker"):
        self.redis = redis_client
        self.prefix = prefix
        self.index_key = f"{prefix}:providers"

    def _key(self, provider: str) -> str:
        return f"{self.prefix}:{provider}"

    async def load(self, provider: str) -> Optional[ProviderHealth]:
        raw = await self.redis.get(self._key(provider))
        return ProviderHealth.from_json(raw) if raw else None

    async def compare_and_swap(self, expected_version: int, health: ProviderHealth) -> bool:
        key = self._key(health.provider)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                current_version = ProviderHealth.from_json(raw).version if raw else 0
                if current_version != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, health.to_json())
                pipe.sadd(self.index_key, health.provider)
                await pipe.execute()
                return True
            except WatchError:
                return False

    async def providers(self) -> List[str]:
        members = await self.redis.smembers(self.index_key)
        return sorted(m.decode("utf-8") if isinstance(m, bytes) else m for m in members)


# =============================================================================
# Registry
# =============================================================================

class CircuitBreakerRegistry:
    """
    Per-provider circuit breakers backed by a shared store.

    Args:
        store: BreakerStore holding ProviderHealth records
        failure_threshold: consecutive health failures that open the breaker
        window_ms: failures older than this no longer count
        cooldown_ms: initial open duration
        max_cooldown_ms: bound for the doubled cool-down after a failed trial
        clock: returns the current time in seconds
        providers: providers reported by all_states() even before first use
    """

    def __init__(
        self,
        store: BreakerStore,
        failure_threshold: Optional[int] = None,
        window_ms: Optional[int] = None,
        cooldown_ms: Optional[int] = None,
        max_cooldown_ms: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        providers: Iterable[str] = (),
    ):
        self.store = store
        self.failure_threshold = failure_threshold or settings.BREAKER_FAILURE_THRESHOLD
        self.window_ms = window_ms or settings.BREAKER_WINDOW_MS
        self.cooldown_ms = cooldown_ms or settings.BREAKER_COOLDOWN_MS
        self.max_cooldown_ms = max(max_cooldown_ms or settings.BREAKER_MAX_COOLDOWN_MS, self.cooldown_ms)
        self.clock = clock
        self.known_providers = list(providers)

    def _fresh(self, provider: str) -> ProviderHealth:
        return ProviderHealth(provider=provider, cooldown_ms=self.cooldown_ms)

    def _cooled_down(self, health: ProviderHealth, now: float) -> bool:
        return health.opened_at is None or (now - health.opened_at) * 1000 >= health.cooldown_ms

    async def _update(
        self,
        provider: str,
        mutate: Callable[[ProviderHealth, float], Any]
    ) -> Tuple[ProviderHealth, Any]:
        """Apply `mutate` atomically, retrying on version conflicts."""
        for _ in range(MAX_CAS_ATTEMPTS):
            current = await self.store.load(provider) or self._fresh(provider)
            updated = replace(current)
            result = mutate(updated, self.clock())

            if updated == current:
                return current, result

            updated.version = current.version + 1
            if await self.store.compare_and_swap(current.version, updated):
                if updated.state != current.state:
                    self._log_transition(current, updated)
                return updated, result

            record_breaker_conflict(provider)

        raise RuntimeError(f"Breaker state for '{provider}' kept changing; gave up after {MAX_CAS_ATTEMPTS} attempts")

    def _log_transition(self, before: ProviderHealth, after: ProviderHealth):
        record_breaker_transition(after.provider, before.state, after.state)

        if after.state == BreakerState.OPEN.value:
            event = "circuit_breaker_reopened" if before.state == BreakerState.HALF_OPEN.value else "circuit_breaker_opened"
            logger.warning(
                event,
                provider=after.provider,
                consecutive_failures=after.consecutive_failures,
                cooldown_ms=after.cooldown_ms
            )
        elif after.state == BreakerState.HALF_OPEN.value:
            logger.info("circuit_breaker_half_open", provider=after.provider)
        else:
            logger.info(
                "circuit_breaker_closed",
                provider=after.provider,
                message="Provider recovered" if before.state != BreakerState.CLOSED.value else "Reset"
            )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def acquire(self, provider: str) -> bool:
        """Admit a call, claiming the half-open trial slot when applicable."""

        def mutate(health: ProviderHealth, now: float) -> bool:
            if health.state == BreakerState.CLOSED.value:
                return True

            if health.state == BreakerState.OPEN.value:
                if not self._cooled_down(health, now):
                    return False
                health.state = BreakerState.HALF_OPEN.value
                health.trial_in_flight = True
                health.trial_started_at = now
                return True

            # half-open: one trial at a time; an abandoned trial frees the slot
            # after a full cool-down
            stale = (
                health.trial_started_at is not None
                and (now - health.trial_started_at) * 1000 >= health.cooldown_ms
            )
            if health.trial_in_flight and not stale:
                return False
            health.trial_in_flight = True
            health.trial_started_at = now
            return True

        _, admitted = await self._update(provider, mutate)
        return admitted

    async def record_outcome(
        self,
        provider: str,
        success: bool,
        kind: Optional[FailureKind] = None
    ) -> ProviderHealth:
        """Record a call outcome. Only transient/rate-limited failures affect health."""

        def mutate(health: ProviderHealth, now: float):
            if success:
                health.consecutive_failures = 0
                health.window_started_at = None
                if health.state == BreakerState.HALF_OPEN.value:
                    health.state = BreakerState.CLOSED.value
                    health.opened_at = None
                    health.cooldown_ms = self.cooldown_ms
                    health.trial_in_flight = False
                    health.trial_started_at = None
                return

            counts = kind is None or kind in HEALTH_FAILURE_KINDS

            if health.state == BreakerState.HALF_OPEN.value:
                health.trial_in_flight = False
                health.trial_started_at = None
                if counts:
                    health.state = BreakerState.OPEN.value
                    health.opened_at = now
                    health.cooldown_ms = min(health.cooldown_ms * 2, self.max_cooldown_ms)
                    health.consecutive_failures += 1
                return

            if not counts or health.state == BreakerState.OPEN.value:
                return

            window_expired = (
                health.window_started_at is None
                or (now - health.window_started_at) * 1000 > self.window_ms
            )
            if window_expired:
                health.window_started_at = now
                health.consecutive_failures = 1
            else:
                health.consecutive_failures += 1

            if health.consecutive_failures >= self.failure_threshold:
                health.state = BreakerState.OPEN.value
                health.opened_at = now

        health, _ = await self._update(provider, mutate)
        return health

    async def release(self, provider: str):
        """Give back a claimed trial slot without judging provider health."""

        def mutate(health: ProviderHealth, now: float):
            if health.state == BreakerState.HALF_OPEN.value:
                health.trial_in_flight = False
                health.trial_started_at = None

        await self._update(provider, mutate)

    async def is_open(self, provider: str) -> bool:
        health = await self.snapshot(provider)
        return health.state == BreakerState.OPEN.value and not self._cooled_down(health, self.clock())

    async def snapshot(self, provider: str) -> ProviderHealth:
        return await self.store.load(provider) or self._fresh(provider)

    async def reset(self, provider: str) -> ProviderHealth:
        """Force a provider back to closed."""

        def mutate(health: ProviderHealth, now: float):
            version = health.version
            fresh = self._fresh(provider)
            for name, value in asdict(fresh).items():
                setattr(health, name, value)
            health.version = version

        health, _ = await self._update(provider, mutate)
        logger.info("circuit_breaker_reset", provider=provider)
        return health

    async def all_states(self) -> Dict[str, ProviderHealth]:
        names = set(self.known_providers) | set(await self.store.providers())
        return {name: await self.snapshot(name) for name in sorted(names)}
