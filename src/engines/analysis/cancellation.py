"""
Cooperative cancellation for pipeline runs.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from redis.exceptions import RedisError

from src.core.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """
    Set once, observed by the orchestrator before each stage and retry,
    during backoff sleeps, and while a provider call is in flight.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self._watcher: Optional[asyncio.Task] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to `timeout` seconds; True if cancelled meanwhile."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def watch(self, is_requested: Callable[[], Awaitable[bool]], interval_ms: int):
        """Poll an external cancellation flag (used by worker processes)."""

        async def poll():
            while not self._event.is_set():
                try:
                    if await is_requested():
                        logger.info("cancellation_flag_observed")
                        self.cancel()
                        return
                except (RedisError, OSError) as e:
                    logger.warning("cancellation_poll_failed", error=str(e))
                await asyncio.sleep(interval_ms / 1000)

        self._watcher = asyncio.create_task(poll())
        return self._watcher

    async def stop_watching(self):
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
        self._watcher = None
