"""
Outbound rate limiting for mass fan-out.

Telegram rejects bots that exceed ~30 messages per second. Broadcast jobs call
``wait()`` before every send; the limiter spaces calls at a fixed interval.
"""
import asyncio
import logging
from typing import Callable, Optional

from vpnshop.core.config import settings

logger = logging.getLogger(__name__)


class RateLimitedDispatcher:
    """Fixed-interval gate. Each ``wait()`` returns no earlier than one interval after the previous one."""

    def __init__(self, interval_ms: int = 50, clock: Optional[Callable[[], float]] = None):
        """
        Args:
            interval_ms: Minimum spacing between consecutive sends
            clock: Monotonic time source (seconds), defaults to the running loop's clock
        """
        self.interval = max(interval_ms, 0) / 1000.0
        self._clock = clock
        self._next_slot: Optional[float] = None
        self._lock = asyncio.Lock()

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def wait(self) -> None:
        async with self._lock:
            now = self._now()
            if self._next_slot is not None and now < self._next_slot:
                await asyncio.sleep(self._next_slot - now)
                now = self._next_slot
            self._next_slot = now + self.interval

    def reset(self) -> None:
        self._next_slot = None


def build_broadcast_limiter() -> RateLimitedDispatcher:
    return RateLimitedDispatcher(interval_ms=settings.BROADCAST_INTERVAL_MS)
