"""
gateway/timing.py — Clock, Delays and the Identify Limiter

All gateway timing goes through a Clock so schedules can be driven
deterministically in tests. Delays are fixed (no backoff, no jitter).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Protocol


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by time.monotonic and asyncio.sleep."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(frozen=True)
class ShardTimings:
    """
    Fixed gateway delays, in seconds.

    identify_spacing   minimum gap between one shard becoming ready and the
                       next shard's identify
    error_reconnect    transport error → reconnect
    close_reconnect    server-initiated close → reconnect
    invalid_session    op 9 → fresh identify
    """
    identify_spacing: float = 5.0
    error_reconnect: float = 5.0
    close_reconnect: float = 10.0
    invalid_session: float = 5.0


class IdentifyLimiter:
    """
    The shared "last ready" clock for one ShardManager.

    Only the manager records readiness; connections read the delay they
    owe before sending identify.
    """

    def __init__(self, clock: Clock, spacing: float = 5.0):
        self._clock = clock
        self._spacing = spacing
        self._last_ready: Optional[float] = None

    @property
    def last_ready(self) -> Optional[float]:
        return self._last_ready

    def record_ready(self, ready_at: float) -> None:
        if self._last_ready is None or ready_at > self._last_ready:
            self._last_ready = ready_at

    def delay(self) -> float:
        """Seconds to wait before the next identify may be sent."""
        if self._last_ready is None:
            return 0.0
        elapsed = self._clock.monotonic() - self._last_ready
        return max(0.0, self._spacing - elapsed)
