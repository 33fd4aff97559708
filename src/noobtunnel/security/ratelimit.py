"""Fixed window rate limiting for control connections.

Each key gets a window that opens on first contact and lasts
`window_seconds`. Attempts inside the window are counted up to the limit;
once the window has passed, the next attempt opens a new one with a count of
one. Bursts straddling a window boundary can reach twice the nominal rate.

Example:
    limiter = FixedWindowRateLimiter(limit=30)

    result = await limiter.allow("192.168.1.1")
    if not result.allowed:
        writer.close()
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from time import monotonic


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    limit: int = 30
    window_seconds: float = 60.0
    stale_after: float = 300.0


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    reset_after: float
    limit: int


@dataclass
class RateWindow:
    """Attempt count for one key and the time its window closes."""

    count: int
    reset_at: float


@dataclass
class FixedWindowRateLimiter:
    """Per-key fixed window counter.

    Windows are kept in a single map guarded by an asyncio.Lock that is held
    only while the map is read or mutated.
    """

    config: RateLimitConfig = field(default_factory=RateLimitConfig)
    clock: Callable[[], float] = monotonic
    _windows: dict[str, RateWindow] = field(default_factory=dict, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    async def allow(self, key: str) -> RateLimitResult:
        """Count an attempt for key and report whether it is admitted."""
        async with self._lock:
            now = self.clock()
            window = self._windows.get(key)

            if window is None or now > window.reset_at:
                window = RateWindow(count=1, reset_at=now + self.config.window_seconds)
                self._windows[key] = window
                return RateLimitResult(
                    allowed=True,
                    remaining=max(0, self.config.limit - 1),
                    reset_after=self.config.window_seconds,
                    limit=self.config.limit,
                )

            reset_after = window.reset_at - now
            if window.count >= self.config.limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_after=reset_after,
                    limit=self.config.limit,
                )

            window.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=self.config.limit - window.count,
                reset_after=reset_after,
                limit=self.config.limit,
            )

    def peek(self, key: str) -> RateLimitResult:
        """Report whether an attempt for key would be admitted, without counting it."""
        now = self.clock()
        window = self._windows.get(key)
        if window is None or now > window.reset_at:
            return RateLimitResult(
                allowed=True,
                remaining=self.config.limit,
                reset_after=self.config.window_seconds,
                limit=self.config.limit,
            )

        remaining = max(0, self.config.limit - window.count)
        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            reset_after=window.reset_at - now,
            limit=self.config.limit,
        )

    async def prune(self) -> int:
        """Evict windows that closed more than `stale_after` seconds ago.

        Returns:
            Number of evicted entries.
        """
        async with self._lock:
            cutoff = self.clock() - self.config.stale_after
            stale = [key for key, window in self._windows.items() if window.reset_at < cutoff]
            for key in stale:
                del self._windows[key]
            return len(stale)

    async def reset(self, key: str | None = None) -> None:
        """Reset one key, or every key when key is None."""
        async with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def window(self, key: str) -> RateWindow | None:
        """Current window for key, if any."""
        return self._windows.get(key)

    @property
    def entry_count(self) -> int:
        """Number of tracked entries."""
        return len(self._windows)


def create_rate_limiter(
    limit: int,
    window_seconds: float = 60.0,
    stale_after: float = 300.0,
    clock: Callable[[], float] = monotonic,
) -> FixedWindowRateLimiter:
    """Create a rate limiter with the given configuration."""
    config = RateLimitConfig(
        limit=limit,
        window_seconds=window_seconds,
        stale_after=stale_after,
    )
    return FixedWindowRateLimiter(config=config, clock=clock)
