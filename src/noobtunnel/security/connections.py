"""Per-IP accounting of admitted control connections."""

from __future__ import annotations

import asyncio
from enum import Enum


class LimitHit(Enum):
    """Which cap stopped an acquisition."""

    PER_IP = "per_ip"
    TOTAL = "total"


class ConnectionTracker:
    """Counts active control connections per source IP.

    An IP's entry disappears once its count drops to zero, and counts never
    go below zero.
    """

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, ip: str) -> int:
        """Increment ip's count and return the new value."""
        async with self._lock:
            count = self._counts.get(ip, 0) + 1
            self._counts[ip] = count
            return count

    async def try_acquire(
        self, ip: str, per_ip_limit: int | None, total_limit: int | None
    ) -> tuple[int, LimitHit | None]:
        """Increment ip's count unless a limit is already reached.

        Returns:
            (count, None) with the new count on success, or (count, hit) with
            the unchanged count and the cap that was reached.
        """
        async with self._lock:
            current = self._counts.get(ip, 0)
            if per_ip_limit is not None and current >= per_ip_limit:
                return current, LimitHit.PER_IP
            if total_limit is not None and sum(self._counts.values()) >= total_limit:
                return current, LimitHit.TOTAL
            self._counts[ip] = current + 1
            return current + 1, None

    async def release(self, ip: str) -> int:
        """Decrement ip's count and return the new value."""
        async with self._lock:
            count = self._counts.get(ip, 0)
            if count > 0:
                count -= 1
            if count == 0:
                self._counts.pop(ip, None)
            else:
                self._counts[ip] = count
            return count

    def count(self, ip: str) -> int:
        return self._counts.get(ip, 0)

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    @property
    def unique_ips(self) -> int:
        return len(self._counts)
