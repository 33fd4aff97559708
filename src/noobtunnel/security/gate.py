"""Admission gate for inbound control connections.

Evaluated once per connection, before any protocol parsing:

1. Security disabled: admit.
2. Source IP on the ban list: reject.
3. Source IP at its active-connection cap: reject.
4. Relay at its total connection cap (when configured): reject.
5. Source IP over its per-minute rate: reject.
6. Relay over its global per-minute rate (when configured): reject.

Rejections are silent on the wire; callers close the connection without a
reply.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from noobtunnel.core.config import ServerConfig, TimeoutConfig
from noobtunnel.core.exceptions import RateLimitedError, SecurityRejectedError, TunnelError
from noobtunnel.security.banlist import BanList
from noobtunnel.security.connections import ConnectionTracker, LimitHit
from noobtunnel.security.ratelimit import FixedWindowRateLimiter, create_rate_limiter

GLOBAL_RATE_KEY = "*"


class RejectReason(Enum):
    """Why the gate turned a connection away."""

    BANNED = "banned"
    IP_CONNECTION_LIMIT = "ip_connection_limit"
    RELAY_FULL = "relay_full"
    RATE_LIMITED = "rate_limited"
    GLOBAL_RATE_LIMITED = "global_rate_limited"


@dataclass
class GateDecision:
    """Outcome of an admission check."""

    admitted: bool
    reason: RejectReason | None = None
    active_connections: int = 0

    def as_error(self) -> TunnelError | None:
        """Map a rejection onto the error taxonomy."""
        if self.reason is None:
            return None
        if self.reason in (RejectReason.RATE_LIMITED, RejectReason.GLOBAL_RATE_LIMITED):
            return RateLimitedError(f"Connection rate limited ({self.reason.value})")
        return SecurityRejectedError(f"Connection rejected ({self.reason.value})")


class SecurityGate:
    """Composes the ban list, connection caps and rate limiters."""

    def __init__(
        self,
        config: ServerConfig,
        timeouts: TimeoutConfig,
        tracker: ConnectionTracker | None = None,
        limiter: FixedWindowRateLimiter | None = None,
        global_limiter: FixedWindowRateLimiter | None = None,
    ) -> None:
        self.enabled = config.security.enabled
        self.max_connections_per_ip = config.security.max_connections_per_ip
        self.max_connections = config.max_connections or None
        self.bans = BanList(config.banned_ips)
        self.tracker = tracker or ConnectionTracker()
        self.limiter = limiter or create_rate_limiter(
            limit=config.security.rate_limit_per_ip,
            window_seconds=timeouts.rate_window_seconds,
            stale_after=timeouts.stale_window_seconds,
        )
        self.global_limiter: FixedWindowRateLimiter | None = global_limiter
        if self.global_limiter is None and config.rate_limit > 0:
            self.global_limiter = create_rate_limiter(
                limit=config.rate_limit,
                window_seconds=timeouts.rate_window_seconds,
                stale_after=timeouts.stale_window_seconds,
            )

    def check(self, ip: str) -> GateDecision:
        """Evaluate ip without counting it or consuming rate budget."""
        if not self.enabled:
            return GateDecision(admitted=True, active_connections=self.tracker.count(ip))

        reason: RejectReason | None = None
        if self.bans.is_banned(ip):
            reason = RejectReason.BANNED
        elif self.tracker.count(ip) >= self.max_connections_per_ip:
            reason = RejectReason.IP_CONNECTION_LIMIT
        elif self.max_connections is not None and self.tracker.total >= self.max_connections:
            reason = RejectReason.RELAY_FULL
        elif not self.limiter.peek(ip).allowed:
            reason = RejectReason.RATE_LIMITED
        elif self.global_limiter is not None and not self.global_limiter.peek(GLOBAL_RATE_KEY).allowed:
            reason = RejectReason.GLOBAL_RATE_LIMITED

        if reason is not None:
            return GateDecision(admitted=False, reason=reason)
        return GateDecision(admitted=True, active_connections=self.tracker.count(ip))

    async def admit(self, ip: str) -> GateDecision:
        """Check ip and, if admitted, count it as an active connection.

        Every admitted connection must later be given back with release().
        """
        if not self.enabled:
            count = await self.tracker.acquire(ip)
            return GateDecision(admitted=True, active_connections=count)

        decision = self.check(ip)
        if not decision.admitted:
            return decision

        if not (await self.limiter.allow(ip)).allowed:
            return GateDecision(admitted=False, reason=RejectReason.RATE_LIMITED)

        if self.global_limiter is not None:
            if not (await self.global_limiter.allow(GLOBAL_RATE_KEY)).allowed:
                return GateDecision(admitted=False, reason=RejectReason.GLOBAL_RATE_LIMITED)

        # Caps are re-checked atomically with the increment.
        count, hit = await self.tracker.try_acquire(ip, self.max_connections_per_ip, self.max_connections)
        if hit is LimitHit.TOTAL:
            return GateDecision(admitted=False, reason=RejectReason.RELAY_FULL)
        if hit is LimitHit.PER_IP:
            return GateDecision(admitted=False, reason=RejectReason.IP_CONNECTION_LIMIT)
        return GateDecision(admitted=True, active_connections=count)

    async def release(self, ip: str) -> int:
        """Give back a connection counted by admit()."""
        return await self.tracker.release(ip)

    async def sweep(self) -> int:
        """Evict stale rate windows. Returns the number evicted."""
        evicted = await self.limiter.prune()
        if self.global_limiter is not None:
            evicted += await self.global_limiter.prune()
        return evicted

    async def reset(self) -> None:
        """Drop every rate window."""
        await self.limiter.reset()
        if self.global_limiter is not None:
            await self.global_limiter.reset()
