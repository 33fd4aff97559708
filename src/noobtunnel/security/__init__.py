"""Security module for the relay's admission gate.

This module provides:
- Static IP bans (exact and CIDR)
- Per-IP active connection accounting
- Fixed window rate limiting
- The composed admission gate
"""

# Ban list
from noobtunnel.security.banlist import BanCheckResult, BanList

# Connection accounting
from noobtunnel.security.connections import ConnectionTracker, LimitHit

# Admission gate
from noobtunnel.security.gate import GateDecision, RejectReason, SecurityGate

# Rate limiting
from noobtunnel.security.ratelimit import (
    FixedWindowRateLimiter,
    RateLimitConfig,
    RateLimitResult,
    RateWindow,
    create_rate_limiter,
)

__all__ = [
    # Ban list
    "BanCheckResult",
    "BanList",
    # Connection accounting
    "ConnectionTracker",
    "LimitHit",
    # Admission gate
    "GateDecision",
    "RejectReason",
    "SecurityGate",
    # Rate limiting
    "FixedWindowRateLimiter",
    "RateLimitConfig",
    "RateLimitResult",
    "RateWindow",
    "create_rate_limiter",
]
