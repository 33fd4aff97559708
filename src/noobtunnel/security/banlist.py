"""Static IP ban list with CIDR support.

Uses Python's built-in ipaddress module for network matching. Entries may be
exact addresses or CIDR networks, IPv4 or IPv6.

Example:
    bans = BanList(["203.0.113.7", "198.51.100.0/24"])

    if bans.is_banned("198.51.100.20"):
        writer.close()
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network, ip_address, ip_network

import structlog

logger = structlog.get_logger()


@dataclass
class BanCheckResult:
    """Result of a ban list lookup."""

    banned: bool
    matched_rule: str | None


class BanList:
    """Exact and network ban rules.

    Entries that parse as neither an address nor a network are kept as
    literal strings and matched verbatim.
    """

    def __init__(self, rules: Iterable[str] = ()) -> None:
        self._exact: set[IPv4Address | IPv6Address] = set()
        self._networks: list[IPv4Network | IPv6Network] = []
        self._literals: set[str] = set()
        for rule in rules:
            self.add(rule)

    def add(self, rule: str) -> None:
        """Parse and add a rule."""
        rule = rule.strip()
        if not rule:
            return

        try:
            if "/" in rule:
                self._networks.append(ip_network(rule, strict=False))
            else:
                self._exact.add(ip_address(rule))
        except ValueError:
            logger.warning("Unparseable ban rule kept as literal", rule=rule)
            self._literals.add(rule)

    def check(self, ip: str) -> BanCheckResult:
        """Look up ip with the matching rule, if any."""
        ip = ip.strip()
        if ip in self._literals:
            return BanCheckResult(banned=True, matched_rule=ip)

        try:
            addr = ip_address(ip)
        except ValueError:
            return BanCheckResult(banned=False, matched_rule=None)

        if addr in self._exact:
            return BanCheckResult(banned=True, matched_rule=str(addr))

        for network in self._networks:
            if addr in network:
                return BanCheckResult(banned=True, matched_rule=str(network))

        return BanCheckResult(banned=False, matched_rule=None)

    def is_banned(self, ip: str) -> bool:
        return self.check(ip).banned

    @property
    def rule_count(self) -> int:
        """Total number of rules."""
        return len(self._exact) + len(self._networks) + len(self._literals)
