"""Mapping from public port to the tunnel holding it."""

from __future__ import annotations

import asyncio
from collections.abc import Collection

from noobtunnel.core.exceptions import PortInUseError
from noobtunnel.server.tunnel import Tunnel


class TunnelRegistry:
    """Owns the port map; at most one live tunnel per port.

    The map is guarded by an asyncio.Lock held only for the lookup and
    mutation, never across socket I/O.
    """

    def __init__(self) -> None:
        self._tunnels: dict[int, Tunnel] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def is_port_allowed(port: int, whitelist: Collection[int]) -> bool:
        """True if whitelist is empty or contains port."""
        return not whitelist or port in whitelist

    async def register(self, tunnel: Tunnel) -> None:
        """Claim tunnel.port for tunnel.

        Raises:
            PortInUseError: If a live tunnel already holds the port.
        """
        async with self._lock:
            existing = self._tunnels.get(tunnel.port)
            if existing is not None:
                raise PortInUseError(tunnel.port, existing.client_address)
            self._tunnels[tunnel.port] = tunnel

    async def unregister(self, port: int, tunnel: Tunnel | None = None) -> bool:
        """Release port. Idempotent.

        When tunnel is given, the entry is removed only if it still belongs to
        that tunnel.

        Returns:
            True if an entry was removed.
        """
        async with self._lock:
            existing = self._tunnels.get(port)
            if existing is None:
                return False
            if tunnel is not None and existing is not tunnel:
                return False
            del self._tunnels[port]
            return True

    def get(self, port: int) -> Tunnel | None:
        return self._tunnels.get(port)

    def tunnels(self) -> list[Tunnel]:
        return list(self._tunnels.values())

    def __contains__(self, port: object) -> bool:
        return port in self._tunnels

    def __len__(self) -> int:
        return len(self._tunnels)
