"""Relay server."""

from .engine import RelayEngine
from .registry import TunnelRegistry
from .relay import RelayServer
from .tunnel import PublicConnection, Tunnel

__all__ = [
    "PublicConnection",
    "RelayEngine",
    "RelayServer",
    "Tunnel",
    "TunnelRegistry",
]
