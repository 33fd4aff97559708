"""Tunnel client."""

from .tunnel import ConnectionState, LocalConnection, TunnelClient

__all__ = ["ConnectionState", "LocalConnection", "TunnelClient"]
