"""NoobTunnel - expose a local TCP service through a public relay."""

__version__ = "1.0.0"

from noobtunnel.client.tunnel import ConnectionState, TunnelClient
from noobtunnel.core.config import ClientConfig, ServerConfig, TunnelSpec
from noobtunnel.server.relay import RelayServer

__all__ = [
    "__version__",
    "ClientConfig",
    "ConnectionState",
    "RelayServer",
    "ServerConfig",
    "TunnelClient",
    "TunnelSpec",
]
