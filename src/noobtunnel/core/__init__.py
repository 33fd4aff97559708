"""Core."""

from .cancel import CancelToken
from .config import (
    ClientConfig,
    NoobTunnelConfig,
    SecurityConfig,
    ServerConfig,
    TimeoutConfig,
    TunnelSpec,
    get_config,
    load_client_config,
    load_config_from_file,
    load_server_config,
)
from .exceptions import (
    BindError,
    ConnectionLostError,
    DialError,
    IdleTimeoutError,
    PortInUseError,
    PortNotAllowedError,
    ProtocolViolationError,
    RateLimitedError,
    SecurityRejectedError,
    TunnelError,
    TunnelRejectedError,
    format_error_for_user,
)

__all__ = [
    # Cancellation
    "CancelToken",
    # Config
    "ClientConfig",
    "NoobTunnelConfig",
    "SecurityConfig",
    "ServerConfig",
    "TimeoutConfig",
    "TunnelSpec",
    "get_config",
    "load_client_config",
    "load_config_from_file",
    "load_server_config",
    # Errors
    "BindError",
    "ConnectionLostError",
    "DialError",
    "IdleTimeoutError",
    "PortInUseError",
    "PortNotAllowedError",
    "ProtocolViolationError",
    "RateLimitedError",
    "SecurityRejectedError",
    "TunnelError",
    "TunnelRejectedError",
    "format_error_for_user",
]
