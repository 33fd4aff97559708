"""Error types shared by the relay and the client."""

from __future__ import annotations


class TunnelError(Exception):
    """Base class for all tunnel errors."""

    code = "tunnel_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DialError(TunnelError):
    """The relay or the local service could not be reached."""

    code = "dial_failure"

    def __init__(self, address: str, detail: str) -> None:
        super().__init__(f"Failed to connect to {address}: {detail}")
        self.address = address
        self.detail = detail


class ProtocolViolationError(TunnelError):
    """A control message could not be parsed."""

    code = "protocol_violation"


class PortNotAllowedError(TunnelError):
    """The requested public port is not in the relay's whitelist."""

    code = "port_not_allowed"

    def __init__(self, port: int) -> None:
        super().__init__(f"Port {port} not allowed")
        self.port = port


class PortInUseError(TunnelError):
    """Another live tunnel already holds the requested public port."""

    code = "port_in_use"

    def __init__(self, port: int, existing_client: str) -> None:
        super().__init__(f"Port {port} already in use by {existing_client}")
        self.port = port
        self.existing_client = existing_client


class BindError(TunnelError):
    """A listening socket could not be bound."""

    code = "bind_failure"

    def __init__(self, port: int, detail: str) -> None:
        super().__init__(f"failed to listen on port {port}: {detail}")
        self.port = port
        self.detail = detail


class RateLimitedError(TunnelError):
    """The source exceeded its connection rate."""

    code = "rate_limited"


class SecurityRejectedError(TunnelError):
    """The source is banned or over its connection cap."""

    code = "security_rejected"


class IdleTimeoutError(TunnelError):
    """The control connection stayed silent past the idle timeout."""

    code = "idle_timeout"


class ConnectionLostError(TunnelError):
    """The control connection was closed or failed."""

    code = "connection_lost"


class TunnelRejectedError(TunnelError):
    """The relay answered the tunnel request with ERROR."""

    code = "tunnel_rejected"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Server error: {reason}")
        self.reason = reason


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a single readable line."""
    if isinstance(error, TunnelError):
        return error.message
    if isinstance(error, TimeoutError):
        return "Operation timed out"
    text = str(error).strip()
    if not text:
        return type(error).__name__
    return text.splitlines()[0]
