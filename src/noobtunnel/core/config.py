"""Configuration types with environment variable support.

Relay and client settings are plain pydantic models built from a YAML/TOML
file or from command line flags. Timing knobs live in TimeoutConfig and can be
overridden via environment variables with the NOOBTUNNEL_ prefix.
Example: NOOBTUNNEL_RETRY_DELAY=2 shortens the client's dial retry delay.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_PORTS = [80, 8080, 3000, 3001, 8000, 8001, 9000]
DEFAULT_LOCAL_HOST = "127.0.0.1"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            data = tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


class SecurityConfig(BaseModel):
    """Admission gate settings applied to every control connection."""

    enabled: bool = True
    max_connections_per_ip: int = Field(
        default=5,
        ge=0,
        description="Maximum concurrently admitted control connections per source IP.",
    )
    rate_limit_per_ip: int = Field(
        default=30,
        ge=0,
        description="Maximum control connections per source IP per minute.",
    )


class ServerConfig(BaseModel):
    """Relay configuration.

    Defaults match what the relay runs with when started without a file.
    """

    host: str = "0.0.0.0"
    port: int = Field(default=7000, ge=0, le=65535)
    max_connections: int = Field(
        default=100,
        ge=0,
        description="Maximum concurrently admitted control connections. 0 disables the cap.",
    )
    rate_limit: int = Field(
        default=60,
        ge=0,
        description="Relay-wide control connections per minute. 0 disables the limit.",
    )
    timeout_minutes: float = Field(
        default=30,
        gt=0,
        description="Idle timeout on the control connection, in minutes.",
    )
    allowed_ports: list[int] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_PORTS),
        description="Public ports clients may request. Empty allows all.",
    )
    banned_ips: list[str] = Field(
        default_factory=list,
        description="Source IPs or CIDRs rejected before any parsing.",
    )
    log_level: str = "info"
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    metrics_port: int | None = Field(
        default=None,
        description="Serve Prometheus metrics on this port when set.",
    )

    @field_validator("allowed_ports", "banned_ips", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def idle_timeout(self) -> float:
        """Control connection idle timeout in seconds."""
        return self.timeout_minutes * 60.0


class TunnelSpec(BaseModel):
    """One local service to expose through the relay."""

    local_port: int = Field(ge=1, le=65535)
    remote_port: int
    local_host: str = DEFAULT_LOCAL_HOST

    @field_validator("local_host", mode="before")
    @classmethod
    def _default_local_host(cls, value: Any) -> Any:
        return value or DEFAULT_LOCAL_HOST


class ClientConfig(BaseModel):
    """Client configuration."""

    server: str
    reconnect: bool = False
    reconnect_delay: float = Field(
        default=5,
        ge=0,
        description="Seconds to wait before redialing after an active session ends.",
    )
    log_level: str = "info"
    tunnels: dict[str, TunnelSpec] = Field(default_factory=dict)

    @field_validator("tunnels", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


def load_server_config(path: str | Path) -> ServerConfig:
    """Load and validate a relay configuration file."""
    return ServerConfig.model_validate(load_config_from_file(path))


def load_client_config(path: str | Path) -> ClientConfig:
    """Load and validate a client configuration file."""
    return ClientConfig.model_validate(load_config_from_file(path))


class TimeoutConfig(BaseSettings):
    """Timeout and interval configuration.

    All values are in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="NOOBTUNNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    control_dial_timeout: float = Field(
        default=10.0,
        description="Client timeout when dialing the relay.",
    )
    local_dial_timeout: float = Field(
        default=5.0,
        description="Client timeout when dialing the local service.",
    )
    handshake_timeout: float = Field(
        default=10.0,
        description="Client deadline for the relay's OK/ERROR answer.",
    )
    request_read_timeout: float = Field(
        default=30.0,
        description="Relay deadline for the client's TUNNEL request.",
    )
    retry_delay: float = Field(
        default=5.0,
        description="Fixed delay between failed dials and after sessions without reconnect.",
    )
    sweep_interval: float = Field(
        default=300.0,
        description="Interval of the relay's rate window sweep.",
    )
    rate_window_seconds: float = Field(
        default=60.0,
        description="Length of a rate limiting window.",
    )
    stale_window_seconds: float = Field(
        default=300.0,
        description="How long after its reset time a rate window is evicted.",
    )
    read_buffer_size: int = Field(
        default=1024,
        ge=1,
        description="Bytes requested per read on control and relayed connections.",
    )


class NoobTunnelConfig(BaseSettings):
    """Process-wide settings resolved from the environment.

    Use get_config() to get a cached instance.
    """

    model_config = SettingsConfigDict(
        env_prefix="NOOBTUNNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def timeouts(self) -> TimeoutConfig:
        """Get timeout configuration."""
        return TimeoutConfig()


_config: NoobTunnelConfig | None = None


def get_config() -> NoobTunnelConfig:
    """Get the global configuration instance.

    The instance is created once and cached for the lifetime of the process.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = NoobTunnelConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration."""
    global _config
    _config = None
