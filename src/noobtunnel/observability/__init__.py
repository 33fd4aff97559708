"""Observability: Prometheus metrics for the relay."""

from noobtunnel.observability.metrics import (
    ACTIVE_TUNNELS,
    BYTES_TRANSFERRED,
    CONTROL_CONNECTIONS,
    PUBLIC_CONNECTIONS,
    REJECTED_CONNECTIONS,
    TUNNELS_CREATED,
    serve_metrics,
)

__all__ = [
    "ACTIVE_TUNNELS",
    "BYTES_TRANSFERRED",
    "CONTROL_CONNECTIONS",
    "PUBLIC_CONNECTIONS",
    "REJECTED_CONNECTIONS",
    "TUNNELS_CREATED",
    "serve_metrics",
]
