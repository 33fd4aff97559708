from prometheus_client import Counter, Gauge, start_http_server

CONTROL_CONNECTIONS = Counter(
    "noobtunnel_control_connections_total",
    "Control connections accepted by the relay listener",
)

REJECTED_CONNECTIONS = Counter(
    "noobtunnel_rejected_connections_total",
    "Control connections turned away",
    ["reason"],  # gate reject reason or protocol outcome
)

TUNNELS_CREATED = Counter(
    "noobtunnel_tunnels_created_total",
    "Tunnels established",
)

ACTIVE_TUNNELS = Gauge(
    "noobtunnel_active_tunnels",
    "Current active tunnels",
)

PUBLIC_CONNECTIONS = Counter(
    "noobtunnel_public_connections_total",
    "Connections accepted on tunnel public ports",
)

BYTES_TRANSFERRED = Counter(
    "noobtunnel_bytes_total",
    "Bytes relayed between public connections and control connections",
    ["direction"],  # inbound: public -> client, outbound: client -> public
)


def serve_metrics(port: int, addr: str = "0.0.0.0") -> None:
    """Expose /metrics over HTTP on a background thread."""
    start_http_server(port, addr=addr)
