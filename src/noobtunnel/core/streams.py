"""Small helpers around asyncio streams."""

from __future__ import annotations

import asyncio
from typing import Any


async def close_writer(writer: asyncio.StreamWriter | None) -> None:
    """Close writer, ignoring errors from an already broken connection."""
    if writer is None or writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (OSError, RuntimeError):
        return


def format_address(peername: Any) -> tuple[str, str]:
    """Split a socket peername into (host, "host:port").

    IPv6 hosts are bracketed in the combined form.
    """
    if not peername:
        return "unknown", "unknown"
    host, port = peername[0], peername[1]
    if ":" in host:
        return host, f"[{host}]:{port}"
    return host, f"{host}:{port}"


def split_host_port(address: str, default_port: int | None = None) -> tuple[str, int]:
    """Parse "host:port" (or "[v6]:port") into its parts."""
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port_text = rest.lstrip(":")
    elif address.count(":") == 1:
        host, port_text = address.rsplit(":", 1)
    else:
        host, port_text = address, ""

    if not port_text:
        if default_port is None:
            raise ValueError(f"Missing port in address: {address}")
        return host, default_port
    try:
        return host, int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in address: {address}") from None
