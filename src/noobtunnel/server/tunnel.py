"""Live tunnel state on the relay."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

from noobtunnel.core.cancel import CancelToken
from noobtunnel.core.exceptions import TunnelError


@dataclass(eq=False)
class PublicConnection:
    """A connection accepted on a tunnel's public port."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    address: str
    opened_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(eq=False)
class Tunnel:
    """Active port forward.

    The control connection (reader/writer) and the public listener belong to
    the tunnel for its whole lifetime.
    """

    port: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    client_address: str
    client_ip: str
    cancel_token: CancelToken
    listener: asyncio.Server | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    public_connections: list[PublicConnection] = field(default_factory=list)
    bytes_in: int = 0
    bytes_out: int = 0
    cleaned_up: bool = False
    end_reason: TunnelError | None = None

    def attach(self, conn: PublicConnection) -> None:
        self.public_connections.append(conn)

    def detach(self, conn: PublicConnection) -> None:
        if conn in self.public_connections:
            self.public_connections.remove(conn)

    @property
    def current_sink(self) -> PublicConnection | None:
        """Public connection that receives bytes read from the client."""
        return self.public_connections[-1] if self.public_connections else None

    def to_dict(self) -> dict[str, object]:
        return {
            "port": self.port,
            "client_address": self.client_address,
            "created_at": self.created_at.isoformat(),
            "public_connections": len(self.public_connections),
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "end_reason": self.end_reason.code if self.end_reason else None,
        }
