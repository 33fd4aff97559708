"""Byte relay between a tunnel's public port and its control connection.

For every admitted tunnel two duties run until the tunnel ends:

- the public listener accepts end-user connections; each one is announced to
  the client with a CONN signal and its bytes are written to the control
  connection as they arrive;
- a control loop is the only reader of the control connection. Each read
  doubles as the idle keepalive, and whatever it reads is delivered to the
  newest open public connection.

The control connection carries signals and payload unframed. With more than
one public connection open at once their bytes interleave on the wire.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from noobtunnel.core.config import TimeoutConfig
from noobtunnel.core.exceptions import BindError, ConnectionLostError, IdleTimeoutError, TunnelError
from noobtunnel.core.streams import close_writer, format_address
from noobtunnel.observability.metrics import BYTES_TRANSFERRED, PUBLIC_CONNECTIONS
from noobtunnel.protocol.messages import encode_conn
from noobtunnel.server.tunnel import PublicConnection, Tunnel

logger = structlog.get_logger()


class RelayEngine:
    """Runs the accept and control duties of tunnels."""

    def __init__(self, idle_timeout: float, timeouts: TimeoutConfig, host: str = "0.0.0.0") -> None:
        self.idle_timeout = idle_timeout
        self.host = host
        self._buffer_size = timeouts.read_buffer_size

    async def open_listener(self, tunnel: Tunnel) -> None:
        """Bind the tunnel's public port and start accepting on it.

        Raises:
            BindError: If the port is invalid or cannot be bound.
        """
        if not 0 < tunnel.port < 65536:
            raise BindError(tunnel.port, "invalid port")

        async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self._handle_public_connection(tunnel, reader, writer)

        try:
            tunnel.listener = await asyncio.start_server(on_connect, self.host, tunnel.port)
        except (OSError, OverflowError) as e:
            raise BindError(tunnel.port, str(e)) from e

    async def run(self, tunnel: Tunnel) -> TunnelError | None:
        """Drive tunnel until its control connection fails or it is cancelled.

        Returns:
            The error that ended the tunnel, or None if it was cancelled.
        """
        control_task = asyncio.create_task(self._control_loop(tunnel))
        cancel_task = asyncio.create_task(tunnel.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {control_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (control_task, cancel_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if control_task in done and not control_task.cancelled():
            return control_task.result()
        return None

    async def shutdown(self, tunnel: Tunnel) -> None:
        """Stop accepting and close every connection of tunnel."""
        tunnel.cancel_token.cancel()
        if tunnel.listener is not None:
            tunnel.listener.close()
        for conn in list(tunnel.public_connections):
            await close_writer(conn.writer)
        tunnel.public_connections.clear()
        await close_writer(tunnel.writer)

    async def _control_loop(self, tunnel: Tunnel) -> TunnelError:
        """Read from the client until the connection fails or idles out."""
        while True:
            try:
                data = await asyncio.wait_for(
                    tunnel.reader.read(self._buffer_size),
                    timeout=self.idle_timeout,
                )
            except TimeoutError:
                logger.info(
                    "Tunnel idle timeout",
                    port=tunnel.port,
                    client=tunnel.client_address,
                    idle_timeout=self.idle_timeout,
                )
                return IdleTimeoutError(f"Tunnel on port {tunnel.port} idle for {self.idle_timeout}s")
            except (ConnectionError, OSError) as e:
                logger.info(
                    "Client disconnected",
                    port=tunnel.port,
                    client=tunnel.client_address,
                    error=str(e),
                )
                return ConnectionLostError(str(e))

            if not data:
                logger.info("Client disconnected", port=tunnel.port, client=tunnel.client_address)
                return ConnectionLostError("Control connection closed")

            await self._deliver(tunnel, data)

    async def _deliver(self, tunnel: Tunnel, data: bytes) -> None:
        """Write bytes from the client to the newest public connection."""
        sink = tunnel.current_sink
        if sink is None:
            logger.debug("Discarding control data with no public connection", port=tunnel.port, size=len(data))
            return

        try:
            sink.writer.write(data)
            await sink.writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug("Public connection write failed", port=tunnel.port, peer=sink.address, error=str(e))
            tunnel.detach(sink)
            await close_writer(sink.writer)
            return

        tunnel.bytes_out += len(data)
        BYTES_TRANSFERRED.labels(direction="outbound").inc(len(data))

    async def _handle_public_connection(
        self,
        tunnel: Tunnel,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        _, peer = format_address(writer.get_extra_info("peername"))
        if tunnel.cancel_token.cancelled:
            await close_writer(writer)
            return

        PUBLIC_CONNECTIONS.inc()
        try:
            tunnel.writer.write(encode_conn(tunnel.port))
            await tunnel.writer.drain()
        except (ConnectionError, OSError) as e:
            logger.warning("Failed to signal client", port=tunnel.port, error=str(e))
            await close_writer(writer)
            return

        conn = PublicConnection(reader=reader, writer=writer, address=peer)
        tunnel.attach(conn)
        logger.info("Public connection opened", port=tunnel.port, peer=peer)

        try:
            while True:
                data = await reader.read(self._buffer_size)
                if not data:
                    break
                tunnel.writer.write(data)
                await tunnel.writer.drain()
                tunnel.bytes_in += len(data)
                BYTES_TRANSFERRED.labels(direction="inbound").inc(len(data))
        except (ConnectionError, OSError) as e:
            logger.debug("Public relay ended", port=tunnel.port, peer=peer, error=str(e))
        finally:
            tunnel.detach(conn)
            await close_writer(writer)
            logger.info("Public connection closed", port=tunnel.port, peer=peer)
