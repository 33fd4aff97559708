"""Tunnel client: dials the relay, claims a port and relays to a local service."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from noobtunnel.core.cancel import CancelToken
from noobtunnel.core.config import ClientConfig, TimeoutConfig, get_config
from noobtunnel.core.exceptions import DialError, TunnelRejectedError
from noobtunnel.core.streams import close_writer, split_host_port
from noobtunnel.protocol.messages import ResponseKind, encode_tunnel_request, parse_conn_signal, parse_response

logger = structlog.get_logger()


class ConnectionState(Enum):
    """Client connection state."""

    DISCONNECTED = "disconnected"
    DIALING = "dialing"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class LocalConnection:
    """A connection to the local service opened for one CONN signal."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    task: asyncio.Task | None = None


class TunnelClient:
    """Client that keeps one tunnel to the relay alive.

    The client loops forever: a failed dial or handshake is retried after
    a fixed delay, and an ended session is redialed after reconnect_delay
    when reconnect is enabled, or after the same fixed delay otherwise.
    Only an ERROR answer from the relay stops it.
    """

    def __init__(
        self,
        server: str,
        local_port: int,
        remote_port: int,
        local_host: str = "127.0.0.1",
        reconnect: bool = False,
        reconnect_delay: float = 5.0,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        self.server = server
        self.local_port = local_port
        self.remote_port = remote_port
        self.local_host = local_host or "127.0.0.1"
        self.reconnect = reconnect
        self.reconnect_delay = reconnect_delay
        self.timeouts = timeouts or get_config().timeouts

        self._state = ConnectionState.DISCONNECTED
        self._state_hooks: list[Callable[[ConnectionState], None]] = []
        self._closed = CancelToken()
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._locals: list[LocalConnection] = []

        self._dial_attempts = 0
        self._sessions = 0
        self._bytes_sent = 0
        self._bytes_received = 0

    @classmethod
    def from_config(cls, config: ClientConfig, timeouts: TimeoutConfig | None = None) -> TunnelClient:
        """Build a client for the first tunnel declared in config.

        Raises:
            ValueError: If config declares no tunnels.
        """
        if not config.tunnels:
            raise ValueError("No tunnels configured")

        name, spec = next(iter(config.tunnels.items()))
        if len(config.tunnels) > 1:
            logger.warning(
                "Only the first tunnel is started",
                started=name,
                ignored=list(config.tunnels)[1:],
            )
        logger.info("Starting tunnel", name=name, local_port=spec.local_port, remote_port=spec.remote_port)
        return cls(
            server=config.server,
            local_port=spec.local_port,
            remote_port=spec.remote_port,
            local_host=spec.local_host,
            reconnect=config.reconnect,
            reconnect_delay=config.reconnect_delay,
            timeouts=timeouts,
        )

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def local_address(self) -> str:
        return f"{self.local_host}:{self.local_port}"

    @property
    def stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            "state": self._state.value,
            "server": self.server,
            "remote_port": self.remote_port,
            "dial_attempts": self._dial_attempts,
            "sessions": self._sessions,
            "local_connections": len(self._locals),
            "bytes_sent": self._bytes_sent,
            "bytes_received": self._bytes_received,
        }

    def add_state_hook(self, hook: Callable[[ConnectionState], None]) -> None:
        """Add a hook to be called on state changes."""
        self._state_hooks.append(hook)

    def remove_state_hook(self, hook: Callable[[ConnectionState], None]) -> None:
        """Remove a state change hook."""
        if hook in self._state_hooks:
            self._state_hooks.remove(hook)

    def _set_state(self, state: ConnectionState) -> None:
        """Set state and notify hooks."""
        if self._state != state:
            old_state = self._state
            self._state = state
            logger.debug("State changed", old=old_state.value, new=state.value)
            for hook in self._state_hooks:
                try:
                    hook(state)
                except Exception as e:
                    logger.warning("State hook error", error=str(e))

    async def run(self) -> None:
        """Dial, handshake and relay until close() is called.

        Raises:
            TunnelRejectedError: If the relay answers the request with ERROR.
        """
        while not self._closed.cancelled:
            try:
                await self._dial()
            except DialError as e:
                logger.warning("Failed to connect to relay", server=self.server, error=e.message)
                self._set_state(ConnectionState.DISCONNECTED)
                await self._pause(self.timeouts.retry_delay)
                continue

            if self._closed.cancelled:
                await self._disconnect()
                break

            try:
                established = await self._handshake()
            except TunnelRejectedError:
                await self._disconnect()
                self._set_state(ConnectionState.CLOSED)
                raise

            if not established:
                await self._disconnect()
                self._set_state(ConnectionState.DISCONNECTED)
                await self._pause(self.timeouts.retry_delay)
                continue

            self._sessions += 1
            await self._run_active()
            await self._disconnect()
            if self._closed.cancelled:
                break
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info("Disconnected from relay", server=self.server)

            delay = self.reconnect_delay if self.reconnect and self.reconnect_delay > 0 else self.timeouts.retry_delay
            logger.info("Reconnecting", delay_sec=delay, reconnect=self.reconnect)
            await self._pause(delay)

        self._set_state(ConnectionState.CLOSED)

    async def _pause(self, delay: float) -> None:
        """Sleep for delay seconds, returning early if the client is closed."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._closed.wait(), timeout=delay)

    async def _dial(self) -> None:
        self._set_state(ConnectionState.DIALING)
        self._dial_attempts += 1
        logger.info("Connecting to relay", server=self.server, attempt=self._dial_attempts)

        try:
            host, port = split_host_port(self.server)
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.timeouts.control_dial_timeout,
            )
        except TimeoutError:
            raise DialError(self.server, "timed out") from None
        except (OSError, ValueError) as e:
            raise DialError(self.server, str(e)) from e

        logger.info("Connected to relay", server=self.server)

    async def _handshake(self) -> bool:
        """Send the TUNNEL request and read the relay's answer.

        Returns:
            True if the session may proceed, False if the exchange failed.

        Raises:
            TunnelRejectedError: If the relay answered with ERROR.
        """
        reader, writer = self._reader, self._writer
        if reader is None or writer is None:
            return False
        self._set_state(ConnectionState.HANDSHAKING)

        try:
            writer.write(encode_tunnel_request(self.remote_port))
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.warning("Failed to send tunnel request", error=str(e))
            return False

        try:
            data = await asyncio.wait_for(
                reader.read(self.timeouts.read_buffer_size),
                timeout=self.timeouts.handshake_timeout,
            )
        except (TimeoutError, ConnectionError, OSError) as e:
            logger.warning("Failed to read relay response", error=str(e) or type(e).__name__)
            return False

        if not data:
            logger.warning("Relay closed the connection during handshake")
            return False

        response = parse_response(data)
        if response.kind == ResponseKind.ERROR:
            logger.error("Tunnel rejected", reason=response.text)
            raise TunnelRejectedError(response.text)

        if response.kind == ResponseKind.OK:
            logger.info(
                "Tunnel active",
                message=response.text,
                local=self.local_address,
                remote_port=self.remote_port,
            )
        else:
            logger.warning("Unexpected response", response=response.raw)
        return True

    async def _run_active(self) -> None:
        """Read the control connection until it fails.

        A chunk that is a CONN signal opens a local connection; any other
        chunk is payload for the newest open local connection.
        """
        reader = self._reader
        if reader is None:
            return
        self._set_state(ConnectionState.ACTIVE)

        while not self._closed.cancelled:
            try:
                data = await reader.read(self.timeouts.read_buffer_size)
            except (ConnectionError, OSError) as e:
                logger.warning("Connection lost", error=str(e))
                return
            if not data:
                logger.warning("Connection lost")
                return

            port = parse_conn_signal(data)
            if port is not None:
                await self._open_local(port)
            else:
                await self._deliver(data)

    async def _open_local(self, port: int) -> None:
        logger.info("Incoming connection", port=port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.local_host, self.local_port),
                timeout=self.timeouts.local_dial_timeout,
            )
        except (TimeoutError, OSError) as e:
            logger.error(
                "Failed to connect to local service",
                local=self.local_address,
                error=str(e) or type(e).__name__,
            )
            return

        conn = LocalConnection(reader=reader, writer=writer)
        self._locals.append(conn)
        conn.task = asyncio.create_task(self._pump_local(conn))
        logger.info("Connected to local service", local=self.local_address)

    async def _deliver(self, data: bytes) -> None:
        """Write bytes from the relay to the newest local connection."""
        if not self._locals:
            logger.debug("Discarding relay data with no local connection", size=len(data))
            return

        conn = self._locals[-1]
        try:
            conn.writer.write(data)
            await conn.writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug("Local write failed", error=str(e))
            await self._drop_local(conn)
            return
        self._bytes_received += len(data)

    async def _pump_local(self, conn: LocalConnection) -> None:
        """Copy local service output onto the control connection."""
        try:
            while True:
                data = await conn.reader.read(self.timeouts.read_buffer_size)
                if not data or self._writer is None:
                    break
                self._writer.write(data)
                await self._writer.drain()
                self._bytes_sent += len(data)
        except (ConnectionError, OSError) as e:
            logger.debug("Local relay ended", error=str(e))
        finally:
            if conn in self._locals:
                self._locals.remove(conn)
            await close_writer(conn.writer)

    async def _drop_local(self, conn: LocalConnection) -> None:
        if conn in self._locals:
            self._locals.remove(conn)
        if conn.task is not None and conn.task is not asyncio.current_task():
            conn.task.cancel()
        await close_writer(conn.writer)

    async def _disconnect(self) -> None:
        """Close the control connection and every local connection."""
        conns = list(self._locals)
        tasks = [conn.task for conn in conns if conn.task is not None and conn.task is not asyncio.current_task()]
        for conn in conns:
            await self._drop_local(conn)
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        writer, self._reader, self._writer = self._writer, None, None
        await close_writer(writer)

    async def close(self) -> None:
        """Stop the client and close every connection."""
        self._closed.cancel()
        await self._disconnect()
        self._set_state(ConnectionState.CLOSED)
        self._state_hooks.clear()
        logger.info("Tunnel closed", stats=self.stats)

    async def __aenter__(self) -> TunnelClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
