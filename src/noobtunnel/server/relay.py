"""Relay server: admits control connections and turns them into tunnels."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import structlog

from noobtunnel.core.cancel import CancelToken
from noobtunnel.core.config import ServerConfig, TimeoutConfig, get_config
from noobtunnel.core.exceptions import (
    BindError,
    PortInUseError,
    PortNotAllowedError,
    ProtocolViolationError,
    TunnelError,
)
from noobtunnel.core.streams import close_writer, format_address
from noobtunnel.observability.metrics import (
    ACTIVE_TUNNELS,
    CONTROL_CONNECTIONS,
    REJECTED_CONNECTIONS,
    TUNNELS_CREATED,
    serve_metrics,
)
from noobtunnel.protocol.messages import encode_error, encode_ok, parse_tunnel_request, tunnel_established_text
from noobtunnel.security.gate import SecurityGate
from noobtunnel.server.engine import RelayEngine
from noobtunnel.server.registry import TunnelRegistry
from noobtunnel.server.tunnel import Tunnel

logger = structlog.get_logger()


class RelayServer:
    """Accepts control connections, gates them, and runs their tunnels.

    The server exclusively owns the tunnel registry and the per-IP maps held
    by its security gate.
    """

    def __init__(self, config: ServerConfig, timeouts: TimeoutConfig | None = None) -> None:
        self.config = config
        self.timeouts = timeouts or get_config().timeouts
        self.registry = TunnelRegistry()
        self.gate = SecurityGate(config, self.timeouts)
        self.engine = RelayEngine(config.idle_timeout, self.timeouts, host=config.host)
        self._shutdown = CancelToken()
        self._listener: asyncio.Server | None = None
        self._sweep_task: asyncio.Task | None = None
        self._handlers: set[asyncio.Task] = set()

    @property
    def port(self) -> int | None:
        """Port the control listener is bound to."""
        if self._listener is None or not self._listener.sockets:
            return None
        return self._listener.sockets[0].getsockname()[1]

    @property
    def tunnel_count(self) -> int:
        return len(self.registry)

    @property
    def is_running(self) -> bool:
        return self._listener is not None and not self._shutdown.cancelled

    def stats(self) -> dict[str, Any]:
        return {
            "active_tunnels": len(self.registry),
            "unique_ips": self.gate.tracker.unique_ips,
            "active_connections": self.gate.tracker.total,
            "rate_windows": self.gate.limiter.entry_count,
            "tunnels": [tunnel.to_dict() for tunnel in self.registry.tunnels()],
        }

    async def start(self) -> None:
        """Bind the control port and start the background sweep.

        Raises:
            BindError: If the control port cannot be bound.
        """
        try:
            self._listener = await asyncio.start_server(
                self._handle_connection,
                self.config.host,
                self.config.port,
            )
        except OSError as e:
            raise BindError(self.config.port, str(e)) from e

        self._sweep_task = asyncio.create_task(self._sweep_loop())

        if self.config.metrics_port:
            serve_metrics(self.config.metrics_port, self.config.host)
            logger.info("Metrics endpoint started", port=self.config.metrics_port)

        logger.info(
            "Relay server started",
            host=self.config.host,
            port=self.port,
            security=self.config.security.enabled,
            max_connections=self.config.max_connections,
            rate_limit=self.config.rate_limit,
            allowed_ports=self.config.allowed_ports,
        )

    async def serve_forever(self) -> None:
        """Run until stop() is called."""
        if self._listener is None:
            await self.start()
        await self._shutdown.wait()

    async def stop(self) -> None:
        """Cancel every tunnel and close the control listener."""
        if self._shutdown.cancelled:
            return
        logger.info("Stopping relay server...")
        self._shutdown.cancel()

        if self._listener is not None:
            self._listener.close()

        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task

        for tunnel in self.registry.tunnels():
            await self._cleanup_tunnel(tunnel)

        handlers = [task for task in self._handlers if task is not asyncio.current_task()]
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        # Handlers cancelled mid-handshake may have registered a tunnel.
        for tunnel in self.registry.tunnels():
            await self._cleanup_tunnel(tunnel)

        await self.gate.reset()
        logger.info("Relay server stopped")

    async def _sweep_loop(self) -> None:
        """Periodically evict stale rate windows and log status."""
        while not self._shutdown.cancelled:
            try:
                await asyncio.sleep(self.timeouts.sweep_interval)
                evicted = await self.gate.sweep()
                logger.info(
                    "Status",
                    active_tunnels=len(self.registry),
                    unique_ips=self.gate.tracker.unique_ips,
                    evicted_rate_windows=evicted,
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Sweep error", error=str(e))

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        try:
            await self._serve_control_connection(reader, writer)
        finally:
            if task is not None:
                self._handlers.discard(task)

    async def _serve_control_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        ip, client_address = format_address(writer.get_extra_info("peername"))
        CONTROL_CONNECTIONS.inc()
        logger.info("Connection received", client=client_address)

        if self._shutdown.cancelled:
            await close_writer(writer)
            return

        decision = await self.gate.admit(ip)
        if not decision.admitted:
            error = decision.as_error()
            reason = decision.reason.value if decision.reason else "unknown"
            REJECTED_CONNECTIONS.labels(reason=reason).inc()
            logger.warning("Connection rejected", ip=ip, reason=reason, error=error.message if error else None)
            await close_writer(writer)
            return

        logger.info("Connection admitted", client=client_address, total=decision.active_connections)

        tunnel: Tunnel | None = None
        try:
            tunnel = await self._establish_tunnel(reader, writer, ip, client_address)
            if tunnel is None:
                return
            tunnel.end_reason = await self.engine.run(tunnel)
        except Exception as e:
            logger.error("Tunnel error", client=client_address, error=str(e))
        finally:
            if tunnel is not None:
                await self._cleanup_tunnel(tunnel)
            else:
                await close_writer(writer)
            remaining = await self.gate.release(ip)
            logger.debug("Connection released", client=client_address, remaining=remaining)

    async def _establish_tunnel(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        ip: str,
        client_address: str,
    ) -> Tunnel | None:
        """Read the TUNNEL request and answer it.

        Returns:
            The live tunnel after OK was sent, or None if the request was
            dropped or answered with ERROR.
        """
        try:
            data = await asyncio.wait_for(
                reader.read(self.timeouts.read_buffer_size),
                timeout=self.timeouts.request_read_timeout,
            )
        except TimeoutError:
            logger.warning("Timed out waiting for tunnel request", client=client_address)
            return None
        except (ConnectionError, OSError) as e:
            logger.warning("Failed to read from client", client=client_address, error=str(e))
            return None

        if not data:
            logger.warning("Client closed before sending a request", client=client_address)
            return None

        try:
            port = parse_tunnel_request(data)
        except ProtocolViolationError as e:
            REJECTED_CONNECTIONS.labels(reason="protocol_violation").inc()
            logger.warning("Invalid tunnel request", client=client_address, error=e.message)
            return None

        if not self.registry.is_port_allowed(port, self.config.allowed_ports):
            await self._reject_request(writer, client_address, PortNotAllowedError(port))
            return None

        tunnel = Tunnel(
            port=port,
            reader=reader,
            writer=writer,
            client_address=client_address,
            client_ip=ip,
            cancel_token=self._shutdown.child(),
        )
        try:
            await self.registry.register(tunnel)
        except PortInUseError as e:
            await self._reject_request(writer, client_address, e)
            return None

        try:
            await self.engine.open_listener(tunnel)
        except BindError as e:
            await self.registry.unregister(port, tunnel)
            await self._reject_request(writer, client_address, e)
            return None

        TUNNELS_CREATED.inc()
        ACTIVE_TUNNELS.set(len(self.registry))

        try:
            writer.write(encode_ok(tunnel_established_text(port)))
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.warning("Failed to confirm tunnel", client=client_address, port=port, error=str(e))
            tunnel.cancel_token.cancel()

        logger.info("Tunnel created", client=client_address, port=port)
        return tunnel

    async def _reject_request(self, writer: asyncio.StreamWriter, client_address: str, error: TunnelError) -> None:
        REJECTED_CONNECTIONS.labels(reason=error.code).inc()
        logger.warning("Tunnel request denied", client=client_address, reason=error.message)
        with contextlib.suppress(ConnectionError, OSError):
            writer.write(encode_error(error.message))
            await writer.drain()

    async def _cleanup_tunnel(self, tunnel: Tunnel) -> None:
        """Tear down tunnel exactly once.

        The owning connection handler gives the client's connection slot back
        to the gate after this returns.
        """
        if tunnel.cleaned_up:
            return
        tunnel.cleaned_up = True

        await self.engine.shutdown(tunnel)
        await self.registry.unregister(tunnel.port, tunnel)
        ACTIVE_TUNNELS.set(len(self.registry))

        logger.info(
            "Tunnel cleaned up",
            port=tunnel.port,
            client=tunnel.client_address,
            reason=tunnel.end_reason.code if tunnel.end_reason else "shutdown",
            bytes_in=tunnel.bytes_in,
            bytes_out=tunnel.bytes_out,
        )
