"""Tests for the tunnel client against scripted relays."""

from __future__ import annotations

import asyncio
import socket

import pytest

from noobtunnel.client.tunnel import ConnectionState, TunnelClient
from noobtunnel.core.config import ClientConfig, ServerConfig, TimeoutConfig
from noobtunnel.core.exceptions import TunnelRejectedError
from noobtunnel.server.relay import RelayServer


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class ScriptedRelay:
    """Relay stand-in that answers every TUNNEL request with a fixed reply."""

    def __init__(self, reply: bytes, hang_up: bool = False, after_reply: bytes | None = None) -> None:
        self.reply = reply
        self.hang_up = hang_up
        self.after_reply = after_reply
        self.requests: list[bytes] = []
        self.accept_times: list[float] = []
        self.writers: list[asyncio.StreamWriter] = []
        self.server: asyncio.Server | None = None

    @property
    def address(self) -> str:
        return "127.0.0.1:{}".format(self.server.sockets[0].getsockname()[1])

    async def start(self) -> ScriptedRelay:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.accept_times.append(asyncio.get_running_loop().time())
        self.writers.append(writer)
        self.requests.append(await reader.read(1024))
        writer.write(self.reply)
        await writer.drain()
        if self.after_reply is not None:
            await asyncio.sleep(0.05)
            writer.write(self.after_reply)
            await writer.drain()
        if self.hang_up:
            writer.close()
            return
        await reader.read(1024)

    def close(self) -> None:
        if self.server is not None:
            self.server.close()
        for writer in self.writers:
            writer.close()


async def _stop(client: TunnelClient, task: asyncio.Task) -> None:
    await client.close()
    await asyncio.gather(task, return_exceptions=True)


class TestHandshake:
    """Tests for the TUNNEL/OK/ERROR exchange."""

    @pytest.mark.asyncio
    async def test_sends_tunnel_request_and_goes_active(self):
        relay = await ScriptedRelay(b"OK Tunnel established on port 8080").start()
        client = TunnelClient(server=relay.address, local_port=3000, remote_port=8080)
        states = []
        client.add_state_hook(states.append)

        task = asyncio.create_task(client.run())
        try:
            await _wait_until(lambda: client.state is ConnectionState.ACTIVE)
            assert relay.requests == [b"TUNNEL 8080"]
            assert states[:3] == [ConnectionState.DIALING, ConnectionState.HANDSHAKING, ConnectionState.ACTIVE]
        finally:
            await _stop(client, task)
            relay.close()

        assert client.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_error_response_ends_client(self):
        relay = await ScriptedRelay(b"ERROR Port 22 not allowed").start()
        client = TunnelClient(server=relay.address, local_port=3000, remote_port=22)

        try:
            with pytest.raises(TunnelRejectedError) as exc_info:
                await asyncio.wait_for(client.run(), timeout=3.0)
        finally:
            relay.close()

        assert exc_info.value.reason == "Port 22 not allowed"
        assert client.state is ConnectionState.CLOSED
        assert len(relay.accept_times) == 1

    @pytest.mark.asyncio
    async def test_unexpected_response_still_goes_active(self):
        relay = await ScriptedRelay(b"HELLO").start()
        client = TunnelClient(server=relay.address, local_port=3000, remote_port=8080)

        task = asyncio.create_task(client.run())
        try:
            await _wait_until(lambda: client.state is ConnectionState.ACTIVE)
        finally:
            await _stop(client, task)
            relay.close()

    @pytest.mark.asyncio
    async def test_rejected_by_real_relay(self):
        relay = RelayServer(ServerConfig(host="127.0.0.1", port=0, allowed_ports=[8080]))
        await relay.start()
        client = TunnelClient(server=f"127.0.0.1:{relay.port}", local_port=3000, remote_port=22)

        try:
            with pytest.raises(TunnelRejectedError, match="Port 22 not allowed"):
                await asyncio.wait_for(client.run(), timeout=3.0)
        finally:
            await relay.stop()

    @pytest.mark.asyncio
    async def test_handshake_without_connection_fails(self):
        """Test that a handshake after the control connection was dropped reports failure."""
        client = TunnelClient(server="127.0.0.1:7000", local_port=3000, remote_port=80)

        assert await client._handshake() is False
        assert client.state is ConnectionState.DISCONNECTED


class TestReconnect:
    """Tests for the retry and reconnect delays."""

    @pytest.mark.asyncio
    async def test_reconnect_waits_reconnect_delay(self):
        relay = await ScriptedRelay(b"OK Tunnel established on port 80", hang_up=True).start()
        client = TunnelClient(
            server=relay.address,
            local_port=3000,
            remote_port=80,
            reconnect=True,
            reconnect_delay=0.3,
            timeouts=TimeoutConfig(retry_delay=0.01),
        )

        task = asyncio.create_task(client.run())
        try:
            await _wait_until(lambda: len(relay.accept_times) >= 2)
        finally:
            await _stop(client, task)
            relay.close()

        assert relay.accept_times[1] - relay.accept_times[0] >= 0.28

    @pytest.mark.asyncio
    async def test_without_reconnect_uses_retry_delay(self):
        relay = await ScriptedRelay(b"OK Tunnel established on port 80", hang_up=True).start()
        client = TunnelClient(
            server=relay.address,
            local_port=3000,
            remote_port=80,
            reconnect=False,
            reconnect_delay=30,
            timeouts=TimeoutConfig(retry_delay=0.2),
        )

        task = asyncio.create_task(client.run())
        try:
            await _wait_until(lambda: len(relay.accept_times) >= 2)
        finally:
            await _stop(client, task)
            relay.close()

        gap = relay.accept_times[1] - relay.accept_times[0]
        assert 0.18 <= gap < 5.0

    @pytest.mark.asyncio
    async def test_dial_failure_retries(self):
        client = TunnelClient(
            server=f"127.0.0.1:{_free_port()}",
            local_port=3000,
            remote_port=80,
            timeouts=TimeoutConfig(retry_delay=0.05),
        )

        task = asyncio.create_task(client.run())
        try:
            await _wait_until(lambda: client.stats["dial_attempts"] >= 3)
        finally:
            await _stop(client, task)

        assert client.stats["sessions"] == 0

    @pytest.mark.asyncio
    async def test_close_interrupts_wait(self):
        client = TunnelClient(
            server=f"127.0.0.1:{_free_port()}",
            local_port=3000,
            remote_port=80,
            timeouts=TimeoutConfig(retry_delay=60),
        )

        task = asyncio.create_task(client.run())
        await _wait_until(lambda: client.state is ConnectionState.DISCONNECTED and client.stats["dial_attempts"] == 1)
        await client.close()

        await asyncio.wait_for(task, timeout=2.0)
        assert client.state is ConnectionState.CLOSED


class TestSignals:
    """Tests for CONN handling while active."""

    @pytest.mark.asyncio
    async def test_conn_signal_dials_local_service(self):
        accepted = asyncio.Event()

        async def local_service(reader, writer):
            accepted.set()
            await reader.read(1024)

        service = await asyncio.start_server(local_service, "127.0.0.1", 0)
        local_port = service.sockets[0].getsockname()[1]
        relay = await ScriptedRelay(b"OK Tunnel established on port 80", after_reply=b"CONN 80").start()
        client = TunnelClient(server=relay.address, local_port=local_port, remote_port=80)

        task = asyncio.create_task(client.run())
        try:
            await asyncio.wait_for(accepted.wait(), timeout=3.0)
            await _wait_until(lambda: client.stats["local_connections"] == 1)
        finally:
            await _stop(client, task)
            relay.close()
            service.close()

    @pytest.mark.asyncio
    async def test_malformed_signal_ignored(self):
        relay = await ScriptedRelay(b"OK Tunnel established on port 80", after_reply=b"CONN eighty").start()
        client = TunnelClient(server=relay.address, local_port=_free_port(), remote_port=80)

        task = asyncio.create_task(client.run())
        try:
            await _wait_until(lambda: client.state is ConnectionState.ACTIVE)
            await asyncio.sleep(0.1)
            assert client.stats["local_connections"] == 0
            assert client.state is ConnectionState.ACTIVE
        finally:
            await _stop(client, task)
            relay.close()


class TestFromConfig:
    """Tests for TunnelClient.from_config."""

    def test_uses_first_tunnel(self):
        config = ClientConfig.model_validate(
            {
                "server": "relay:7000",
                "reconnect": True,
                "reconnect_delay": 9,
                "tunnels": {
                    "web": {"local_port": 3000, "remote_port": 80, "local_host": "10.0.0.5"},
                    "api": {"local_port": 8000, "remote_port": 8080},
                },
            }
        )

        client = TunnelClient.from_config(config)

        assert client.server == "relay:7000"
        assert client.local_host == "10.0.0.5"
        assert client.local_port == 3000
        assert client.remote_port == 80
        assert client.reconnect is True
        assert client.reconnect_delay == 9

    def test_no_tunnels(self):
        with pytest.raises(ValueError, match="No tunnels configured"):
            TunnelClient.from_config(ClientConfig(server="relay:7000"))

    def test_state_hooks(self):
        client = TunnelClient(server="relay:7000", local_port=3000, remote_port=80)
        seen = []

        def hook(state):
            seen.append(state)

        client.add_state_hook(hook)
        client._set_state(ConnectionState.DIALING)
        client.remove_state_hook(hook)
        client._set_state(ConnectionState.HANDSHAKING)

        assert seen == [ConnectionState.DIALING]
