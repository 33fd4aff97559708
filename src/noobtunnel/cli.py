"""NoobTunnel CLI - Command line interface."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click
import structlog
from rich.console import Console
from rich.table import Table

from noobtunnel import __version__
from noobtunnel.client.tunnel import TunnelClient
from noobtunnel.core.config import ServerConfig, load_client_config, load_server_config
from noobtunnel.core.exceptions import BindError, TunnelRejectedError, format_error_for_user
from noobtunnel.server.relay import RelayServer

console = Console()

_shutdown_requested = False

BANNER = """
███╗   ██╗ ██████╗  ██████╗ ██████╗ ████████╗██╗   ██╗███╗   ██╗███╗   ██╗███████╗██╗
████╗  ██║██╔═══██╗██╔═══██╗██╔══██╗╚══██╔══╝██║   ██║████╗  ██║████╗  ██║██╔════╝██║
██╔██╗ ██║██║   ██║██║   ██║██████╔╝   ██║   ██║   ██║██╔██╗ ██║██╔██╗ ██║█████╗  ██║
██║╚██╗██║██║   ██║██║   ██║██╔══██╗   ██║   ██║   ██║██║╚██╗██║██║╚██╗██║██╔══╝  ██║
██║ ╚████║╚██████╔╝╚██████╔╝██████╔╝   ██║   ╚██████╔╝██║ ╚████║██║ ╚████║███████╗███████╗
╚═╝  ╚═══╝ ╚═════╝  ╚═════╝ ╚═════╝    ╚═╝    ╚═════╝ ╚═╝  ╚═══╝╚═╝  ╚═══╝╚══════╝╚══════╝
                        Secure Tunneling Made Easy v{version}
"""

USAGE = """
Usage:
  ntunnel --mode <server|client> [options]

Server mode:
  ntunnel --mode server --port 7000
  ntunnel --mode server --config server.yaml

Client mode:
  ntunnel --mode client --server your-vps-ip:7000 --local-port 8080 --remote-port 80
  ntunnel --mode client --config client.yaml

Options:
  --mode TEXT          Mode: 'server' or 'client'
  --config PATH        Configuration file path (YAML or TOML)
  --port INTEGER       Server port (default: 7000)
  --server TEXT        Server address (client mode)
  --local-port INTEGER Local port to tunnel (default: 8080)
  --remote-port INTEGER Remote port on server (client mode)
  --help               Show this help
  --version            Show version
"""


def print_banner() -> None:
    console.print(BANNER.format(version=__version__), style="cyan", highlight=False)


def show_help() -> None:
    print_banner()
    console.print(USAGE, highlight=False, markup=False)


def configure_logging(level: str) -> None:
    """Route structlog output through a level filter."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


@click.command(add_help_option=False)
@click.option("--mode", "-m", default=None, help="Mode: 'server' or 'client'")
@click.option("--config", "-c", "config_file", default=None, help="Configuration file path")
@click.option("--port", "-p", type=int, default=7000, help="Server port (server mode only)")
@click.option("--server", default=None, help="Server address (client mode only)")
@click.option("--local-port", type=int, default=8080, help="Local port to tunnel (client mode only)")
@click.option("--remote-port", type=int, default=0, help="Remote port on server (client mode only)")
@click.option("--help", "show_usage", is_flag=True, help="Show help")
@click.option("--version", "show_version", is_flag=True, help="Show version")
def main(
    mode: str | None,
    config_file: str | None,
    port: int,
    server: str | None,
    local_port: int,
    remote_port: int,
    show_usage: bool,
    show_version: bool,
):
    """NoobTunnel - Secure Tunneling Made Easy.

    Expose a local TCP service through a relay on a reachable host.

    Examples:

        ntunnel --mode server --port 7000

        ntunnel --mode client --server 1.2.3.4:7000 --local-port 3000 --remote-port 80

        ntunnel --mode server --config server.yaml

        ntunnel --mode client --config client.yaml
    """
    if show_version:
        print_banner()
        return

    if show_usage or not mode:
        show_help()
        return

    mode = mode.lower()
    if mode == "server":
        _start_server(config_file, port)
    elif mode == "client":
        _start_client(config_file, server, local_port, remote_port)
    else:
        console.print(f"[red]Unknown mode: {mode}[/red]")
        show_help()
        sys.exit(1)


def _start_server(config_file: str | None, port: int) -> None:
    if config_file:
        try:
            config = load_server_config(config_file)
        except Exception as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)
        console.print(f"Loaded config from {config_file}", style="dim")
    else:
        config = ServerConfig(port=port)

    configure_logging(config.log_level)
    print_banner()

    table = Table(show_header=False, box=None)
    table.add_row("Listen", f"{config.host}:{config.port}")
    table.add_row("Security", "enabled" if config.security.enabled else "disabled")
    table.add_row("Max connections", str(config.max_connections))
    table.add_row("Rate limit", f"{config.rate_limit}/min")
    table.add_row("Idle timeout", f"{config.timeout_minutes} min")
    table.add_row("Allowed ports", ", ".join(map(str, config.allowed_ports)) or "all")
    console.print(table)

    _run_with_signal_handling(run_server, config)


def _start_client(config_file: str | None, server: str | None, local_port: int, remote_port: int) -> None:
    if config_file:
        try:
            client_config = load_client_config(config_file)
            client = TunnelClient.from_config(client_config)
        except Exception as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)
        log_level = client_config.log_level
        console.print(f"Connecting to server: {client_config.server}", style="yellow")
        for name, spec in client_config.tunnels.items():
            console.print(f"  {name}: {spec.local_host}:{spec.local_port} -> :{spec.remote_port}", style="dim")
    else:
        if not server or not remote_port:
            console.print("[red]Client mode requires --server and --remote-port parameters[/red]")
            sys.exit(1)
        client = TunnelClient(server=server, local_port=local_port, remote_port=remote_port)
        log_level = "info"

    configure_logging(log_level)
    print_banner()
    console.print(
        f"Forwarding {client.local_address} -> {client.server} port {client.remote_port}",
        style="yellow",
    )

    _run_with_signal_handling(run_client, client)


def _run_with_signal_handling(runner: Callable[[Any], Awaitable[None]], target: Any) -> None:
    """Run runner(target) with proper signal handling for clean Ctrl+C shutdown."""
    global _shutdown_requested
    _shutdown_requested = False

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    main_task = loop.create_task(runner(target))

    def signal_handler(sig: int, frame: object) -> None:
        """Handle Ctrl+C signal."""
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        loop.call_soon_threadsafe(main_task.cancel)

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    exit_code = 0
    try:
        loop.run_until_complete(main_task)
    except (asyncio.CancelledError, KeyboardInterrupt):
        pass
    except (BindError, TunnelRejectedError) as e:
        console.print(f"[red]{format_error_for_user(e)}[/red]")
        exit_code = 1
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()

    if exit_code:
        sys.exit(exit_code)


async def run_server(config: ServerConfig) -> None:
    """Run the relay server until cancelled."""
    server = RelayServer(config)
    try:
        await server.start()
        console.print("Server started, press Ctrl+C to stop", style="green")
        await server.serve_forever()
    finally:
        await server.stop()


async def run_client(client: TunnelClient) -> None:
    """Run the tunnel client until cancelled or rejected."""
    async with client:
        await client.run()


if __name__ == "__main__":
    main()
