"""Tests for NoobTunnel CLI."""

from __future__ import annotations

from unittest.mock import patch

from click.testing import CliRunner

from noobtunnel import __version__
from noobtunnel.cli import main, run_client, run_server
from noobtunnel.client.tunnel import TunnelClient
from noobtunnel.core.config import ServerConfig


class TestCLIBasics:
    """Basic CLI tests."""

    def test_main_without_arguments_shows_usage(self):
        """Test that running without a mode shows banner and usage."""
        runner = CliRunner()
        result = runner.invoke(main)

        assert result.exit_code == 0
        assert "Secure Tunneling Made Easy" in result.output
        assert "Usage:" in result.output
        assert "ntunnel --mode server --port 7000" in result.output

    def test_main_with_help(self):
        """Test --help shows usage and exits 0."""
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "--remote-port" in result.output
        assert "--local-port" in result.output

    def test_version(self):
        """Test --version prints the banner with the version."""
        runner = CliRunner()
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert f"v{__version__}" in result.output
        assert "Usage:" not in result.output

    def test_unknown_mode(self):
        """Test that an unknown mode prints usage and exits 1."""
        runner = CliRunner()
        result = runner.invoke(main, ["--mode", "proxy"])

        assert result.exit_code == 1
        assert "Unknown mode: proxy" in result.output
        assert "Usage:" in result.output


class TestServerMode:
    """Tests for --mode server."""

    def test_server_uses_port_flag(self):
        """Test that server mode without config uses --port."""
        runner = CliRunner()
        with patch("noobtunnel.cli._run_with_signal_handling") as mock_run:
            result = runner.invoke(main, ["--mode", "server", "--port", "7100"])

        assert result.exit_code == 0
        runner_fn, config = mock_run.call_args.args
        assert runner_fn is run_server
        assert isinstance(config, ServerConfig)
        assert config.port == 7100
        assert config.allowed_ports == ServerConfig().allowed_ports

    def test_server_mode_is_case_insensitive(self):
        runner = CliRunner()
        with patch("noobtunnel.cli._run_with_signal_handling") as mock_run:
            result = runner.invoke(main, ["--mode", "SERVER"])

        assert result.exit_code == 0
        assert mock_run.call_args.args[1].port == 7000

    def test_server_loads_config_file(self, tmp_path):
        path = tmp_path / "server.yaml"
        path.write_text("port: 7300\nallowed_ports: []\n")

        runner = CliRunner()
        with patch("noobtunnel.cli._run_with_signal_handling") as mock_run:
            result = runner.invoke(main, ["--mode", "server", "--config", str(path)])

        assert result.exit_code == 0
        config = mock_run.call_args.args[1]
        assert config.port == 7300
        assert config.allowed_ports == []

    def test_server_bad_config_exits(self, tmp_path):
        runner = CliRunner()
        with patch("noobtunnel.cli._run_with_signal_handling") as mock_run:
            result = runner.invoke(main, ["--mode", "server", "--config", str(tmp_path / "nope.yaml")])

        assert result.exit_code == 1
        assert "Failed to load config" in result.output
        mock_run.assert_not_called()


class TestClientMode:
    """Tests for --mode client."""

    def test_client_requires_server_and_remote_port(self):
        runner = CliRunner()
        with patch("noobtunnel.cli._run_with_signal_handling") as mock_run:
            result = runner.invoke(main, ["--mode", "client", "--server", "relay:7000"])

        assert result.exit_code == 1
        assert "requires --server and --remote-port" in result.output
        mock_run.assert_not_called()

    def test_client_from_flags(self):
        runner = CliRunner()
        with patch("noobtunnel.cli._run_with_signal_handling") as mock_run:
            result = runner.invoke(
                main,
                ["--mode", "client", "--server", "relay:7000", "--local-port", "3000", "--remote-port", "80"],
            )

        assert result.exit_code == 0
        runner_fn, client = mock_run.call_args.args
        assert runner_fn is run_client
        assert isinstance(client, TunnelClient)
        assert client.server == "relay:7000"
        assert client.local_port == 3000
        assert client.remote_port == 80
        assert client.reconnect is False

    def test_client_from_config_uses_first_tunnel(self, tmp_path):
        path = tmp_path / "client.yaml"
        path.write_text(
            "server: relay:7000\n"
            "reconnect: true\n"
            "reconnect_delay: 3\n"
            "tunnels:\n"
            "  web: {local_port: 3000, remote_port: 80}\n"
            "  api: {local_port: 8000, remote_port: 8080}\n"
        )

        runner = CliRunner()
        with patch("noobtunnel.cli._run_with_signal_handling") as mock_run:
            result = runner.invoke(main, ["--mode", "client", "--config", str(path)])

        assert result.exit_code == 0
        client = mock_run.call_args.args[1]
        assert client.remote_port == 80
        assert client.reconnect is True
        assert client.reconnect_delay == 3

    def test_client_config_without_tunnels_exits(self, tmp_path):
        path = tmp_path / "client.yaml"
        path.write_text("server: relay:7000\n")

        runner = CliRunner()
        with patch("noobtunnel.cli._run_with_signal_handling") as mock_run:
            result = runner.invoke(main, ["--mode", "client", "--config", str(path)])

        assert result.exit_code == 1
        assert "No tunnels configured" in result.output
        mock_run.assert_not_called()
