"""Tests for stream and address helpers."""

from __future__ import annotations

import pytest

from noobtunnel.core.exceptions import (
    BindError,
    PortInUseError,
    PortNotAllowedError,
    TunnelRejectedError,
    format_error_for_user,
)
from noobtunnel.core.streams import format_address, split_host_port


class TestFormatAddress:
    """Tests for format_address."""

    def test_ipv4(self):
        assert format_address(("10.0.0.1", 5000)) == ("10.0.0.1", "10.0.0.1:5000")

    def test_ipv6_is_bracketed(self):
        assert format_address(("::1", 5000, 0, 0)) == ("::1", "[::1]:5000")

    def test_missing_peer(self):
        assert format_address(None) == ("unknown", "unknown")


class TestSplitHostPort:
    """Tests for split_host_port."""

    def test_host_and_port(self):
        assert split_host_port("relay.example.com:7000") == ("relay.example.com", 7000)

    def test_ipv6(self):
        assert split_host_port("[2001:db8::1]:7000") == ("2001:db8::1", 7000)

    def test_default_port(self):
        assert split_host_port("relay.example.com", default_port=7000) == ("relay.example.com", 7000)

    def test_missing_port(self):
        with pytest.raises(ValueError, match="Missing port"):
            split_host_port("relay.example.com")

    def test_invalid_port(self):
        with pytest.raises(ValueError, match="Invalid port"):
            split_host_port("relay:http")


class TestErrorMessages:
    """Tests for the user-facing error text."""

    def test_protocol_messages(self):
        assert PortNotAllowedError(22).message == "Port 22 not allowed"
        assert PortInUseError(80, "1.2.3.4:5").message == "Port 80 already in use by 1.2.3.4:5"
        assert BindError(80, "denied").message == "failed to listen on port 80: denied"

    def test_format_error_for_user(self):
        assert format_error_for_user(TunnelRejectedError("nope")) == "Server error: nope"
        assert format_error_for_user(TimeoutError()) == "Operation timed out"
        assert format_error_for_user(RuntimeError("first\nsecond")) == "first"
        assert format_error_for_user(RuntimeError()) == "RuntimeError"
