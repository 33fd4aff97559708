"""Control protocol messages.

The control connection carries bare ASCII messages with no delimiter and no
length prefix. Each side writes one message per logical event and the peer
treats the result of a single read as exactly that message:

    client -> relay   TUNNEL <port>
    relay  -> client  OK <text>
    relay  -> client  ERROR <text>
    relay  -> client  CONN <port>

After OK the same connection also carries raw tunneled bytes.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel

from noobtunnel.core.exceptions import ProtocolViolationError

TUNNEL = "TUNNEL"
OK = "OK"
ERROR = "ERROR"
CONN = "CONN"

ENCODING = "ascii"

_TUNNEL_RE = re.compile(rb"^TUNNEL\s+([+-]?\d+)")


class ResponseKind(Enum):
    """How the client classifies the relay's answer to TUNNEL."""

    OK = "ok"
    ERROR = "error"
    UNEXPECTED = "unexpected"


class ServerResponse(BaseModel):
    """Relay answer to a tunnel request."""

    kind: ResponseKind
    text: str
    raw: str

    @property
    def ok(self) -> bool:
        return self.kind is ResponseKind.OK


def encode_tunnel_request(port: int) -> bytes:
    return f"{TUNNEL} {port}".encode(ENCODING)


def encode_ok(text: str) -> bytes:
    return f"{OK} {text}".encode(ENCODING, errors="replace")


def encode_error(text: str) -> bytes:
    return f"{ERROR} {text}".encode(ENCODING, errors="replace")


def encode_conn(port: int) -> bytes:
    return f"{CONN} {port}".encode(ENCODING)


def tunnel_established_text(port: int) -> str:
    return f"Tunnel established on port {port}"


def parse_tunnel_request(data: bytes) -> int:
    """Parse a TUNNEL request and return the requested port.

    Bytes following the port number are ignored.

    Raises:
        ProtocolViolationError: If the data is not a TUNNEL request.
    """
    match = _TUNNEL_RE.match(data)
    if match is None:
        preview = data[:64].decode(ENCODING, errors="replace")
        raise ProtocolViolationError(f"Invalid tunnel request: {preview!r}")
    return int(match.group(1))


def parse_response(data: bytes) -> ServerResponse:
    """Classify the relay's answer to a TUNNEL request.

    Only the literal OK and ERROR prefixes are meaningful; anything else is
    reported as UNEXPECTED rather than treated as an error.
    """
    raw = data.decode(ENCODING, errors="replace")
    if raw.startswith(ERROR):
        kind, text = ResponseKind.ERROR, raw[len(ERROR) + 1 :]
    elif raw.startswith(OK):
        kind, text = ResponseKind.OK, raw[len(OK) + 1 :]
    else:
        kind, text = ResponseKind.UNEXPECTED, raw
    return ServerResponse(kind=kind, text=text, raw=raw)


def parse_conn_signal(data: bytes) -> int | None:
    """Return the port of a CONN signal, or None if data is not one."""
    if not data.startswith(CONN.encode(ENCODING)):
        return None
    parts = data.split(b" ")
    if len(parts) != 2 or parts[0] != CONN.encode(ENCODING):
        return None
    digits = parts[1][1:] if parts[1][:1] in (b"+", b"-") else parts[1]
    if not digits.isdigit():
        return None
    return int(parts[1])
