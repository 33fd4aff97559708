"""Control protocol."""

from .messages import (
    CONN,
    ERROR,
    OK,
    TUNNEL,
    ResponseKind,
    ServerResponse,
    encode_conn,
    encode_error,
    encode_ok,
    encode_tunnel_request,
    parse_conn_signal,
    parse_response,
    parse_tunnel_request,
    tunnel_established_text,
)

__all__ = [
    "CONN",
    "ERROR",
    "OK",
    "TUNNEL",
    "ResponseKind",
    "ServerResponse",
    "encode_conn",
    "encode_error",
    "encode_ok",
    "encode_tunnel_request",
    "parse_conn_signal",
    "parse_response",
    "parse_tunnel_request",
    "tunnel_established_text",
]
