__version__ = "0.1.2"

from .mcp import (
    MCPError,
    TransportError,
    HTTPStatusError,
    ProtocolError,
    ResponseIdError,
    RPCError,
    MCPTimeoutError,
    HTTPTransport,
    MCPClient,
    create_http_client,
)
from .config import ConfigError, load_token, resolve_server_url
from .render import render_human_output

__all__ = [
    "MCPError",
    "TransportError",
    "HTTPStatusError",
    "ProtocolError",
    "ResponseIdError",
    "RPCError",
    "MCPTimeoutError",
    "HTTPTransport",
    "MCPClient",
    "create_http_client",
    "ConfigError",
    "load_token",
    "resolve_server_url",
    "render_human_output",
]
