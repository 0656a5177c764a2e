"""
MCP (Model Context Protocol) Client

A small client for the Streamable HTTP transport: every JSON-RPC 2.0 message
is sent as its own HTTP POST, and the server answers either with a plain JSON
body or with a server-sent event stream carrying the response.

Only the standard library is used for HTTP (http.client, one TCP connection
per message).

Thread Safety: Public MCPClient methods serialize on an internal lock, so a
client may be shared between threads but only one call is on the wire at a
time. Calling close() from another thread aborts an in-flight call, which
then raises TransportError.

Limitations:
- No HTTP keep-alive (new TCP connection per message)
- No retry or backoff; callers decide whether a failed call is worth repeating
- No SSL certificate configuration (uses system defaults)
- Responses are matched by id only; the number of unrelated SSE events skipped
  while waiting is not bounded, the call timeout is.
- Bodies are read one socket read at a time against the call deadline. The
  status line and headers are read by http.client, where each read gets the
  budget that was left when the request went out.
"""

from __future__ import annotations

import enum
import http.client
import json
import logging
import socket
import threading
import time
from contextlib import contextmanager
from typing import Any, BinaryIO, Callable, Iterator, Mapping, Optional, Union
from urllib.parse import urlparse

from . import __version__
from .utils import compact_snippet

logger = logging.getLogger('mcdcn')

# JSON-RPC 2.0 version string
JSONRPC_VERSION = "2.0"

# Client identity reported in the handshake and the User-Agent header
CLIENT_NAME = "mcd-cn"

# Overall budget for one public call (handshake included)
DEFAULT_TIMEOUT = 30.0

# Longest single SSE line accepted from the server (2 MiB)
MAX_SSE_LINE_SIZE = 2 * 1024 * 1024

# Most bytes taken from a response body per socket read
READ_CHUNK_SIZE = 64 * 1024

# Body excerpt length used in HTTP error messages
ERROR_SNIPPET_LIMIT = 300

SESSION_HEADER = "Mcp-Session-Id"
ACCEPT_HEADER = "application/json, text/event-stream"

# Sentinel for unspecified timeout (distinguishes "not passed" from "explicitly None")
_TIMEOUT_NOT_SPECIFIED = object()

__all__ = [
    # Exceptions
    "MCPError",
    "TransportError",
    "HTTPStatusError",
    "ProtocolError",
    "ResponseIdError",
    "RPCError",
    "MCPTimeoutError",
    # Wire codec
    "encode_request",
    "decode_response",
    "raise_for_error",
    # Correlation
    "RequestCounter",
    "id_matches",
    "response_id_matches",
    # SSE
    "read_sse_response",
    # Transport and client
    "ContentKind",
    "HTTPTransport",
    "MCPClient",
    "create_http_client",
]


# ============================================================================
# Exceptions
# ============================================================================

class MCPError(Exception):
    """Base exception for MCP errors."""
    pass


class TransportError(MCPError):
    """Transport-level error (request construction, connection, I/O)."""
    pass


class HTTPStatusError(TransportError):
    """The server answered with a 4xx/5xx status."""

    def __init__(self, message: str, status: int, reason: str = "", body: bytes = b""):
        self.status = status
        self.reason = reason
        self.body = body
        super().__init__(message)


class ProtocolError(MCPError):
    """Protocol-level error (undecodable or empty response)."""
    pass


class ResponseIdError(ProtocolError):
    """No response carrying the id of the outstanding request."""
    pass


class RPCError(MCPError):
    """JSON-RPC error returned by the server."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"mcp error {code}: {message}")


class MCPTimeoutError(MCPError, TimeoutError):
    """Timeout waiting for server response."""
    pass


def _status_text(status: int, reason: str) -> str:
    return f"{status} {reason}".strip()


def _http_error(status: int, reason: str, body: bytes) -> HTTPStatusError:
    snippet = compact_snippet(body.decode('utf-8', errors='replace'), ERROR_SNIPPET_LIMIT)
    message = f"mcp error: {_status_text(status, reason)}"
    if snippet:
        message += f": {snippet}"
    return HTTPStatusError(message, status, reason, body)


# ============================================================================
# Wire Codec
# ============================================================================

def encode_request(
    method: str,
    params: Optional[Mapping[str, Any]] = None,
    request_id: Optional[str] = None
) -> bytes:
    """
    Serialize a JSON-RPC request as compact UTF-8 JSON.

    A request without an id is a notification. params is left out entirely
    when None.
    """
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
    if request_id is not None:
        message["id"] = request_id
    message["method"] = method
    if params is not None:
        message["params"] = params
    try:
        return json.dumps(message, separators=(',', ':'), ensure_ascii=False).encode('utf-8')
    except (TypeError, ValueError) as e:
        raise TransportError(f"marshal request: {e}") from e


def decode_response(payload: Union[bytes, str]) -> dict[str, Any]:
    """
    Decode a JSON-RPC response envelope.

    Raises:
        ProtocolError: If the payload is not a JSON object, or its error
            member is not a well-formed error object.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"decode response: invalid UTF-8: {e}") from e
    try:
        message = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"decode response: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError(
            f"decode response: expected JSON object, got {type(message).__name__}"
        )

    error = message.get("error")
    if error is not None:
        if not isinstance(error, dict):
            raise ProtocolError(f"decode response: invalid error object {error!r}")
        code = error.get("code", 0)
        if not isinstance(code, int) or isinstance(code, bool):
            raise ProtocolError(f"decode response: invalid error code {code!r}")
        if not isinstance(error.get("message", ""), str):
            raise ProtocolError("decode response: error message must be a string")
    return message


def raise_for_error(message: Mapping[str, Any]) -> None:
    """Raise RPCError if a decoded envelope carries an error object."""
    error = message.get("error")
    if error is None:
        return
    raise RPCError(
        code=error.get("code", 0),
        message=error.get("message", ""),
        data=error.get("data")
    )


# ============================================================================
# Request Correlation
# ============================================================================

class RequestCounter:
    """Hands out request ids "1", "2", ... for one client. Ids are never reused."""

    def __init__(self) -> None:
        self._next = 1

    def allocate(self) -> str:
        request_id = str(self._next)
        self._next += 1
        return request_id


def id_matches(response_id: Any, request_id: str) -> bool:
    """
    Compare a decoded response id with the id we sent.

    Request ids are always strings, but servers are observed to echo them back
    as bare numbers. A string id compares by value; any other JSON literal
    compares by its JSON text, so both "3" and 3 match request id "3".
    """
    if isinstance(response_id, str):
        return response_id == request_id
    return json.dumps(response_id) == request_id


def response_id_matches(message: Mapping[str, Any], request_id: str) -> bool:
    if "id" not in message:
        return False
    return id_matches(message["id"], request_id)


# ============================================================================
# Response Bodies
# ============================================================================

def _read_chunk(
    stream: BinaryIO,
    what: str,
    deadline: Optional[float] = None,
    set_timeout: Optional[Callable[[float], None]] = None,
    error_prefix: str = "read response"
) -> bytes:
    """
    Read the next piece of a response body, or b"" at the end of it.

    read1() makes at most one socket read, and set_timeout gives that read
    only what is left of the budget, so a server trickling bytes can't hold
    the call past its deadline.

    Raises:
        MCPTimeoutError: If the deadline has passed or the read times out.
        TransportError: On any other read failure.
    """
    remaining = None
    if deadline is not None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise MCPTimeoutError(f"Timeout waiting for {what}")

    try:
        if remaining is not None and set_timeout is not None:
            set_timeout(remaining)
        return stream.read1(READ_CHUNK_SIZE)
    except socket.timeout as e:
        raise MCPTimeoutError(f"Timeout waiting for {what}") from e
    except (OSError, ValueError, http.client.HTTPException) as e:
        raise TransportError(f"{error_prefix}: {e}") from e


def _read_body(
    stream: BinaryIO,
    what: str,
    deadline: Optional[float] = None,
    set_timeout: Optional[Callable[[float], None]] = None
) -> bytes:
    """Read a whole response body chunk by chunk under one deadline."""
    chunks = []
    while chunk := _read_chunk(stream, what, deadline, set_timeout):
        chunks.append(chunk)
    return b"".join(chunks)


# ============================================================================
# SSE Decoding
# ============================================================================

def _iter_sse_lines(
    stream: BinaryIO,
    request_id: str,
    deadline: Optional[float],
    set_timeout: Optional[Callable[[float], None]]
) -> Iterator[str]:
    """Yield complete lines of an event stream, line terminators removed."""
    pending = bytearray()
    what = f"response to request {request_id}"

    while chunk := _read_chunk(stream, what, deadline, set_timeout, error_prefix="read sse"):
        scan_from = len(pending)
        pending += chunk
        start = 0
        while (end := pending.find(b"\n", scan_from)) != -1:
            raw = bytes(pending[start:end])
            if len(raw) > MAX_SSE_LINE_SIZE:
                raise TransportError(f"read sse: line exceeds {MAX_SSE_LINE_SIZE} bytes")
            yield raw.decode('utf-8', errors='replace').rstrip("\r")
            start = scan_from = end + 1
        del pending[:start]
        if len(pending) > MAX_SSE_LINE_SIZE:
            raise TransportError(f"read sse: line exceeds {MAX_SSE_LINE_SIZE} bytes")


def read_sse_response(
    stream: BinaryIO,
    request_id: str,
    deadline: Optional[float] = None,
    set_timeout: Optional[Callable[[float], None]] = None
) -> Any:
    """
    Scan an event stream for the response to request_id and return its result.

    Events that don't decode, server-initiated messages and responses to other
    requests are skipped. An error response stops the scan.

    Args:
        stream: Binary stream supporting read1() (e.g. an HTTPResponse).
        request_id: Id of the outstanding request.
        deadline: time.monotonic() value after which the scan gives up.
        set_timeout: Called with the remaining budget before every read,
                    typically HTTPTransport.set_read_timeout.

    Raises:
        RPCError: If the server sends an error response.
        ResponseIdError: If the stream ends without a matching response.
        TransportError: On read errors or oversized lines.
        MCPTimeoutError: If the deadline passes or the socket times out.
    """
    data_lines: list[str] = []

    for line in _iter_sse_lines(stream, request_id, deadline, set_timeout):
        if line:
            if line.startswith("data:"):
                # SSE framing: remove only a single leading space if present
                value = line[5:]
                if value.startswith(" "):
                    value = value[1:]
                data_lines.append(value)
            # event:, id:, retry: and ":" comments carry nothing we need
            continue

        if not data_lines:
            continue

        payload = "\n".join(data_lines)
        data_lines = []

        try:
            message = decode_response(payload)
        except ProtocolError:
            logger.debug(f"Skipping non-JSON-RPC SSE event: {payload[:100]}")
            continue

        if "method" in message:
            logger.debug(f"Skipping server message: {message['method']}")
            continue

        raise_for_error(message)

        if response_id_matches(message, request_id):
            return message.get("result")

        logger.debug(f"Skipping response for id={message.get('id')!r}, waiting for {request_id}")

    raise ResponseIdError("no response received from MCP server")


# ============================================================================
# HTTP Transport
# ============================================================================

class ContentKind(enum.Enum):
    """How a response body has to be decoded."""

    JSON = "application/json"
    EVENT_STREAM = "text/event-stream"

    @classmethod
    def from_header(cls, content_type: Optional[str]) -> "ContentKind":
        if content_type and cls.EVENT_STREAM.value in content_type.lower():
            return cls.EVENT_STREAM
        return cls.JSON


class HTTPTransport:
    """
    One HTTP POST per JSON-RPC message.

    Carries the bearer token and content negotiation headers, and remembers
    the first Mcp-Session-Id the server hands out so every later request is
    routed to the same session.
    """

    def __init__(
        self,
        url: str,
        token: str,
        user_agent: str = f"{CLIENT_NAME}/{__version__}"
    ) -> None:
        """
        Args:
            url: The MCP endpoint URL (e.g., "https://example.com/mcp")
            token: Bearer token sent in the Authorization header.
            user_agent: Value of the User-Agent header.
        """
        self.url = url
        self.parsed = urlparse(url)

        if self.parsed.scheme not in ('http', 'https'):
            raise ValueError(
                f"Invalid URL scheme '{self.parsed.scheme or '(empty)'}': "
                f"expected 'http' or 'https'. Example: https://localhost:3000/mcp"
            )
        if not self.parsed.hostname:
            raise ValueError(
                f"Invalid URL '{url}': missing hostname. "
                f"Example: https://localhost:3000/mcp"
            )

        self.host = self.parsed.hostname
        self.use_ssl = self.parsed.scheme == 'https'
        self.port = self.parsed.port or (443 if self.use_ssl else 80)
        self.path = self.parsed.path or '/'
        if self.parsed.query:
            self.path += '?' + self.parsed.query

        self.token = token
        self.user_agent = user_agent
        self._session_id: Optional[str] = None
        self._closed = False
        self._conn: Optional[http.client.HTTPConnection] = None
        # http.client drops conn.sock once a response owns the connection
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()  # Protects _closed, _conn and _sock

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def closed(self) -> bool:
        return self._closed

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Accept": ACCEPT_HEADER,
            "User-Agent": self.user_agent,
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    def _create_connection(self, timeout: Optional[float]) -> http.client.HTTPConnection:
        if self.use_ssl:
            return http.client.HTTPSConnection(self.host, self.port, timeout=timeout)
        return http.client.HTTPConnection(self.host, self.port, timeout=timeout)

    def _capture_session_id(self, response: http.client.HTTPResponse) -> None:
        if self._session_id:
            return
        value = (response.getheader(SESSION_HEADER) or "").strip()
        if value:
            self._session_id = value
            logger.debug(f"Captured MCP session id {value}")

    @contextmanager
    def post(self, body: bytes, timeout: Optional[float] = None) -> Iterator[http.client.HTTPResponse]:
        """
        POST body to the endpoint and yield the response.

        The connection is closed when the block exits, which also discards any
        unread part of the body.

        Args:
            body: Encoded JSON-RPC message.
            timeout: Socket timeout in seconds. None blocks indefinitely.

        Raises:
            TransportError: If the request can't be sent, or close() was called
                while the response was being read.
            MCPTimeoutError: If the server doesn't answer in time.
        """
        with self._lock:
            if self._closed:
                raise TransportError("Transport closed")
            conn = self._create_connection(timeout)
            self._conn = conn

        try:
            headers = self._headers()
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("----------- TO MCP -----------")
                logger.debug(f"POST {self.url}")
                logger.debug(body.decode('utf-8', errors='replace'))
            try:
                conn.request("POST", self.path, body, headers)
                with self._lock:
                    self._sock = conn.sock
                response = conn.getresponse()
            except (ValueError, http.client.InvalidURL) as e:
                # Header values or the path rejected before anything was sent
                raise TransportError(f"create request: {e}") from e
            except socket.timeout as e:
                raise MCPTimeoutError(f"request timed out: {e}") from e
            except (OSError, http.client.HTTPException) as e:
                if self._closed:
                    raise TransportError("request aborted: transport closed") from e
                raise TransportError(f"request failed: {e}") from e

            self._capture_session_id(response)
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("---------- FROM MCP ----------")
                logger.debug(
                    f"{_status_text(response.status, response.reason)} "
                    f"{response.getheader('Content-Type')}"
                )

            try:
                yield response
            except MCPError as e:
                if self._closed and not isinstance(e, TransportError):
                    raise TransportError("request aborted: transport closed") from e
                raise
        finally:
            with self._lock:
                self._conn = None
                self._sock = None
            conn.close()

    def set_read_timeout(self, timeout: Optional[float]) -> None:
        """Set the socket timeout for the next read of the in-flight response."""
        with self._lock:
            sock = self._sock
        if sock is not None:
            sock.settimeout(timeout)

    def close(self) -> None:
        """
        Close the transport. Safe to call from another thread.

        An in-flight request is woken up by shutting its socket down; the
        request's own thread then closes the connection.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            conn = self._conn
            sock = self._sock

        if sock is None and conn is not None:
            sock = conn.sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Socket already closed or never connected
                pass


# ============================================================================
# MCP Client
# ============================================================================

class MCPClient:
    """
    Model Context Protocol (MCP) Client.

    The initialize/initialized handshake runs lazily before the first tool
    call and only once per client; a failed handshake is retried by the next
    call.

    Usage:
        client = create_http_client("https://example.com/mcp", token)
        result = client.call_tool("now-time-info")
        client.close()

    Or use as context manager:
        with create_http_client("https://example.com/mcp", token) as client:
            result = client.call_tool("my_tool", {"arg": "value"})
    """

    # MCP Protocol version we implement
    PROTOCOL_VERSION = "2025-06-18"

    def __init__(
        self,
        url: str,
        token: str,
        client_name: str = CLIENT_NAME,
        client_version: str = __version__,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        transport: Optional[HTTPTransport] = None
    ) -> None:
        """
        Args:
            url: The MCP endpoint URL.
            token: Bearer token for the Authorization header.
            client_name: Client name reported during handshake.
            client_version: Client version reported during handshake.
            timeout: Default timeout in seconds for each public call. Individual
                    calls can override this. None disables the deadline.
            transport: Transport to use instead of an HTTPTransport built
                    from url and token.
        """
        self.url = url
        self.client_name = client_name
        self.client_version = client_version
        self.default_timeout = timeout
        self.transport = transport or HTTPTransport(
            url, token, user_agent=f"{client_name}/{client_version}"
        )

        self._ids = RequestCounter()
        self._initialized = False
        self._init_result: Any = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def session_id(self) -> Optional[str]:
        """Session id assigned by the server, once one has been seen."""
        return self.transport.session_id

    @property
    def init_result(self) -> Any:
        """Full initialize response from the server (includes all fields)."""
        return self._init_result

    @property
    def server_info(self) -> Optional[dict[str, Any]]:
        """Server information from the handshake (name, version)."""
        if not isinstance(self._init_result, dict):
            return None
        return self._init_result.get("serverInfo", {})

    def _deadline(self, timeout: Any) -> Optional[float]:
        if timeout is _TIMEOUT_NOT_SPECIFIED:
            timeout = self.default_timeout
        if timeout is None:
            return None
        return time.monotonic() + timeout

    def initialize(self, timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED) -> None:
        """
        Run the handshake now instead of on the first tool call.

        Does nothing if the client is already initialized.
        """
        with self._lock:
            self._ensure_initialized(self._deadline(timeout))

    def _ensure_initialized(self, deadline: Optional[float]) -> None:
        """Perform the handshake once. Caller must hold _lock."""
        if self._initialized:
            return

        # We only advertise capabilities we actually implement (none).
        init_params = {
            "protocolVersion": self.PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {
                "name": self.client_name,
                "version": self.client_version
            }
        }

        result = self._rpc("initialize", init_params, deadline=deadline)
        self._rpc("initialized", deadline=deadline, expect_response=False)

        self._init_result = result
        self._initialized = True
        logger.info(f"MCP session initialized with {self.url}")

    def call_tool(
        self,
        name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED
    ) -> Any:
        """
        Call a tool on the server, performing the handshake first if needed.

        Args:
            name: The tool name to invoke.
            arguments: Tool arguments. Left out of the request when empty.
            timeout: Budget in seconds for the whole call, handshake included.
                    If not specified, uses self.default_timeout. Pass None
                    explicitly to wait forever.

        Returns:
            The raw "result" member of the response, untouched.

        Raises:
            ValueError: If tool name is empty.
            RPCError: If the server answers with a JSON-RPC error.
            MCPError: On transport, HTTP, decoding or correlation failures.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Tool name must be a non-empty string")

        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = dict(arguments)

        with self._lock:
            deadline = self._deadline(timeout)
            self._ensure_initialized(deadline)
            return self._rpc("tools/call", params, deadline=deadline)

    def _rpc(
        self,
        method: str,
        params: Optional[Mapping[str, Any]] = None,
        deadline: Optional[float] = None,
        expect_response: bool = True
    ) -> Any:
        """
        Send one JSON-RPC message and, for requests, return the result.

        Caller must hold _lock.
        """
        request_id = self._ids.allocate() if expect_response else None
        body = encode_request(method, params, request_id)

        socket_timeout = None
        if deadline is not None:
            socket_timeout = deadline - time.monotonic()
            if socket_timeout <= 0:
                raise MCPTimeoutError(f"Timeout before sending {method}")

        with self.transport.post(body, timeout=socket_timeout) as response:
            if request_id is None:
                _read_body(response, f"{method} notification", deadline, self.transport.set_read_timeout)
                if response.status >= 400:
                    raise HTTPStatusError(
                        f"mcp notification failed: {_status_text(response.status, response.reason)}",
                        response.status, response.reason
                    )
                return None

            kind = ContentKind.from_header(response.getheader("Content-Type"))
            if kind is ContentKind.EVENT_STREAM:
                return read_sse_response(
                    response, request_id, deadline, self.transport.set_read_timeout
                )
            return self._read_json_response(response, request_id, deadline)

    def _read_json_response(
        self,
        response: http.client.HTTPResponse,
        request_id: str,
        deadline: Optional[float] = None
    ) -> Any:
        body = _read_body(
            response, f"response to request {request_id}", deadline, self.transport.set_read_timeout
        )

        if not body.strip():
            if response.status >= 400:
                raise _http_error(response.status, response.reason, body)
            raise ProtocolError("empty response from MCP server")

        try:
            message = decode_response(body)
        except ProtocolError as e:
            if response.status >= 400:
                raise _http_error(response.status, response.reason, body) from e
            raise

        raise_for_error(message)

        if not response_id_matches(message, request_id):
            raise ResponseIdError("unexpected response id from MCP server")

        return message.get("result")

    def close(self) -> None:
        """
        Close the client. Safe to call multiple times, and from another
        thread to abort a call in progress.
        """
        self.transport.close()

    def __enter__(self) -> "MCPClient":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures connection is closed."""
        self.close()
        return False


# ============================================================================
# Factory Functions
# ============================================================================

def create_http_client(
    url: str,
    token: str,
    client_name: str = CLIENT_NAME,
    client_version: str = __version__,
    timeout: Optional[float] = DEFAULT_TIMEOUT
) -> MCPClient:
    """
    Create a client for a Streamable HTTP MCP server.

    No network traffic happens until the first call.

    Args:
        url: The MCP endpoint URL (e.g., "https://example.com/mcp").
        token: Bearer token for the Authorization header.
        client_name: Client name for protocol handshake.
        client_version: Client version for protocol handshake.
        timeout: Default timeout in seconds for each call (default 30).

    Example:
        client = create_http_client("https://example.com/mcp", "token123")
        result = client.call_tool("now-time-info")
    """
    transport = HTTPTransport(url, token, user_agent=f"{client_name}/{client_version}")
    return MCPClient(url, token, client_name, client_version, timeout, transport)
