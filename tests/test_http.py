"""End-to-end tests of HTTPTransport and MCPClient against a local HTTP server."""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from mcdcn.mcp import (
    HTTPStatusError,
    HTTPTransport,
    MCPTimeoutError,
    TransportError,
    create_http_client,
)


class MCPHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        message = json.loads(self.rfile.read(length))
        self.server.requests.append((self.headers, message))
        status, headers, body = self.server.reply(self.server, message)
        try:
            self.send_response(status)
            for name, value in headers.items():
                self.send_header(name, value)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if self.server.trickle and message.get("method") == "tools/call":
                for i in range(len(body)):
                    self.wfile.write(body[i:i + 1])
                    self.wfile.flush()
                    time.sleep(self.server.trickle)
            else:
                self.wfile.write(body)
        except OSError:
            # Client went away (aborted or timed out)
            pass

    def log_message(self, format, *args):
        pass


def mcp_reply(server, message):
    """A well-behaved server: session on initialize, JSON or SSE results."""
    if "id" not in message:
        return 202, {}, b""
    headers = {"Content-Type": "application/json"}
    if message["method"] == "initialize":
        headers["Mcp-Session-Id"] = "sess-1"
        result = {"protocolVersion": "2025-06-18", "capabilities": {}, "serverInfo": {"name": "test"}}
    else:
        # A different id on a later response must not replace the first one
        headers["Mcp-Session-Id"] = "sess-2"
        result = {"echo": message["params"]}
    body = json.dumps({"jsonrpc": "2.0", "id": message["id"], "result": result})
    if message["method"] == "tools/call" and server.use_sse:
        headers["Content-Type"] = "text/event-stream"
        body = (
            ": keepalive\n\n"
            "event: message\n"
            'data: {"jsonrpc":"2.0","method":"notifications/progress","params":{"progress":1}}\n\n'
            f"event: message\ndata: {body}\n\n"
        )
    return 200, headers, body.encode()


@pytest.fixture
def server():
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), MCPHandler)
    httpd.daemon_threads = True
    httpd.requests = []
    httpd.reply = mcp_reply
    httpd.use_sse = False
    httpd.trickle = None
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def url_for(httpd):
    return f"http://127.0.0.1:{httpd.server_address[1]}/mcp"


class TestHTTPTransport:
    def test_rejects_bad_scheme(self):
        with pytest.raises(ValueError, match="scheme"):
            HTTPTransport("ftp://example.com/mcp", "tok")

    def test_rejects_missing_host(self):
        with pytest.raises(ValueError, match="hostname"):
            HTTPTransport("http:///mcp", "tok")

    def test_path_and_query(self):
        transport = HTTPTransport("https://example.com:8443/mcp?x=1", "tok")
        assert transport.use_ssl
        assert transport.port == 8443
        assert transport.path == "/mcp?x=1"

    def test_connection_refused(self):
        transport = HTTPTransport("http://127.0.0.1:1/mcp", "tok")
        with pytest.raises(TransportError, match="request failed"):
            with transport.post(b"{}", timeout=5):
                pass

    def test_rejected_header_value(self):
        client = create_http_client("http://127.0.0.1:1/mcp", "tok\nX-Injected: 1")
        with pytest.raises(TransportError, match="create request"):
            client.call_tool("now-time-info")

    def test_post_after_close(self):
        transport = HTTPTransport("http://127.0.0.1:1/mcp", "tok")
        transport.close()
        with pytest.raises(TransportError, match="closed"):
            with transport.post(b"{}"):
                pass


class TestClientOverHTTP:
    def test_headers_and_session(self, server):
        with create_http_client(url_for(server), "secret") as client:
            assert client.call_tool("now-time-info") == {"echo": {"name": "now-time-info"}}
            assert client.call_tool("my-coupons", {"page": "2"}) == {
                "echo": {"name": "my-coupons", "arguments": {"page": "2"}},
            }
            assert client.session_id == "sess-1"

        headers = [h for h, _ in server.requests]
        for h in headers:
            assert h["Authorization"] == "Bearer secret"
            assert h["Content-Type"] == "application/json"
            assert h["Accept"] == "application/json, text/event-stream"
            assert h["User-Agent"] == "mcd-cn/0.1.2"

        assert headers[0].get("Mcp-Session-Id") is None
        assert [h["Mcp-Session-Id"] for h in headers[1:]] == ["sess-1"] * 3
        assert [m["method"] for _, m in server.requests] == [
            "initialize", "initialized", "tools/call", "tools/call",
        ]

    def test_sse_response(self, server):
        server.use_sse = True
        with create_http_client(url_for(server), "secret") as client:
            assert client.call_tool("available-coupons") == {"echo": {"name": "available-coupons"}}

    def test_http_error(self, server):
        server.reply = lambda srv, message: (401, {"Content-Type": "text/plain"}, b"invalid\n  token")
        with create_http_client(url_for(server), "bad") as client:
            with pytest.raises(HTTPStatusError) as exc_info:
                client.call_tool("my-coupons")
        assert str(exc_info.value) == "mcp error: 401 Unauthorized: invalid token"
        assert not client.initialized


class TestCancellation:
    @pytest.fixture
    def stalled_server(self, server):
        received = threading.Event()
        release = threading.Event()

        def reply(srv, message):
            if message.get("method") == "tools/call":
                received.set()
                release.wait(10)
            return mcp_reply(srv, message)

        server.reply = reply
        yield server, received
        release.set()

    def test_timeout(self, stalled_server):
        server, _ = stalled_server
        client = create_http_client(url_for(server), "secret")
        client.initialize()
        started = time.monotonic()
        with pytest.raises(MCPTimeoutError):
            client.call_tool("now-time-info", timeout=0.5)
        assert time.monotonic() - started < 5

    def test_close_aborts_in_flight_call(self, stalled_server):
        server, received = stalled_server
        client = create_http_client(url_for(server), "secret", timeout=None)
        errors = []

        def worker():
            try:
                client.call_tool("now-time-info")
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=worker)
        thread.start()
        assert received.wait(5)
        time.sleep(0.1)
        client.close()
        thread.join(5)

        assert not thread.is_alive()
        assert len(errors) == 1
        assert isinstance(errors[0], TransportError)


class TestSlowBody:
    @pytest.mark.parametrize("use_sse", [False, True])
    def test_trickled_body_stops_at_deadline(self, server, use_sse):
        server.use_sse = use_sse
        server.trickle = 0.1
        client = create_http_client(url_for(server), "secret")
        client.initialize()
        started = time.monotonic()
        with pytest.raises(MCPTimeoutError):
            client.call_tool("now-time-info", timeout=1.0)
        assert time.monotonic() - started < 2.0
        client.close()

    def test_trickled_body_within_budget(self, server):
        server.trickle = 0.001
        with create_http_client(url_for(server), "secret") as client:
            assert client.call_tool("now-time-info", timeout=10) == {"echo": {"name": "now-time-info"}}

    def test_close_aborts_trickled_body(self, server):
        server.trickle = 0.2
        client = create_http_client(url_for(server), "secret", timeout=None)
        client.initialize()
        errors = []

        def worker():
            try:
                client.call_tool("now-time-info")
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=worker)
        thread.start()
        time.sleep(0.5)
        client.close()
        thread.join(5)

        assert not thread.is_alive()
        assert len(errors) == 1
        assert isinstance(errors[0], TransportError)
