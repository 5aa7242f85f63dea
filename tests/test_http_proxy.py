"""Tests for the HTTP forward proxy and CONNECT tunnels."""

from __future__ import annotations

import asyncio

import h11
import httpx
import pytest
import pytest_asyncio
from fakes import FakeDialer, HangingDialer
from structlog.testing import capture_logs

from meshgate.overlay.base import Connection
from meshgate.proxy.http import (
    CONNECT_ESTABLISHED,
    CONNECT_FAILED,
    HTTPProxy,
    absolute_url,
    next_event,
    outbound_headers,
)


class _RecordingWriter:
    """Collects what the proxy writes back to a client."""

    def __init__(self) -> None:
        self.data = b""

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        pass


@pytest_asyncio.fixture
async def proxy(fake_dialer: FakeDialer):
    proxy = HTTPProxy(fake_dialer, tunnel_dial_timeout=5.0, connect_timeout=5.0)
    await proxy.start("127.0.0.1", 0)
    yield proxy
    await proxy.stop()


def _proxy_url(proxy: HTTPProxy) -> str:
    host, port = proxy.address
    return f"http://{host}:{port}"


async def _open(proxy: HTTPProxy) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection(*proxy.address)


async def _connect(proxy: HTTPProxy, target: str, extra: bytes = b""):
    reader, writer = await _open(proxy)
    writer.write(f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n\r\n".encode() + extra)
    await writer.drain()
    return reader, writer


class TestAbsoluteURL:
    """Tests for request-target parsing."""

    def test_absolute_http(self):
        url = absolute_url("http://web.tailnet:8080/a?b=c")
        assert url is not None
        assert url.host == "web.tailnet"
        assert url.port == 8080
        assert url.raw_path == b"/a?b=c"

    def test_absolute_https(self):
        assert absolute_url("https://secure.tailnet/") is not None

    def test_origin_form_rejected(self):
        assert absolute_url("/just/a/path") is None

    def test_other_scheme_rejected(self):
        assert absolute_url("ftp://files.tailnet/") is None

    def test_outbound_host_from_uri(self):
        request = h11.Request(
            method="GET",
            target="http://web.tailnet:8080/x",
            headers=[("Host", "other.example"), ("X-Custom", "1")],
        )
        headers = outbound_headers(request, absolute_url("http://web.tailnet:8080/x"))
        assert headers == [(b"Host", b"web.tailnet:8080"), (b"X-Custom", b"1")]


class TestForwardProxy:
    """Plain (non-CONNECT) requests relayed through the dialer."""

    @pytest.mark.asyncio
    async def test_relays_status_body_and_headers(self, proxy, fake_dialer, upstream_server):
        """The client sees upstream status and body exactly and a superset of its headers."""
        fake_dialer.route("web.tailnet:80", upstream_server)

        async with httpx.AsyncClient(proxy=_proxy_url(proxy)) as client:
            response = await client.get("http://web.tailnet/hello")

        assert response.status_code == 201
        assert response.text == "hello from the tailnet"
        assert response.headers["x-upstream"] == "yes"
        assert response.headers["x-seen-host"] == "web.tailnet"
        assert fake_dialer.calls[0][:2] == ("tcp", "web.tailnet:80")

    @pytest.mark.asyncio
    async def test_relays_request_body_and_headers(self, proxy, fake_dialer, upstream_server):
        fake_dialer.route("api.tailnet:8000", upstream_server)

        async with httpx.AsyncClient(proxy=_proxy_url(proxy)) as client:
            response = await client.post(
                "http://api.tailnet:8000/echo",
                content=b"payload-bytes",
                headers={"X-Custom": "kept"},
            )

        assert response.status_code == 200
        assert response.content == b"payload-bytes"
        assert response.headers["x-echo-custom"] == "kept"

    @pytest.mark.asyncio
    async def test_relays_chunked_response(self, proxy, fake_dialer, upstream_server):
        fake_dialer.route("web.tailnet:80", upstream_server)

        async with httpx.AsyncClient(proxy=_proxy_url(proxy)) as client:
            response = await client.get("http://web.tailnet/stream")

        assert response.status_code == 200
        assert response.text == "chunk-0;chunk-1;chunk-2;"

    @pytest.mark.asyncio
    async def test_keep_alive_serves_several_requests(self, proxy, fake_dialer, upstream_server):
        fake_dialer.route("web.tailnet:80", upstream_server)

        async with httpx.AsyncClient(proxy=_proxy_url(proxy)) as client:
            first = await client.get("http://web.tailnet/hello")
            second = await client.get("http://web.tailnet/hello")

        assert first.status_code == second.status_code == 201

    @pytest.mark.asyncio
    async def test_dial_failure_returns_502(self, proxy, fake_dialer):
        """An unreachable target yields 502 with the dial error in the body."""
        async with httpx.AsyncClient(proxy=_proxy_url(proxy)) as client:
            response = await client.get("http://nowhere.tailnet/")

        assert response.status_code == 502
        assert response.text.startswith("Proxy Error: dial tcp nowhere.tailnet:80")
        assert "refused" in response.text
        assert response.headers["content-type"].startswith("text/plain")

    @pytest.mark.asyncio
    async def test_dial_failure_is_not_retried(self, proxy, fake_dialer):
        async with httpx.AsyncClient(proxy=_proxy_url(proxy)) as client:
            await client.get("http://nowhere.tailnet/")

        assert len(fake_dialer.calls) == 1

    @pytest.mark.asyncio
    async def test_origin_form_request_is_400(self, proxy):
        reader, writer = await _open(proxy)
        writer.write(b"GET /local HTTP/1.1\r\nHost: example\r\n\r\n")
        await writer.drain()

        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()

        assert data.startswith(b"HTTP/1.1 400 ")
        assert b"absolute URI" in data

    @pytest.mark.asyncio
    async def test_garbage_is_400(self, proxy):
        reader, writer = await _open(proxy)
        writer.write(b"this is not http\r\n\r\n")
        await writer.drain()

        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()

        assert data.startswith(b"HTTP/1.1 400 ")

    @pytest.mark.asyncio
    async def test_http10_request_without_host_is_forwarded(self, proxy, fake_dialer, upstream_server):
        """Host for the upstream request comes from the absolute URI."""
        fake_dialer.route("web.tailnet:80", upstream_server)
        reader, writer = await _open(proxy)
        writer.write(b"GET http://web.tailnet/hello HTTP/1.0\r\n\r\n")
        await writer.drain()

        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()

        assert data.startswith(b"HTTP/1.1 201 ")
        assert b"hello from the tailnet" in data
        assert b"x-seen-host: web.tailnet\r\n" in data.lower()

    @pytest.mark.asyncio
    async def test_host_header_replaced_by_uri_host(self, proxy, fake_dialer, upstream_server):
        fake_dialer.route("web.tailnet:8080", upstream_server)
        reader, writer = await _open(proxy)
        writer.write(b"GET http://web.tailnet:8080/hello HTTP/1.1\r\nHost: other.example\r\nConnection: close\r\n\r\n")
        await writer.drain()

        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()

        assert data.startswith(b"HTTP/1.1 201 ")
        assert b"x-seen-host: web.tailnet:8080\r\n" in data.lower()

    @pytest.mark.asyncio
    async def test_error_status_line_has_reason(self, proxy):
        reader, writer = await _open(proxy)
        writer.write(b"GET http://nowhere.tailnet/ HTTP/1.1\r\nHost: nowhere.tailnet\r\n\r\n")
        await writer.drain()

        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()

        assert data.startswith(b"HTTP/1.1 502 Bad Gateway\r\n")

    @pytest.mark.asyncio
    async def test_request_is_logged(self, proxy, fake_dialer, upstream_server):
        fake_dialer.route("web.tailnet:80", upstream_server)

        with capture_logs() as logs:
            async with httpx.AsyncClient(proxy=_proxy_url(proxy)) as client:
                await client.get("http://web.tailnet/hello")

        entries = [entry for entry in logs if entry["event"] == "Proxy request"]
        assert len(entries) == 1
        assert entries[0]["log_level"] == "info"
        assert entries[0]["method"] == "GET"
        assert entries[0]["target"] == "http://web.tailnet/hello"
        assert entries[0]["remote"].startswith("127.0.0.1:")


class TestConnectTunnel:
    """CONNECT tunnels through the dialer."""

    @pytest.mark.asyncio
    async def test_established_line_then_echo(self, proxy, fake_dialer, echo_server):
        fake_dialer.route("echo.tailnet:7", echo_server)
        reader, writer = await _connect(proxy, "echo.tailnet:7")

        head = await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 5)
        assert head == b"HTTP/1.1 200 Connection Established\r\n\r\n"

        writer.write(b"ping")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(4), 5) == b"ping"
        writer.close()

    @pytest.mark.asyncio
    async def test_pipelined_bytes_are_forwarded(self, proxy, fake_dialer, echo_server):
        """Bytes sent right behind the CONNECT head reach the target after the 200 line."""
        fake_dialer.route("echo.tailnet:7", echo_server)
        reader, writer = await _connect(proxy, "echo.tailnet:7", extra=b"early-bytes")

        expected = CONNECT_ESTABLISHED + b"early-bytes"
        assert await asyncio.wait_for(reader.readexactly(len(expected)), 5) == expected
        writer.close()

    @pytest.mark.asyncio
    async def test_half_close_lets_response_finish(self, proxy, fake_dialer, echo_server):
        """Client EOF reaches the target, whose remaining output still reaches the client."""
        fake_dialer.route("echo.tailnet:7", echo_server)
        reader, writer = await _connect(proxy, "echo.tailnet:7")
        await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 5)

        writer.write(b"last words")
        writer.write_eof()
        await writer.drain()

        assert await asyncio.wait_for(reader.read(), 5) == b"last words"
        writer.close()

    @pytest.mark.asyncio
    async def test_dial_failure_writes_exact_502_and_closes(self, proxy):
        reader, writer = await _connect(proxy, "nowhere.tailnet:443")

        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()

        assert data == CONNECT_FAILED
        assert data == b"HTTP/1.1 502 Bad Gateway\r\n\r\n"

    @pytest.mark.asyncio
    async def test_malformed_target_is_400(self, proxy, fake_dialer):
        reader, writer = await _connect(proxy, "no-port-here")

        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()

        assert data.startswith(b"HTTP/1.1 400 ")
        assert fake_dialer.calls == []


    @pytest.mark.asyncio
    async def test_connect_with_body_is_400(self, proxy, fake_dialer):
        reader, writer = await _open(proxy)
        writer.write(b"CONNECT echo.tailnet:7 HTTP/1.1\r\nHost: echo.tailnet:7\r\nContent-Length: 3\r\n\r\nabc")
        await writer.drain()

        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()

        assert data.startswith(b"HTTP/1.1 400 Bad Request\r\n")
        assert b"must not carry a body" in data
        assert fake_dialer.calls == []

    @pytest.mark.asyncio
    async def test_stream_not_switchable_is_500(self, fake_dialer):
        """A stream h11 will not hand over is refused before any dial."""
        proxy = HTTPProxy(fake_dialer)
        conn = h11.Connection(h11.SERVER)
        reader = asyncio.StreamReader()
        reader.feed_data(b"GET http://web.tailnet/ HTTP/1.1\r\nHost: web.tailnet\r\n\r\n")
        reader.feed_eof()
        writer = _RecordingWriter()
        client = Connection(reader, writer)

        try:
            assert isinstance(await next_event(conn, client), h11.Request)
            await proxy.handle_tunnel(conn, client, "web.tailnet:80", "127.0.0.1:5000")
        finally:
            await proxy.transport.aclose()

        assert writer.data.startswith(b"HTTP/1.1 500 Internal Server Error\r\n")
        assert writer.data.endswith(b"Hijacking not supported\n")
        assert fake_dialer.calls == []

    @pytest.mark.asyncio
    async def test_dial_timeout_writes_502(self):
        dialer = HangingDialer()
        proxy = HTTPProxy(dialer, tunnel_dial_timeout=0.2)
        await proxy.start("127.0.0.1", 0)
        try:
            reader, writer = await _connect(proxy, "slow.tailnet:443")
            data = await asyncio.wait_for(reader.read(), 5)
            writer.close()
        finally:
            await proxy.stop()

        assert data == CONNECT_FAILED
        assert dialer.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_tunnels_do_not_interfere(self, proxy, fake_dialer, echo_server):
        """Closing one tunnel leaves bytes in flight on the other intact."""
        fake_dialer.route("a.tailnet:7", echo_server)
        fake_dialer.route("b.tailnet:7", echo_server)

        reader_a, writer_a = await _connect(proxy, "a.tailnet:7")
        reader_b, writer_b = await _connect(proxy, "b.tailnet:7")
        await asyncio.wait_for(reader_a.readexactly(len(CONNECT_ESTABLISHED)), 5)
        await asyncio.wait_for(reader_b.readexactly(len(CONNECT_ESTABLISHED)), 5)

        writer_a.write(b"alpha")
        writer_b.write(b"bravo")
        await asyncio.gather(writer_a.drain(), writer_b.drain())
        assert await asyncio.wait_for(reader_a.readexactly(5), 5) == b"alpha"

        writer_a.close()
        await writer_a.wait_closed()

        assert await asyncio.wait_for(reader_b.readexactly(5), 5) == b"bravo"
        writer_b.write(b"still-open")
        await writer_b.drain()
        assert await asyncio.wait_for(reader_b.readexactly(10), 5) == b"still-open"
        writer_b.close()

    @pytest.mark.asyncio
    async def test_stop_closes_live_tunnels(self, fake_dialer, echo_server):
        fake_dialer.route("echo.tailnet:7", echo_server)
        proxy = HTTPProxy(fake_dialer)
        await proxy.start("127.0.0.1", 0)

        reader, writer = await _connect(proxy, "echo.tailnet:7")
        await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 5)
        assert proxy.active_sessions == 1

        await asyncio.wait_for(proxy.stop(), 5)

        assert proxy.active_sessions == 0
        assert await asyncio.wait_for(reader.read(), 5) == b""
        writer.close()
