"""HTTP forward proxy with CONNECT tunnelling.

Each accepted connection is parsed with h11. ``CONNECT host:port`` requests
take over the raw stream and become byte tunnels; every other request must
carry an absolute ``http``/``https`` URI and is re-issued through the
dialer-backed transport, with the upstream response relayed back as-is.
"""

from __future__ import annotations

import contextlib
import time
from collections.abc import AsyncIterator
from http import HTTPStatus

import h11
import httpx
import structlog

from meshgate.core.exceptions import DialError
from meshgate.observability.metrics import (
    ACTIVE_TUNNELS,
    DIAL_FAILURES,
    PROXY_REQUESTS,
    REQUEST_DURATION,
)
from meshgate.overlay.base import Connection, Dialer, split_host_port
from meshgate.proxy.listener import ProxyListener
from meshgate.proxy.pipe import pipe
from meshgate.proxy.transport import DialerTransport

logger = structlog.get_logger()

CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
CONNECT_FAILED = b"HTTP/1.1 502 Bad Gateway\r\n\r\n"

READ_SIZE = 65536


async def next_event(conn: h11.Connection, client: Connection) -> h11.Event | type[h11.PAUSED]:
    """Return the next h11 event, reading from the client as needed."""
    while True:
        event = conn.next_event()
        if event is h11.NEED_DATA:
            conn.receive_data(await client.reader.read(READ_SIZE))
            continue
        return event


async def send(conn: h11.Connection, client: Connection, event: h11.Event) -> None:
    data = conn.send(event)
    if data:
        client.writer.write(data)
        await client.writer.drain()


def absolute_url(target: str) -> httpx.URL | None:
    """Parse an absolute-form request target, or None if it is not one."""
    try:
        url = httpx.URL(target)
    except httpx.InvalidURL:
        return None
    if url.scheme not in ("http", "https") or not url.host:
        return None
    return url


def outbound_headers(event: h11.Request, url: httpx.URL) -> list[tuple[bytes, bytes]]:
    """Client headers for the upstream request, with Host taken from the absolute URI."""
    headers = [(name, value) for name, value in event.headers.raw_items() if name.lower() != b"host"]
    headers.insert(0, (b"Host", url.netloc))
    return headers


class _RequestBody(httpx.AsyncByteStream):
    """Streams the inbound request body straight out of the h11 parser."""

    def __init__(self, conn: h11.Connection, client: Connection) -> None:
        self._conn = conn
        self._client = client

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            event = await next_event(self._conn, self._client)
            if isinstance(event, h11.Data):
                yield bytes(event.data)
            elif isinstance(event, h11.EndOfMessage):
                return
            else:
                raise h11.RemoteProtocolError(f"unexpected event in request body: {event!r}")


class HTTPProxy(ProxyListener):
    """HTTP forward proxy; the front door for HTTP mode."""

    mode = "http"

    def __init__(
        self,
        dialer: Dialer,
        *,
        tunnel_dial_timeout: float | None = 30.0,
        connect_timeout: float | None = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(dialer)
        self.tunnel_dial_timeout = tunnel_dial_timeout
        self.transport = transport or DialerTransport(dialer, connect_timeout=connect_timeout)

    async def stop(self) -> None:
        await super().stop()
        await self.transport.aclose()

    async def handle_connection(self, client: Connection, remote: str) -> None:
        conn = h11.Connection(h11.SERVER)
        while True:
            try:
                event = await next_event(conn, client)
            except h11.RemoteProtocolError as e:
                logger.debug("Malformed request", remote=remote, error=str(e))
                await self._send_error(conn, client, e.error_status_hint, f"Bad Request: {e}")
                return
            if not isinstance(event, h11.Request):
                return

            method = event.method.decode("ascii")
            target = event.target.decode("latin-1")
            logger.info("Proxy request", remote=remote, method=method, target=target)
            PROXY_REQUESTS.labels(mode=self.mode, method=method).inc()

            if method == "CONNECT":
                await self.handle_tunnel(conn, client, target, remote)
                return

            if not await self.handle_http(conn, client, event, remote):
                return
            if conn.our_state is not h11.DONE or conn.their_state is not h11.DONE:
                return
            conn.start_next_cycle()

    async def handle_http(
        self,
        conn: h11.Connection,
        client: Connection,
        event: h11.Request,
        remote: str,
    ) -> bool:
        """Relay one plain request. Returns False when the connection must close."""
        target = event.target.decode("latin-1")
        url = absolute_url(target)
        if url is None:
            await self._send_error(
                conn, client, 400, f"Bad Request: proxy requests need an absolute URI, got {target!r}"
            )
            return False

        request = httpx.Request(
            event.method.decode("ascii"),
            url,
            headers=outbound_headers(event, url),
            stream=_RequestBody(conn, client),
        )
        started = time.perf_counter()
        try:
            response = await self.transport.handle_async_request(request)
        except httpx.TransportError as e:
            if isinstance(e, (httpx.ConnectError, httpx.ConnectTimeout)):
                DIAL_FAILURES.labels(mode=self.mode).inc()
            logger.warning("Forward request failed", remote=remote, target=target, error=str(e))
            await self._send_error(conn, client, 502, f"Proxy Error: {e}")
            return False
        except h11.RemoteProtocolError as e:
            await self._send_error(conn, client, 400, f"Bad Request: {e}")
            return False

        REQUEST_DURATION.observe(time.perf_counter() - started)
        try:
            await send(
                conn,
                client,
                h11.Response(
                    status_code=response.status_code,
                    headers=response.headers.raw,
                    reason=response.extensions.get("reason_phrase", b""),
                ),
            )
            async for chunk in response.aiter_raw():
                await send(conn, client, h11.Data(data=chunk))
            await send(conn, client, h11.EndOfMessage())
        except (httpx.TransportError, h11.LocalProtocolError) as e:
            # The head may already be out; the only signal left is closing.
            logger.warning("Response relay failed", remote=remote, target=target, error=str(e))
            return False
        finally:
            await response.aclose()
        return True

    async def handle_tunnel(
        self,
        conn: h11.Connection,
        client: Connection,
        target: str,
        remote: str,
    ) -> None:
        """Serve a CONNECT request by splicing the client onto a dialled stream."""
        try:
            event = await next_event(conn, client)
        except h11.RemoteProtocolError as e:
            await self._send_error(conn, client, e.error_status_hint, f"Bad Request: {e}")
            return
        if isinstance(event, h11.ConnectionClosed):
            return
        if isinstance(event, h11.Data):
            await self._send_error(conn, client, 400, "Bad Request: CONNECT request must not carry a body")
            return
        if not isinstance(event, h11.EndOfMessage) or conn.their_state is not h11.MIGHT_SWITCH_PROTOCOL:
            await self._send_error(conn, client, 500, "Hijacking not supported")
            return

        try:
            split_host_port(target)
        except ValueError as e:
            await self._send_error(conn, client, 400, f"Bad Request: {e}")
            return

        # From here on the stream is ours; h11 only hands back what it buffered.
        leftover, _ = conn.trailing_data

        try:
            upstream = await self.dial(target, self.tunnel_dial_timeout)
        except DialError as e:
            logger.warning("Tunnel dial failed", remote=remote, target=target, error=e.message)
            with contextlib.suppress(OSError):
                client.writer.write(CONNECT_FAILED)
                await client.writer.drain()
            return

        tunnels = ACTIVE_TUNNELS.labels(mode=self.mode)
        tunnels.inc()
        try:
            client.writer.write(CONNECT_ESTABLISHED)
            await client.writer.drain()
            sent, received = await pipe(client, upstream, protocol="connect", initial=bytes(leftover))
            logger.debug("Tunnel closed", remote=remote, target=target, sent=sent, received=received)
        finally:
            tunnels.dec()
            await upstream.aclose()

    async def _send_error(self, conn: h11.Connection, client: Connection, status: int, message: str) -> None:
        if conn.our_state not in (h11.IDLE, h11.SEND_RESPONSE):
            return
        body = f"{message}\n".encode()
        headers = [
            ("content-type", "text/plain; charset=utf-8"),
            ("x-content-type-options", "nosniff"),
            ("content-length", str(len(body))),
            ("connection", "close"),
        ]
        with contextlib.suppress(h11.LocalProtocolError, OSError):
            await send(
                conn,
                client,
                h11.Response(status_code=status, headers=headers, reason=HTTPStatus(status).phrase.encode()),
            )
            await send(conn, client, h11.Data(data=body))
            await send(conn, client, h11.EndOfMessage())
