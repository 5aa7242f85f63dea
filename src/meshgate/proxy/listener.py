"""Accept loop shared by the HTTP and SOCKS5 proxies."""

from __future__ import annotations

import asyncio

import structlog

from meshgate.core.exceptions import DialError, ListenerError
from meshgate.observability.metrics import DIAL_FAILURES
from meshgate.overlay.base import Connection, Dialer, join_host_port

logger = structlog.get_logger()


def format_peer(writer: asyncio.StreamWriter) -> str:
    peer = writer.get_extra_info("peername")
    if isinstance(peer, tuple) and len(peer) >= 2:
        return join_host_port(str(peer[0]), int(peer[1]))
    return str(peer) if peer else "unknown"


class ProxyListener:
    """One TCP listener, one task per accepted connection.

    Subclasses implement :meth:`handle_connection`. Every session task is
    tracked so :meth:`stop` can cancel and await them, and the client
    connection is closed when its session ends on any path.
    """

    mode = "tcp"

    def __init__(self, dialer: Dialer) -> None:
        self.dialer = dialer
        self._server: asyncio.Server | None = None
        self._sessions: set[asyncio.Task[None]] = set()
        self._stopped = asyncio.Event()

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def address(self) -> tuple[str, int]:
        """Bound ``(host, port)``; useful when started on port 0."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("listener is not started")
        sockname = self._server.sockets[0].getsockname()
        return str(sockname[0]), int(sockname[1])

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    async def start(self, host: str, port: int) -> None:
        try:
            self._server = await asyncio.start_server(self._on_connect, host, port)
        except OSError as e:
            raise ListenerError(
                f"Failed to listen on {join_host_port(host, port)}: {e.strerror or e}"
            ) from e
        bound_host, bound_port = self.address
        logger.info(
            "Proxy listening",
            mode=self.mode,
            address=join_host_port(bound_host, bound_port),
        )

    async def serve_forever(self) -> None:
        """Block until :meth:`stop` is called; the server accepts from :meth:`start` on."""
        if self._server is None:
            raise RuntimeError("listener is not started")
        await self._stopped.wait()

    async def stop(self) -> None:
        if self._server is None:
            return
        server, self._server = self._server, None
        self._stopped.set()
        server.close()
        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        if sessions:
            await asyncio.gather(*sessions, return_exceptions=True)
        await server.wait_closed()
        logger.info("Proxy stopped", mode=self.mode)

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._sessions.add(task)
        client = Connection(reader, writer)
        remote = format_peer(writer)
        try:
            await self.handle_connection(client, remote)
        except (ConnectionError, OSError) as e:
            logger.debug("Client connection lost", remote=remote, error=str(e) or type(e).__name__)
        except Exception as e:
            logger.error("Session failed", mode=self.mode, remote=remote, error=str(e))
        finally:
            if task is not None:
                self._sessions.discard(task)
            await client.aclose()

    async def dial(self, address: str, timeout: float | None) -> Connection:
        """Dial ``address`` through the overlay, bounded by ``timeout``.

        Raises:
            DialError: On any failure, including the deadline passing.
        """
        try:
            async with asyncio.timeout(timeout):
                return await self.dialer.dial("tcp", address, timeout)
        except DialError:
            DIAL_FAILURES.labels(mode=self.mode).inc()
            raise
        except (TimeoutError, OSError) as e:
            DIAL_FAILURES.labels(mode=self.mode).inc()
            raise DialError("tcp", address, e) from e

    async def handle_connection(self, client: Connection, remote: str) -> None:
        raise NotImplementedError
