"""HTTP status API: health, peer status and Prometheus metrics."""

from __future__ import annotations

import structlog
from aiohttp import web

from meshgate.core.exceptions import ListenerError, StatusError
from meshgate.observability.metrics import generate_metrics, get_content_type
from meshgate.overlay.base import StatusProvider, join_host_port
from meshgate.status.models import build_status_document

logger = structlog.get_logger()


class StatusServer:
    """Serves ``/health``, ``/status`` and ``/metrics`` from one aiohttp app.

    ``/health`` never touches the overlay; ``/status`` queries it on every
    request.
    """

    def __init__(self, provider: StatusProvider) -> None:
        self.provider = provider
        self.app = web.Application()
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_get("/status", self._handle_status)
        self.app.router.add_get("/metrics", self._handle_metrics)
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    @property
    def address(self) -> tuple[str, int]:
        if self._runner is None or not self._runner.addresses:
            raise RuntimeError("status server is not started")
        sockname = self._runner.addresses[0]
        return str(sockname[0]), int(sockname[1])

    async def start(self, host: str, port: int) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        try:
            await self._site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise ListenerError(
                f"Failed to listen on {join_host_port(host, port)}: {e.strerror or e}"
            ) from e
        bound_host, bound_port = self.address
        logger.info("Status server listening", address=join_host_port(bound_host, bound_port))

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("Status server stopped")

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.Response(text="OK")

    async def _handle_status(self, request: web.Request) -> web.Response:
        try:
            client = self.provider.status_client()
        except StatusError as e:
            logger.warning("Status client unavailable", error=e.message)
            return web.Response(text=f"failed to get local client: {e.message}", status=500)

        try:
            status = await client.status()
        except StatusError as e:
            logger.warning("Status query failed", error=e.message)
            return web.Response(text=f"failed to get status: {e.message}", status=500)

        document = build_status_document(status)
        return web.Response(text=document.to_json(), content_type="application/json")

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        # The exposition content type carries a charset, which aiohttp only accepts as a header.
        return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})
