"""Gateway process orchestration."""

from __future__ import annotations

from pathlib import Path

import structlog

from meshgate.core.config import GatewayConfig, ProxyMode
from meshgate.core.events import EventEmitter, SidecarEvent
from meshgate.core.exceptions import ListenerError, MeshgateError, StateDirError
from meshgate.overlay.base import join_host_port
from meshgate.overlay.node import OverlayNode
from meshgate.proxy.http import HTTPProxy
from meshgate.proxy.listener import ProxyListener
from meshgate.proxy.socks5 import Socks5Gateway
from meshgate.status.server import StatusServer

logger = structlog.get_logger()


class Gateway:
    """Brings the overlay node up, then serves one proxy listener on top of it.

    Startup order: state directory, overlay node, optional status API, proxy
    listener. Each step is reported as a :class:`SidecarEvent`. A failing
    status listener is logged and skipped; every other startup fault is
    reported as ``ERROR`` and raised.
    """

    def __init__(
        self,
        config: GatewayConfig,
        node: OverlayNode | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self.config = config
        self.events = events or EventEmitter(fmt=config.events)
        self.node = node or OverlayNode(config, events=self.events)
        self.proxy: ProxyListener | None = None
        self.status_server: StatusServer | None = None

    @property
    def proxy_url(self) -> str:
        if self.proxy is None:
            raise RuntimeError("gateway is not started")
        host, port = self.proxy.address
        return f"{self.config.mode.value}://{join_host_port(host, port)}"

    def prepare_state_dir(self) -> Path:
        state_dir = self.config.resolved_state_dir()
        try:
            state_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise StateDirError(f"Failed to create state directory {state_dir}: {e.strerror or e}") from e
        return state_dir

    def build_proxy(self) -> ProxyListener:
        if self.config.mode is ProxyMode.SOCKS5:
            return Socks5Gateway(self.node, dial_timeout=self.config.tunnel_dial_timeout)
        return HTTPProxy(
            self.node,
            tunnel_dial_timeout=self.config.tunnel_dial_timeout,
            connect_timeout=self.config.http_connect_timeout,
        )

    async def start(self) -> None:
        """Run every startup step; returns once the proxy accepts connections."""
        self.events.emit(SidecarEvent.STARTING)
        try:
            state_dir = self.prepare_state_dir()
            logger.info("Using state directory", path=str(state_dir))

            self.events.emit(SidecarEvent.CONNECTING, self.config.hostname)
            status = await self.node.up(self.config.startup_timeout)
            ips = [str(ip) for ip in status.tailscale_ips]
            self.events.emit(SidecarEvent.CONNECTED, ", ".join(ips), ips=ips)

            if self.config.status_port is not None:
                await self._start_status_server(self.config.status_port)

            proxy = self.build_proxy()
            await proxy.start(self.config.listen_host, self.config.port)
            self.proxy = proxy
        except MeshgateError as e:
            logger.error("Gateway startup failed", error=e.message, code=e.code)
            self.events.emit(SidecarEvent.ERROR, e.message, code=e.code)
            raise

        address = join_host_port(*proxy.address)
        mode = self.config.mode.value
        self.events.emit(SidecarEvent.LISTENING, f"mode={mode} addr={address}", mode=mode, address=address)
        self.events.emit(SidecarEvent.READY, self.proxy_url)
        logger.info("Gateway ready", url=self.proxy_url)

    async def _start_status_server(self, port: int) -> None:
        server = StatusServer(self.node)
        try:
            await server.start(self.config.listen_host, port)
        except ListenerError as e:
            logger.error("Status server failed to start, continuing without it", error=e.message)
            self.events.emit(SidecarEvent.ERROR, f"status: {e.message}", code=e.code, fatal=False)
            return
        self.status_server = server

    async def run(self) -> None:
        """Start, then serve until cancelled; always cleans up."""
        try:
            await self.start()
            assert self.proxy is not None
            await self.proxy.serve_forever()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self.proxy is not None:
            await self.proxy.stop()
            self.proxy = None
        if self.status_server is not None:
            await self.status_server.stop()
            self.status_server = None
        await self.node.close()
        self.events.emit(SidecarEvent.SHUTDOWN)
        logger.info("Gateway stopped")
