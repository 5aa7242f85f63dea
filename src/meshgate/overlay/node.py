"""Overlay node bring-up and the capabilities handed to the proxies."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import structlog

from meshgate.core.config import GatewayConfig
from meshgate.core.events import EventEmitter, SidecarEvent
from meshgate.core.exceptions import OverlayUnavailableError, StatusError
from meshgate.overlay.base import Connection
from meshgate.overlay.localapi import LocalAPIClient
from meshgate.overlay.models import NodeStatus

logger = structlog.get_logger()

# Backend states in which the node waits for prefs or credentials.
_LOGIN_STATES = frozenset({"NeedsLogin", "NoState", "Stopped"})


class OverlayNode:
    """A tailscaled node reached through its LocalAPI.

    Implements both ``Dialer`` and ``StatusProvider``. When the config names a
    ``tailscaled`` binary, the daemon is spawned in userspace-networking mode
    with its state and socket in the state directory, and terminated on
    :meth:`close`.
    """

    def __init__(
        self,
        config: GatewayConfig,
        events: EventEmitter | None = None,
        poll_interval: float = 0.5,
        kill_grace: float = 5.0,
    ) -> None:
        self.config = config
        self.events = events
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace
        self.socket_path: Path = config.resolved_socket_path()
        self._client: LocalAPIClient | None = None
        self._process: asyncio.subprocess.Process | None = None

    @property
    def client(self) -> LocalAPIClient:
        if self._client is None:
            self._client = LocalAPIClient(self.socket_path)
        return self._client

    async def up(self, timeout: float | None = None) -> NodeStatus:
        """Bring the node to the Running state.

        Raises:
            OverlayUnavailableError: If the node is not running before the
                deadline, or a spawned daemon exits.
        """
        timeout = timeout if timeout is not None else self.config.startup_timeout
        last_state = "unknown"
        try:
            async with asyncio.timeout(timeout):
                if self.config.tailscaled_path:
                    await self._spawn_daemon()
                await self._wait_for_socket()

                started = False
                login_requested = False
                announced_url = ""
                while True:
                    self._check_daemon()
                    try:
                        status = await self.client.status()
                    except StatusError as e:
                        logger.debug("Overlay status not available yet", error=e.message)
                        await asyncio.sleep(self.poll_interval)
                        continue

                    last_state = status.backend_state or last_state
                    if status.running:
                        logger.info(
                            "Overlay node running",
                            hostname=self.config.hostname,
                            ips=[str(ip) for ip in status.tailscale_ips],
                        )
                        return status

                    if status.backend_state in _LOGIN_STATES and not started:
                        logger.info("Starting overlay node", state=status.backend_state)
                        await self.client.start(
                            auth_key=self.config.auth_key,
                            control_url=self.config.control_url,
                            hostname=self.config.hostname,
                        )
                        started = True
                    elif (
                        status.backend_state == "NeedsLogin"
                        and not self.config.auth_key
                        and not status.auth_url
                        and not login_requested
                    ):
                        await self.client.login_interactive()
                        login_requested = True

                    if status.auth_url and status.auth_url != announced_url:
                        announced_url = status.auth_url
                        logger.warning("Overlay login required", url=status.auth_url)
                        if self.events is not None:
                            self.events.emit(SidecarEvent.AUTH_REQUIRED, status.auth_url)

                    await asyncio.sleep(self.poll_interval)
        except TimeoutError as e:
            raise OverlayUnavailableError(
                f"Overlay node did not come up within {timeout:g}s (state: {last_state})"
            ) from e
        except StatusError as e:
            raise OverlayUnavailableError(f"Overlay node rejected start: {e.message}") from e

    async def _spawn_daemon(self) -> None:
        state_dir = self.config.resolved_state_dir()
        args = [
            "--tun=userspace-networking",
            f"--statedir={state_dir}",
            f"--socket={self.socket_path}",
        ]
        logger.info("Spawning tailscaled", binary=self.config.tailscaled_path, socket=str(self.socket_path))
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.tailscaled_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise OverlayUnavailableError(f"Failed to start tailscaled: {e}") from e

    async def _wait_for_socket(self) -> None:
        while not self.socket_path.exists():
            self._check_daemon()
            await asyncio.sleep(self.poll_interval)

    def _check_daemon(self) -> None:
        if self._process is not None and self._process.returncode is not None:
            raise OverlayUnavailableError(
                f"tailscaled exited with status {self._process.returncode}"
            )

    async def dial(self, network: str, address: str, timeout: float | None = None) -> Connection:
        return await self.client.dial(network, address, timeout)

    def status_client(self) -> LocalAPIClient:
        if self._client is None:
            raise StatusError("overlay node is not started")
        return self._client

    async def close(self) -> None:
        """Release the LocalAPI client and stop a spawned daemon."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), self.kill_grace)
        except TimeoutError:
            logger.warning("tailscaled did not exit, killing it", pid=process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
