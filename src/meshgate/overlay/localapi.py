"""Client for the tailscaled LocalAPI over its unix socket."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from meshgate.core.exceptions import DialError, StatusError
from meshgate.overlay.base import Connection, join_host_port, split_host_port
from meshgate.overlay.models import NodeStatus

logger = structlog.get_logger()

LOCALAPI_HOST = "local-tailscaled.sock"
STATUS_PATH = "/localapi/v0/status"
START_PATH = "/localapi/v0/start"
DIAL_PATH = "/localapi/v0/dial"
LOGIN_INTERACTIVE_PATH = "/localapi/v0/login-interactive"

# Upper bound for a dial response head; tailscaled answers with a few headers.
_MAX_DIAL_HEAD = 16 * 1024


class LocalAPIClient:
    """Talks to tailscaled through its LocalAPI socket.

    ``status`` and ``start`` are plain HTTP calls made with httpx over a unix
    socket transport. ``dial`` opens its own socket per call and upgrades it
    into a raw tunnelled stream.
    """

    def __init__(self, socket_path: str | Path, request_timeout: float = 10.0) -> None:
        self.socket_path = Path(socket_path)
        self._client = httpx.AsyncClient(
            transport=httpx.AsyncHTTPTransport(uds=str(self.socket_path)),
            base_url=f"http://{LOCALAPI_HOST}",
            timeout=request_timeout,
        )

    async def __aenter__(self) -> LocalAPIClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def status(self) -> NodeStatus:
        """Fetch and parse the node snapshot.

        Raises:
            StatusError: On transport errors, non-2xx answers or unparseable bodies.
        """
        try:
            response = await self._client.get(STATUS_PATH)
            response.raise_for_status()
            return NodeStatus.model_validate_json(response.content)
        except httpx.HTTPStatusError as e:
            raise StatusError(
                f"localapi status returned {e.response.status_code}: {e.response.text.strip()}"
            ) from e
        except httpx.HTTPError as e:
            raise StatusError(f"localapi status: {str(e) or type(e).__name__}") from e
        except ValidationError as e:
            raise StatusError(f"localapi status: invalid response: {e}") from e

    async def start(
        self,
        auth_key: str | None = None,
        control_url: str | None = None,
        hostname: str | None = None,
    ) -> None:
        """Submit login credentials and preferences, and ask the node to run."""
        prefs: dict[str, Any] = {"WantRunning": True}
        if control_url:
            prefs["ControlURL"] = control_url
        if hostname:
            prefs["Hostname"] = hostname
        body: dict[str, Any] = {"UpdatePrefs": prefs}
        if auth_key:
            body["AuthKey"] = auth_key

        try:
            response = await self._client.post(START_PATH, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StatusError(
                f"localapi start returned {e.response.status_code}: {e.response.text.strip()}"
            ) from e
        except httpx.HTTPError as e:
            raise StatusError(f"localapi start: {str(e) or type(e).__name__}") from e

    async def login_interactive(self) -> None:
        """Ask the node to start an interactive login; the URL shows up in status."""
        try:
            response = await self._client.post(LOGIN_INTERACTIVE_PATH)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StatusError(f"localapi login: {str(e) or type(e).__name__}") from e

    async def dial(self, network: str, address: str, timeout: float | None = None) -> Connection:
        """Open a stream to ``address`` through the overlay.

        Raises:
            DialError: If the socket is unreachable, the daemon refuses the
                upgrade, or ``timeout`` elapses.
        """
        try:
            host, port = split_host_port(address)
        except ValueError as e:
            raise DialError(network, address, e) from e

        try:
            async with asyncio.timeout(timeout):
                return await self._dial_upgrade(network, host, port)
        except DialError:
            raise
        except (OSError, TimeoutError, asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
            logger.debug("LocalAPI dial failed", address=address, error=str(e) or type(e).__name__)
            raise DialError(network, address, e) from e

    async def _dial_upgrade(self, network: str, host: str, port: int) -> Connection:
        reader, writer = await asyncio.open_unix_connection(str(self.socket_path))
        try:
            head = (
                f"POST {DIAL_PATH} HTTP/1.1\r\n"
                f"Host: {LOCALAPI_HOST}\r\n"
                "Connection: upgrade\r\n"
                "Upgrade: ts-dial\r\n"
                f"Dial-Host: {host}\r\n"
                f"Dial-Port: {port}\r\n"
                f"Dial-Network: {network}\r\n"
                "Content-Length: 0\r\n"
                "\r\n"
            )
            writer.write(head.encode("ascii"))
            await writer.drain()

            response_head = await reader.readuntil(b"\r\n\r\n")
            if len(response_head) > _MAX_DIAL_HEAD:
                raise OSError("dial response head too large")
            lines = response_head.decode("latin-1").split("\r\n")
            parts = lines[0].split(" ", 2)
            if len(parts) < 2 or parts[1] != "101":
                reason = await _read_error_body(reader, lines[1:]) or lines[0]
                raise DialError(network, join_host_port(host, port), OSError(reason))
        except BaseException:
            writer.close()
            raise
        return Connection(reader, writer)

    async def aclose(self) -> None:
        await self._client.aclose()


async def _read_error_body(reader: asyncio.StreamReader, header_lines: list[str]) -> str:
    """Read the short plain-text body tailscaled sends with a refused dial."""
    length = 0
    for line in header_lines:
        name, _, value = line.partition(":")
        if name.strip().lower() == "content-length" and value.strip().isdigit():
            length = min(int(value.strip()), _MAX_DIAL_HEAD)
    if not length:
        return ""
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        body = e.partial
    return body.decode("utf-8", "replace").strip()
