"""Narrow capabilities the proxy layer needs from the overlay network.

The proxies never see the overlay node itself. They get a :class:`Dialer`
that opens byte streams to ``host:port`` and, for the status API, a
:class:`StatusProvider`. Both are structural protocols so tests can pass
in-process fakes.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from ipaddress import ip_address
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from meshgate.overlay.models import NodeStatus


@dataclass
class Connection:
    """A bidirectional byte stream returned by a dialer or accepted by a listener."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    def close(self) -> None:
        self.writer.close()

    async def aclose(self) -> None:
        """Close the stream and wait for the transport to go away."""
        self.writer.close()
        with contextlib.suppress(OSError):
            await self.writer.wait_closed()

    def local_endpoint(self) -> tuple[str, int] | None:
        """Local ``(ip, port)`` of the stream, or None for non-IP transports."""
        sockname = self.writer.get_extra_info("sockname")
        if isinstance(sockname, tuple) and len(sockname) >= 2:
            return str(sockname[0]), int(sockname[1])
        return None


class Dialer(Protocol):
    """Opens outbound streams over the overlay network."""

    async def dial(self, network: str, address: str, timeout: float | None = None) -> Connection:
        """Connect to ``address`` (``host:port``).

        Raises:
            DialError: If the connection cannot be established within ``timeout``.
        """
        ...


class StatusClient(Protocol):
    async def status(self) -> NodeStatus:
        """Return the current node snapshot. Raises StatusError on failure."""
        ...


class StatusProvider(Protocol):
    def status_client(self) -> StatusClient:
        """Return a client for status queries. Raises StatusError on failure."""
        ...


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` or ``[v6]:port`` into its parts.

    Raises:
        ValueError: If the port is missing or out of range, or the host is empty.
    """
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1 : end + 2] != ":":
            raise ValueError(f"missing port in address {address!r}")
        host, port_text = address[1:end], address[end + 2 :]
    else:
        host, sep, port_text = address.rpartition(":")
        if not sep:
            raise ValueError(f"missing port in address {address!r}")
        if ":" in host:
            raise ValueError(f"too many colons in address {address!r}")
    if not host:
        raise ValueError(f"missing host in address {address!r}")
    if not port_text.isdigit():
        raise ValueError(f"invalid port in address {address!r}")
    port = int(port_text)
    if not 0 < port <= 65535:
        raise ValueError(f"port out of range in address {address!r}")
    return host, port


def join_host_port(host: str, port: int) -> str:
    """Inverse of :func:`split_host_port`; brackets IPv6 literals."""
    try:
        if ip_address(host).version == 6:
            return f"[{host}]:{port}"
    except ValueError:
        pass
    return f"{host}:{port}"
