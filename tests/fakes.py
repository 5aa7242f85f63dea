"""In-process stand-ins for the overlay node."""

from __future__ import annotations

import asyncio

from meshgate.core.exceptions import DialError, StatusError
from meshgate.overlay.base import Connection
from meshgate.overlay.models import NodeStatus


class FakeDialer:
    """Dials overlay addresses by mapping them onto loopback servers.

    Unknown addresses fail with a refused connection, like an unreachable
    port on a peer. ``error`` makes every dial fail with that cause.
    """

    def __init__(self, routes: dict[str, tuple[str, int]] | None = None, error: BaseException | None = None):
        self.routes = dict(routes or {})
        self.error = error
        self.calls: list[tuple[str, str, float | None]] = []

    def route(self, address: str, target: tuple[str, int]) -> None:
        self.routes[address] = target

    async def dial(self, network: str, address: str, timeout: float | None = None) -> Connection:
        self.calls.append((network, address, timeout))
        if self.error is not None:
            raise DialError(network, address, self.error)
        target = self.routes.get(address)
        if target is None:
            raise DialError(network, address, ConnectionRefusedError("connect: connection refused"))
        try:
            reader, writer = await asyncio.open_connection(*target)
        except OSError as e:
            raise DialError(network, address, e) from e
        return Connection(reader, writer)


class HangingDialer:
    """A dialer whose connects never complete."""

    def __init__(self) -> None:
        self.calls = 0

    async def dial(self, network: str, address: str, timeout: float | None = None) -> Connection:
        self.calls += 1
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class FakeStatusClient:
    def __init__(self, status: NodeStatus | None = None, error: str | None = None) -> None:
        self._status = status or NodeStatus()
        self._error = error
        self.queries = 0

    async def status(self) -> NodeStatus:
        self.queries += 1
        if self._error is not None:
            raise StatusError(self._error)
        return self._status


class FakeStatusProvider:
    """Hands out a fixed status client, or fails to acquire one."""

    def __init__(self, client: FakeStatusClient | None = None, error: str | None = None) -> None:
        self.client = client or FakeStatusClient()
        self._error = error

    def status_client(self) -> FakeStatusClient:
        if self._error is not None:
            raise StatusError(self._error)
        return self.client


class FakeNode(FakeDialer):
    """Overlay node stand-in for gateway tests; ``up`` returns a fixed snapshot."""

    def __init__(self, status: NodeStatus | None = None, up_error: BaseException | None = None) -> None:
        super().__init__()
        self.snapshot = status or NodeStatus(BackendState="Running", TailscaleIPs=["100.64.0.1"])
        self.up_error = up_error
        self.started = False
        self.closed = False
        self.client = FakeStatusClient(self.snapshot)

    async def up(self, timeout: float | None = None) -> NodeStatus:
        if self.up_error is not None:
            raise self.up_error
        self.started = True
        return self.snapshot

    def status_client(self) -> FakeStatusClient:
        if not self.started:
            raise StatusError("overlay node is not started")
        return self.client

    async def close(self) -> None:
        self.closed = True
