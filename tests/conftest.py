"""Shared fixtures: an in-process overlay dialer and loopback servers."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from fakes import FakeDialer


async def _echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


@pytest.fixture
def fake_dialer() -> FakeDialer:
    return FakeDialer()


@pytest_asyncio.fixture
async def echo_server():
    """Loopback TCP echo server; yields its (host, port)."""
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    yield host, port
    server.close()
    await server.wait_closed()


def _build_upstream_app() -> web.Application:
    async def hello(request: web.Request) -> web.Response:
        return web.Response(
            status=201,
            text="hello from the tailnet",
            headers={"X-Upstream": "yes", "X-Seen-Host": request.host},
        )

    async def echo(request: web.Request) -> web.Response:
        body = await request.read()
        return web.Response(
            body=body,
            headers={"X-Echo-Custom": request.headers.get("X-Custom", "")},
        )

    async def stream(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse()
        response.enable_chunked_encoding()
        await response.prepare(request)
        for i in range(3):
            await response.write(f"chunk-{i};".encode())
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get("/hello", hello)
    app.router.add_post("/echo", echo)
    app.router.add_get("/stream", stream)
    return app


@pytest_asyncio.fixture
async def upstream_server():
    """Loopback aiohttp server standing in for a web app on a peer."""
    server = TestServer(_build_upstream_app(), host="127.0.0.1")
    await server.start_server()
    yield server.host, server.port
    await server.close()
