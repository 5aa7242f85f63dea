"""Bidirectional byte relay between a client and an overlay connection."""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from meshgate.observability.metrics import BYTES_TRANSFERRED
from meshgate.overlay.base import Connection

logger = structlog.get_logger()

CHUNK_SIZE = 65536


async def _copy(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    *,
    direction: str,
    protocol: str,
) -> int:
    """Copy until EOF or error; half-close ``writer`` on EOF, close it on error."""
    counter = BYTES_TRANSFERRED.labels(direction=direction, protocol=protocol)
    total = 0
    try:
        while True:
            data = await reader.read(CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
            total += len(data)
            counter.inc(len(data))
    except (ConnectionError, OSError) as e:
        logger.debug("Tunnel direction failed", direction=direction, error=str(e) or type(e).__name__)
        writer.close()
        return total

    if writer.can_write_eof() and not writer.is_closing():
        with contextlib.suppress(OSError, RuntimeError):
            writer.write_eof()
    return total


async def pipe(
    client: Connection,
    target: Connection,
    *,
    protocol: str = "tcp",
    initial: bytes = b"",
) -> tuple[int, int]:
    """Relay bytes both ways until each direction has finished.

    ``initial`` holds bytes the client sent ahead of the tunnel being set up;
    they are delivered to the target first. Neither connection is closed
    here beyond half-closes and error closes; the caller owns both.

    Returns:
        Bytes sent upstream (client to target) and downstream.
    """
    if initial:
        target.writer.write(initial)
        BYTES_TRANSFERRED.labels(direction="upstream", protocol=protocol).inc(len(initial))

    upstream = asyncio.create_task(
        _copy(client.reader, target.writer, direction="upstream", protocol=protocol)
    )
    downstream = asyncio.create_task(
        _copy(target.reader, client.writer, direction="downstream", protocol=protocol)
    )
    try:
        sent, received = await asyncio.gather(upstream, downstream)
    except asyncio.CancelledError:
        upstream.cancel()
        downstream.cancel()
        await asyncio.gather(upstream, downstream, return_exceptions=True)
        raise
    return sent + len(initial), received
