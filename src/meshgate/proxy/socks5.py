"""SOCKS5 gateway (RFC 1928): CONNECT only, no authentication."""

from __future__ import annotations

import asyncio
import contextlib
import errno
import struct
from dataclasses import dataclass
from enum import IntEnum
from ipaddress import IPv4Address, IPv6Address, ip_address

import structlog

from meshgate.core.exceptions import DialError, ProtocolViolation
from meshgate.observability.metrics import ACTIVE_TUNNELS, PROXY_REQUESTS
from meshgate.overlay.base import Connection, Dialer, join_host_port
from meshgate.proxy.listener import ProxyListener
from meshgate.proxy.pipe import pipe

logger = structlog.get_logger()

SOCKS_VERSION = 0x05


class AuthMethod(IntEnum):
    NO_AUTH = 0x00
    NO_ACCEPTABLE = 0xFF


class Command(IntEnum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class Socks5Reply(IntEnum):
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


class Socks5Error(ProtocolViolation):
    """Malformed SOCKS5 input. ``reply`` is the code to send back, if any."""

    code = "SOCKS5_ERROR"

    def __init__(self, message: str, reply: Socks5Reply | None = None) -> None:
        super().__init__(message)
        self.reply = reply


@dataclass(frozen=True)
class Socks5Request:
    command: int
    address_type: AddressType
    host: str
    port: int

    @property
    def address(self) -> str:
        return join_host_port(self.host, self.port)


async def read_greeting(reader: asyncio.StreamReader) -> list[int]:
    """Read the method-selection message and return the offered methods.

    Raises:
        Socks5Error: If the client does not speak SOCKS5.
        asyncio.IncompleteReadError: If the client hangs up mid-message.
    """
    version, count = await reader.readexactly(2)
    if version != SOCKS_VERSION:
        raise Socks5Error(f"unsupported SOCKS version {version}")
    return list(await reader.readexactly(count))


async def read_request(reader: asyncio.StreamReader) -> Socks5Request:
    """Read a request, including its destination, whatever the command.

    Domain names are returned as given; nothing is resolved here.

    Raises:
        Socks5Error: On a bad version or an unknown address type (with reply 0x08).
        asyncio.IncompleteReadError: If the client hangs up mid-message.
    """
    version, command, _reserved, atyp = await reader.readexactly(4)
    if version != SOCKS_VERSION:
        raise Socks5Error(f"unsupported SOCKS version {version}", Socks5Reply.GENERAL_FAILURE)

    if atyp == AddressType.IPV4:
        host = str(IPv4Address(await reader.readexactly(4)))
    elif atyp == AddressType.IPV6:
        host = str(IPv6Address(await reader.readexactly(16)))
    elif atyp == AddressType.DOMAIN:
        (length,) = await reader.readexactly(1)
        host = (await reader.readexactly(length)).decode("utf-8", "replace")
    else:
        raise Socks5Error(f"unknown address type {atyp}", Socks5Reply.ADDRESS_TYPE_NOT_SUPPORTED)

    (port,) = struct.unpack("!H", await reader.readexactly(2))
    return Socks5Request(command=command, address_type=AddressType(atyp), host=host, port=port)


def encode_reply(reply: Socks5Reply, host: str = "0.0.0.0", port: int = 0) -> bytes:
    """Encode a reply; the bound address falls back to 0.0.0.0:0 if not an IP."""
    try:
        addr = ip_address(host)
    except ValueError:
        addr, port = IPv4Address(0), 0
    atyp = AddressType.IPV4 if addr.version == 4 else AddressType.IPV6
    return bytes([SOCKS_VERSION, reply, 0x00, atyp]) + addr.packed + struct.pack("!H", port)


def reply_for_dial_error(error: DialError) -> Socks5Reply:
    """Map a dial failure onto the reply code the client sees."""
    cause = error.cause
    if isinstance(cause, ConnectionRefusedError):
        return Socks5Reply.CONNECTION_REFUSED
    if isinstance(cause, OSError) and cause.errno == errno.ENETUNREACH:
        return Socks5Reply.NETWORK_UNREACHABLE
    message = str(error).lower()
    if "refused" in message:
        return Socks5Reply.CONNECTION_REFUSED
    if "network is unreachable" in message:
        return Socks5Reply.NETWORK_UNREACHABLE
    return Socks5Reply.HOST_UNREACHABLE


class Socks5Gateway(ProxyListener):
    """SOCKS5 front door; each session dials through the shared dialer."""

    mode = "socks5"

    def __init__(self, dialer: Dialer, *, dial_timeout: float | None = 30.0) -> None:
        super().__init__(dialer)
        self.dial_timeout = dial_timeout

    async def handle_connection(self, client: Connection, remote: str) -> None:
        reader, writer = client.reader, client.writer
        try:
            methods = await read_greeting(reader)
            if AuthMethod.NO_AUTH not in methods:
                logger.debug("No acceptable SOCKS5 auth method", remote=remote, offered=methods)
                await self._write(client, bytes([SOCKS_VERSION, AuthMethod.NO_ACCEPTABLE]))
                return
            await self._write(client, bytes([SOCKS_VERSION, AuthMethod.NO_AUTH]))
            request = await read_request(reader)
        except asyncio.IncompleteReadError:
            return
        except Socks5Error as e:
            logger.debug("Bad SOCKS5 request", remote=remote, error=e.message)
            if e.reply is not None:
                await self._write(client, encode_reply(e.reply))
            return

        if request.command != Command.CONNECT:
            logger.debug("Unsupported SOCKS5 command", remote=remote, command=request.command)
            await self._write(client, encode_reply(Socks5Reply.COMMAND_NOT_SUPPORTED))
            return

        PROXY_REQUESTS.labels(mode=self.mode, method="CONNECT").inc()
        logger.info("SOCKS5 dial", remote=remote, target=request.address)
        try:
            upstream = await self.dial(request.address, self.dial_timeout)
        except DialError as e:
            reply = reply_for_dial_error(e)
            logger.warning("SOCKS5 dial failed", remote=remote, target=request.address, error=e.message, reply=reply.name)
            await self._write(client, encode_reply(reply))
            return

        tunnels = ACTIVE_TUNNELS.labels(mode=self.mode)
        tunnels.inc()
        try:
            bound_host, bound_port = upstream.local_endpoint() or ("0.0.0.0", 0)
            writer.write(encode_reply(Socks5Reply.SUCCEEDED, bound_host, bound_port))
            await writer.drain()
            sent, received = await pipe(client, upstream, protocol="socks5")
            logger.debug("SOCKS5 tunnel closed", remote=remote, target=request.address, sent=sent, received=received)
        finally:
            tunnels.dec()
            await upstream.aclose()

    async def _write(self, client: Connection, data: bytes) -> None:
        with contextlib.suppress(OSError):
            client.writer.write(data)
            await client.writer.drain()
