"""Proxy front doors: HTTP forward proxy and SOCKS5 gateway."""

from .http import CONNECT_ESTABLISHED, CONNECT_FAILED, HTTPProxy
from .listener import ProxyListener
from .pipe import pipe
from .socks5 import Socks5Error, Socks5Gateway, Socks5Reply
from .transport import DialerTransport

__all__ = [
    "HTTPProxy",
    "Socks5Gateway",
    "ProxyListener",
    "DialerTransport",
    "Socks5Error",
    "Socks5Reply",
    "pipe",
    "CONNECT_ESTABLISHED",
    "CONNECT_FAILED",
]
