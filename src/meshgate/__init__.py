"""meshgate - reach an overlay network through a local HTTP or SOCKS5 proxy."""

__version__ = "0.1.0"
