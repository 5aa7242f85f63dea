"""Exception hierarchy.

Every error carries a short machine-readable ``code`` and a human-readable
``message`` so the CLI can render any failure without inspecting its type.
"""

from __future__ import annotations

import errno


class MeshgateError(Exception):
    """Base class for all meshgate errors."""

    code = "MESHGATE_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConfigError(MeshgateError):
    """Invalid configuration value or unreadable config file."""

    code = "CONFIG_ERROR"


class StartupError(MeshgateError):
    """Fatal fault that prevents the gateway from ever accepting traffic."""

    code = "STARTUP_ERROR"


class StateDirError(StartupError):
    code = "STATE_DIR_ERROR"


class OverlayUnavailableError(StartupError):
    """The overlay node did not reach the Running state."""

    code = "OVERLAY_UNAVAILABLE"


class ListenerError(StartupError):
    code = "LISTEN_FAILED"


class DialError(MeshgateError):
    """An outbound dial through the overlay failed.

    Attributes:
        network: Network name passed to the dialer (usually ``"tcp"``).
        address: The ``host:port`` that was dialled.
        cause: The underlying exception.
    """

    code = "DIAL_FAILED"

    def __init__(self, network: str, address: str, cause: BaseException) -> None:
        super().__init__(f"dial {network} {address}: {str(cause) or type(cause).__name__}")
        self.network = network
        self.address = address
        self.cause = cause


class StatusError(MeshgateError):
    """The overlay status client could not be acquired or queried."""

    code = "STATUS_FAILED"


class ProtocolViolation(MeshgateError):
    """A client sent something this gateway cannot serve."""

    code = "PROTOCOL_VIOLATION"


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a one-line message for the terminal."""
    if isinstance(error, MeshgateError):
        return error.message
    if isinstance(error, ConnectionRefusedError):
        return "Connection refused. Is tailscaled running and is the socket path correct?"
    if isinstance(error, PermissionError):
        return f"Permission denied: {error.filename or error}"
    if isinstance(error, TimeoutError):
        return "Operation timed out."
    if isinstance(error, OSError) and error.errno == errno.EADDRINUSE:
        return "Address already in use. Pick another port with --port."
    return f"{type(error).__name__}: {error}"
