"""Core."""

from .config import EventFormat, GatewayConfig, ProxyMode, build_config
from .events import EventEmitter, SidecarEvent
from .exceptions import (
    ConfigError,
    DialError,
    ListenerError,
    MeshgateError,
    OverlayUnavailableError,
    ProtocolViolation,
    StartupError,
    StateDirError,
    StatusError,
    format_error_for_user,
)

__all__ = [
    # Config
    "GatewayConfig",
    "ProxyMode",
    "EventFormat",
    "build_config",
    # Events
    "EventEmitter",
    "SidecarEvent",
    # Errors
    "MeshgateError",
    "ConfigError",
    "StartupError",
    "StateDirError",
    "OverlayUnavailableError",
    "ListenerError",
    "DialError",
    "StatusError",
    "ProtocolViolation",
    "format_error_for_user",
]
