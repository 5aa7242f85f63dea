"""Lifecycle events for a governing process.

A parent process (a launcher script, a supervisor) tracks the gateway by
reading one event per line from its stdout. The event set is fixed; the line
format is selectable so the contract is not tied to one text encoding.
"""

from __future__ import annotations

import json
import sys
from enum import Enum
from typing import Any, TextIO

from meshgate.core.config import EventFormat


class SidecarEvent(Enum):
    """Gateway lifecycle events, in the order they normally occur."""

    STARTING = "starting"
    CONNECTING = "connecting"
    AUTH_REQUIRED = "auth_required"
    CONNECTED = "connected"
    LISTENING = "listening"
    READY = "ready"
    ERROR = "error"
    SHUTDOWN = "shutdown"


SENTINEL_PREFIX = "@@SIDECAR:"
SENTINEL_SUFFIX = "@@"


def format_event(
    event: SidecarEvent,
    detail: str | None = None,
    fmt: EventFormat = EventFormat.JSON,
    **fields: Any,
) -> str | None:
    """Render one event line (without the trailing newline).

    ``json`` lines look like ``{"event": "ready", "detail": "http://127.0.0.1:8080"}``.
    ``sentinel`` lines look like ``@@SIDECAR:READY@@ http://127.0.0.1:8080``
    and ignore extra fields.
    """
    if fmt is EventFormat.NONE:
        return None
    if fmt is EventFormat.SENTINEL:
        line = f"{SENTINEL_PREFIX}{event.name}{SENTINEL_SUFFIX}"
        return f"{line} {detail}" if detail else line
    payload: dict[str, Any] = {"event": event.value}
    if detail is not None:
        payload["detail"] = detail
    payload.update(fields)
    return json.dumps(payload, separators=(", ", ": "), default=str)


def parse_event(line: str) -> tuple[SidecarEvent, str | None] | None:
    """Parse a line written by :class:`EventEmitter` in either format.

    Returns None for lines that are not events (banners, stray output).
    """
    line = line.strip()
    if line.startswith(SENTINEL_PREFIX):
        head, _, detail = line.partition(" ")
        name = head[len(SENTINEL_PREFIX) : -len(SENTINEL_SUFFIX)]
        try:
            return SidecarEvent[name], detail or None
        except KeyError:
            return None
    if line.startswith("{"):
        try:
            payload = json.loads(line)
            return SidecarEvent(payload["event"]), payload.get("detail")
        except (ValueError, KeyError, TypeError):
            return None
    return None


class EventEmitter:
    """Writes lifecycle events, one per line, to a text stream."""

    def __init__(self, stream: TextIO | None = None, fmt: EventFormat = EventFormat.JSON) -> None:
        self._stream = stream
        self.format = fmt
        self.history: list[SidecarEvent] = []

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def emit(self, event: SidecarEvent, detail: str | None = None, **fields: Any) -> None:
        self.history.append(event)
        line = format_event(event, detail, self.format, **fields)
        if line is None:
            return
        self.stream.write(line + "\n")
        self.stream.flush()
