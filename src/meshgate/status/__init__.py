"""Peer and connection status reporting."""

from .models import (
    PeerStatus,
    StatusDocument,
    build_status_document,
    format_timestamp,
    is_direct,
    project_peer,
    project_self,
)
from .server import StatusServer

__all__ = [
    "PeerStatus",
    "StatusDocument",
    "StatusServer",
    "build_status_document",
    "format_timestamp",
    "is_direct",
    "project_peer",
    "project_self",
]
