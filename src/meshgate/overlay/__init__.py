"""Overlay network capabilities and the tailscaled adapter."""

from .base import Connection, Dialer, StatusClient, StatusProvider, join_host_port, split_host_port
from .localapi import LocalAPIClient
from .models import NodePeer, NodeStatus
from .node import OverlayNode

__all__ = [
    "Connection",
    "Dialer",
    "StatusClient",
    "StatusProvider",
    "split_host_port",
    "join_host_port",
    "LocalAPIClient",
    "NodePeer",
    "NodeStatus",
    "OverlayNode",
]
