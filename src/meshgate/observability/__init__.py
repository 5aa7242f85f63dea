"""Prometheus metrics."""

from .metrics import (
    ACTIVE_TUNNELS,
    BYTES_TRANSFERRED,
    DIAL_FAILURES,
    PROXY_REQUESTS,
    REQUEST_DURATION,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "PROXY_REQUESTS",
    "DIAL_FAILURES",
    "BYTES_TRANSFERRED",
    "ACTIVE_TUNNELS",
    "REQUEST_DURATION",
    "generate_metrics",
    "get_content_type",
]
