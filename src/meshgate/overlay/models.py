"""Snapshot of the overlay node as reported by tailscaled.

Field aliases follow the LocalAPI ``/localapi/v0/status`` JSON so a response
body validates directly into :class:`NodeStatus`.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator

ZERO_TIME = datetime(1, 1, 1, tzinfo=UTC)
ZERO_TIME_TEXT = "0001-01-01T00:00:00"

_EXTRA_FRACTION = re.compile(r"(\.\d{6})\d+")


def is_zero_time(value: datetime | None) -> bool:
    """True for a missing timestamp or the zero time tailscaled emits for "never"."""
    if value is None:
        return True
    return value.replace(tzinfo=None) == ZERO_TIME.replace(tzinfo=None)


class NodePeer(BaseModel):
    """One node (self or a peer) in the overlay snapshot."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    dns_name: str = Field(default="", alias="DNSName")
    host_name: str = Field(default="", alias="HostName")
    tailscale_ips: list[IPvAnyAddress] = Field(default_factory=list, alias="TailscaleIPs")
    online: bool = Field(default=False, alias="Online")
    cur_addr: str = Field(default="", alias="CurAddr")
    relay: str = Field(default="", alias="Relay")
    rx_bytes: int = Field(default=0, ge=0, alias="RxBytes")
    tx_bytes: int = Field(default=0, ge=0, alias="TxBytes")
    last_seen: datetime | None = Field(default=None, alias="LastSeen")
    last_handshake: datetime | None = Field(default=None, alias="LastHandshake")

    @field_validator("tailscale_ips", mode="before")
    @classmethod
    def _null_ips(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("dns_name", "host_name", "cur_addr", "relay", mode="before")
    @classmethod
    def _null_strings(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("last_seen", "last_handshake", mode="before")
    @classmethod
    def _go_time(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        if not value or value.startswith(ZERO_TIME_TEXT):
            return None
        # tailscaled emits nanoseconds; datetime stops at microseconds.
        return _EXTRA_FRACTION.sub(r"\1", value)


class NodeStatus(BaseModel):
    """Full overlay snapshot.

    ``peers`` keeps the order the overlay reported them in; tailscaled sends
    a JSON object keyed by node key, whose order survives parsing.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    backend_state: str = Field(default="", alias="BackendState")
    auth_url: str = Field(default="", alias="AuthURL")
    tailscale_ips: list[IPvAnyAddress] = Field(default_factory=list, alias="TailscaleIPs")
    self_node: NodePeer | None = Field(default=None, alias="Self")
    peers: list[NodePeer] = Field(default_factory=list, alias="Peer")

    @field_validator("peers", mode="before")
    @classmethod
    def _peer_map(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return list(value.values())
        return value

    @field_validator("tailscale_ips", mode="before")
    @classmethod
    def _null_ips(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("backend_state", "auth_url", mode="before")
    @classmethod
    def _null_strings(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def running(self) -> bool:
        return self.backend_state == "Running"
