"""Projection of the overlay snapshot into the public status document.

The document is rebuilt on every query and never cached, so it always
reflects the overlay at the time of the request.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from meshgate.overlay.models import NodePeer, NodeStatus, is_zero_time

UINT64_MAX = 2**64 - 1


class PeerStatus(BaseModel):
    """Per-node record. Every key is always present in the JSON form."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    hostname: str = ""
    tailscale_ips: list[str] = Field(default_factory=list)
    online: bool = False
    direct: bool = False
    relayed_via: str = ""
    current_address: str = ""
    rx_bytes: int = Field(default=0, ge=0, le=UINT64_MAX)
    tx_bytes: int = Field(default=0, ge=0, le=UINT64_MAX)
    last_seen: str = ""
    last_handshake: str = ""


class StatusDocument(BaseModel):
    """Body of ``GET /status``; serialized with the ``self`` key."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    self_status: PeerStatus = Field(default_factory=PeerStatus, alias="self")
    peers: list[PeerStatus] = Field(default_factory=list)
    backend_state: str = ""

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> StatusDocument:
        return cls.model_validate_json(data)


def is_direct(current_address: str, relayed_via: str) -> bool:
    """A link is direct only with a known endpoint and no relay in use."""
    return current_address != "" and relayed_via == ""


def format_timestamp(value: datetime | None) -> str:
    """RFC3339 with second precision; ``""`` for unset or zero times."""
    if is_zero_time(value):
        return ""
    assert value is not None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.replace(microsecond=0)
    if value.utcoffset() == timedelta(0):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value.isoformat()


def project_peer(peer: NodePeer) -> PeerStatus:
    return PeerStatus(
        name=peer.dns_name,
        hostname=peer.host_name,
        tailscale_ips=[str(ip) for ip in peer.tailscale_ips],
        online=peer.online,
        direct=is_direct(peer.cur_addr, peer.relay),
        relayed_via=peer.relay,
        current_address=peer.cur_addr,
        rx_bytes=peer.rx_bytes,
        tx_bytes=peer.tx_bytes,
        last_seen=format_timestamp(peer.last_seen),
        last_handshake=format_timestamp(peer.last_handshake),
    )


def project_self(node: NodePeer | None) -> PeerStatus:
    """The self record carries identity and liveness only."""
    if node is None:
        return PeerStatus()
    return PeerStatus(
        name=node.dns_name,
        hostname=node.host_name,
        tailscale_ips=[str(ip) for ip in node.tailscale_ips],
        online=node.online,
    )


def build_status_document(status: NodeStatus) -> StatusDocument:
    return StatusDocument(
        self_status=project_self(status.self_node),
        peers=[project_peer(peer) for peer in status.peers],
        backend_state=status.backend_state,
    )
