from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    public_key: str

    def __repr__(self):
        return f"KeyPair(public_key={self.public_key!r}, private_key=<redacted>)"

    __str__ = __repr__


@dataclass(frozen=True)
class TunnelPeer:
    public_key: str
    allowed_ips: Tuple[str, ...] = ()
    endpoint: Optional[str] = None
    preshared_key: Optional[str] = None
    persistent_keepalive: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "public_key": self.public_key,
            "allowed_ips": list(self.allowed_ips),
            "endpoint": self.endpoint,
            "has_preshared_key": self.preshared_key is not None,
            "persistent_keepalive": self.persistent_keepalive,
        }

    def __repr__(self):
        return (f"TunnelPeer(public_key={self.public_key!r}, endpoint={self.endpoint!r}, "
                f"allowed_ips={self.allowed_ips!r})")


@dataclass(frozen=True)
class TunnelConfig:
    name: str
    private_key: str
    listen_port: Optional[int] = None
    addresses: Tuple[str, ...] = ()
    dns: Tuple[str, ...] = ()
    mtu: Optional[int] = None
    peers: Tuple[TunnelPeer, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "listen_port": self.listen_port,
            "addresses": list(self.addresses),
            "dns": list(self.dns),
            "mtu": self.mtu,
            "peers": [peer.to_dict() for peer in self.peers],
        }

    def __repr__(self):
        return (f"TunnelConfig(name={self.name!r}, listen_port={self.listen_port}, "
                f"peers={len(self.peers)}, private_key=<redacted>)")


@dataclass
class PeerStatus:
    public_key: str
    endpoint: Optional[str] = None
    allowed_ips: List[str] = field(default_factory=list)
    latest_handshake: Optional[datetime] = None
    rx_bytes: int = 0
    tx_bytes: int = 0
    persistent_keepalive: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "public_key": self.public_key,
            "endpoint": self.endpoint,
            "allowed_ips": self.allowed_ips,
            "latest_handshake": self.latest_handshake.isoformat() if self.latest_handshake else None,
            "rx_bytes": self.rx_bytes,
            "tx_bytes": self.tx_bytes,
            "persistent_keepalive": self.persistent_keepalive,
        }


@dataclass
class TunnelStatus:
    """Runtime view of a tunnel as reported by `wg show`. Holds no private key."""
    name: str
    up: bool
    public_key: Optional[str] = None
    listen_port: Optional[int] = None
    peers: List[PeerStatus] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "up": self.up,
            "public_key": self.public_key,
            "listen_port": self.listen_port,
            "peers": [peer.to_dict() for peer in self.peers],
        }
