from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Tuple, Union


class InterfaceKind(str, Enum):
    WIRED = "wired"
    WIRELESS = "wireless"
    TUNNEL = "tunnel"
    BRIDGE = "bridge"
    BOND = "bond"
    VIRTUAL = "virtual"


@dataclass(frozen=True)
class DhcpAddressing:
    """Address assigned by the DHCP client (DHCPv6/RA for the IPv6 family)"""


@dataclass(frozen=True)
class StaticAddressing:
    addresses: Tuple[str, ...]
    gateway: Optional[str] = None


Addressing = Union[DhcpAddressing, StaticAddressing]


@dataclass(frozen=True)
class DesiredConfig:
    """
    User intent for one interface.

    Each address family is independently DHCP, static, or unmanaged (None).
    Instances are immutable so a config handed to the Reconciler cannot change
    during an apply cycle.
    """
    ipv4: Optional[Addressing] = None
    ipv6: Optional[Addressing] = None
    dns: Tuple[str, ...] = ()
    mtu: Optional[int] = None
    required_for_online: bool = True
    ipv6_accept_ra: Optional[bool] = None

    @property
    def dhcp(self) -> str:
        v4 = isinstance(self.ipv4, DhcpAddressing)
        v6 = isinstance(self.ipv6, DhcpAddressing)
        if v4 and v6:
            return "yes"
        if v4:
            return "ipv4"
        if v6:
            return "ipv6"
        return "no"

    def to_dict(self) -> Dict[str, Any]:
        """Flat representation, accepted back by validators.desired_config_from_dict."""
        ipv4 = self.ipv4 if isinstance(self.ipv4, StaticAddressing) else None
        ipv6 = self.ipv6 if isinstance(self.ipv6, StaticAddressing) else None
        return {
            "dhcp": self.dhcp,
            "ipv4_addresses": list(ipv4.addresses) if ipv4 else [],
            "ipv4_gateway": ipv4.gateway if ipv4 else None,
            "ipv6_addresses": list(ipv6.addresses) if ipv6 else [],
            "ipv6_gateway": ipv6.gateway if ipv6 else None,
            "dns": list(self.dns),
            "mtu": self.mtu,
            "required_for_online": self.required_for_online,
            "ipv6_accept_ra": self.ipv6_accept_ra,
        }


@dataclass
class InterfaceStats:
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_packets: int = 0
    tx_packets: int = 0
    rx_errors: int = 0
    tx_errors: int = 0
    rx_dropped: int = 0
    tx_dropped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class Interface:
    name: str
    kind: InterfaceKind = InterfaceKind.WIRED
    admin_up: bool = False
    oper_state: str = "unknown"
    mac_address: Optional[str] = None
    mtu: Optional[int] = None
    speed_mbps: Optional[int] = None
    ipv4_addresses: List[str] = field(default_factory=list)
    ipv6_addresses: List[str] = field(default_factory=list)
    stats: InterfaceStats = field(default_factory=InterfaceStats)
    config_file: Optional[str] = None
    desired: Optional[DesiredConfig] = None

    @property
    def addresses(self) -> List[str]:
        return self.ipv4_addresses + self.ipv6_addresses

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "admin_up": self.admin_up,
            "oper_state": self.oper_state,
            "mac_address": self.mac_address,
            "mtu": self.mtu,
            "speed_mbps": self.speed_mbps,
            "ipv4_addresses": self.ipv4_addresses,
            "ipv6_addresses": self.ipv6_addresses,
            "stats": self.stats.to_dict(),
            "config_file": self.config_file,
            "desired": self.desired.to_dict() if self.desired else None,
        }


@dataclass(frozen=True)
class InterfaceSnapshot:
    interfaces: Tuple[Interface, ...] = ()
    taken_at: Optional[datetime] = None
    stale: bool = False
    error: Optional[str] = None

    def get(self, name: str) -> Optional[Interface]:
        for interface in self.interfaces:
            if interface.name == name:
                return interface
        return None

    def names(self) -> List[str]:
        return [interface.name for interface in self.interfaces]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interfaces": [interface.to_dict() for interface in self.interfaces],
            "taken_at": self.taken_at.isoformat() if self.taken_at else None,
            "stale": self.stale,
            "error": self.error,
        }


@dataclass
class ApplyResult:
    interface: str
    changed: bool
    confirmed: bool
    written: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    message: str = ""

    @property
    def status(self) -> str:
        if not self.changed:
            return "unchanged"
        return "applied" if self.confirmed else "submitted, unconfirmed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interface": self.interface,
            "status": self.status,
            "changed": self.changed,
            "confirmed": self.confirmed,
            "written": self.written,
            "removed": self.removed,
            "message": self.message,
        }
