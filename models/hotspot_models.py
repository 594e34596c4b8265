from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import config


@dataclass(frozen=True)
class HotspotConfig:
    ssid: str
    password: str
    interface: str
    channel: int = config.HOTSPOT_DEFAULT_CHANNEL
    gateway: str = config.HOTSPOT_DEFAULT_GATEWAY
    prefix_length: int = config.HOTSPOT_DEFAULT_PREFIX
    upstream: Optional[str] = None
    # upstream omitted by the caller: share whatever interface holds the default route
    detect_upstream: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ssid": self.ssid,
            "interface": self.interface,
            "channel": self.channel,
            "gateway": self.gateway,
            "prefix_length": self.prefix_length,
            "upstream": self.upstream,
        }

    def __repr__(self):
        return (f"HotspotConfig(ssid={self.ssid!r}, interface={self.interface!r}, "
                f"channel={self.channel}, password=<redacted>)")


@dataclass
class HotspotStatus:
    interface: str
    active: bool
    config: Optional[HotspotConfig] = None
    hostapd_pid: Optional[int] = None
    dnsmasq_pid: Optional[int] = None
    started_at: Optional[datetime] = None
    clients: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interface": self.interface,
            "active": self.active,
            "config": self.config.to_dict() if self.config else None,
            "hostapd_pid": self.hostapd_pid,
            "dnsmasq_pid": self.dnsmasq_pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "clients": self.clients,
        }
