from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from models.network_models import DesiredConfig


class SecurityClass(str, Enum):
    OPEN = "open"
    WEP = "wep"
    WPA_PERSONAL = "wpa-personal"
    SAE = "sae"
    ENTERPRISE = "enterprise"


class EapMethod(str, Enum):
    PEAP = "PEAP"
    TTLS = "TTLS"
    TLS = "TLS"
    PWD = "PWD"
    LEAP = "LEAP"


PHASE2_METHODS = ("MSCHAPV2", "PAP", "CHAP", "GTC", "MD5")


class WifiState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    NETWORKS_LISTED = "networks-listed"
    SELECTING = "selecting"
    AUTHENTICATING = "authenticating"
    ASSOCIATING = "associating"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(frozen=True)
class WifiNetwork:
    ssid: str
    security: SecurityClass
    bssids: FrozenSet[str] = frozenset()
    signal_dbm: Optional[float] = None
    frequency: Optional[int] = None
    channel: Optional[int] = None
    hidden: bool = False

    @property
    def key(self) -> Tuple[str, SecurityClass]:
        return self.ssid, self.security

    @property
    def quality(self) -> int:
        return signal_quality(self.signal_dbm)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ssid": self.ssid,
            "security": self.security.value,
            "bssids": sorted(self.bssids),
            "signal_dbm": self.signal_dbm,
            "quality": self.quality,
            "frequency": self.frequency,
            "channel": self.channel,
            "hidden": self.hidden,
        }


def signal_quality(signal_dbm: Optional[float]) -> int:
    """Map dBm to 0-100, -90 dBm or weaker being 0 and -30 dBm or stronger 100."""
    if signal_dbm is None:
        return 0
    quality = int((signal_dbm + 90) * 100 / 60)
    return max(0, min(100, quality))


# Credential secret variants. Each carries only the fields its security class needs.

@dataclass(frozen=True)
class OpenSecret:
    security = SecurityClass.OPEN


@dataclass(frozen=True)
class WepSecret:
    key: str
    security = SecurityClass.WEP


@dataclass(frozen=True)
class PersonalSecret:
    passphrase: str
    security = SecurityClass.WPA_PERSONAL


@dataclass(frozen=True)
class SaeSecret:
    password: str
    security = SecurityClass.SAE


@dataclass(frozen=True)
class EnterpriseSecret:
    method: EapMethod
    identity: str
    password: Optional[str] = None
    anonymous_identity: Optional[str] = None
    phase2: Optional[str] = None
    ca_cert: Optional[str] = None
    client_cert: Optional[str] = None
    private_key: Optional[str] = None
    private_key_password: Optional[str] = None
    security = SecurityClass.ENTERPRISE


Secret = Union[OpenSecret, WepSecret, PersonalSecret, SaeSecret, EnterpriseSecret]


@dataclass
class WifiCredential:
    ssid: str
    secret: Secret
    auto_connect: bool = True
    hidden: bool = False
    priority: int = 0
    last_connected: Optional[datetime] = None
    addressing: Optional[DesiredConfig] = None

    @property
    def security(self) -> SecurityClass:
        return self.secret.security

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the credential. Secret material is never included."""
        data = {
            "ssid": self.ssid,
            "security": self.security.value,
            "auto_connect": self.auto_connect,
            "hidden": self.hidden,
            "priority": self.priority,
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "addressing": self.addressing.to_dict() if self.addressing else None,
        }
        if isinstance(self.secret, EnterpriseSecret):
            data["eap_method"] = self.secret.method.value
            data["identity"] = self.secret.identity
        return data

    def __repr__(self):
        return f"WifiCredential(ssid={self.ssid!r}, security={self.security.value}, secret=<redacted>)"


@dataclass
class WifiDiagnostics:
    interface: str
    ssid: Optional[str] = None
    bssid: Optional[str] = None
    signal_dbm: Optional[float] = None
    frequency: Optional[int] = None
    channel: Optional[int] = None
    tx_bitrate: Optional[str] = None
    rx_bitrate: Optional[str] = None
    rx_bytes: int = 0
    tx_bytes: int = 0
    tx_retries: int = 0
    tx_failed: int = 0
    refreshed_at: Optional[datetime] = None

    @property
    def quality(self) -> int:
        return signal_quality(self.signal_dbm)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.__dict__)
        data["quality"] = self.quality
        data["refreshed_at"] = self.refreshed_at.isoformat() if self.refreshed_at else None
        return data


@dataclass
class Transition:
    source: WifiState
    target: WifiState
    at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.source.value, "to": self.target.value,
                "at": self.at.isoformat(), "reason": self.reason}


@dataclass
class WifiStatus:
    interface: str
    state: WifiState
    networks: List[WifiNetwork] = field(default_factory=list)
    selected: Optional[WifiNetwork] = None
    error: Optional[str] = None
    diagnostics: Optional[WifiDiagnostics] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interface": self.interface,
            "state": self.state.value,
            "networks": [network.to_dict() for network in self.networks],
            "selected": self.selected.to_dict() if self.selected else None,
            "error": self.error,
            "diagnostics": self.diagnostics.to_dict() if self.diagnostics else None,
        }
