"""
WiFi credential persistence model.

One row per SSID. Secret material is stored as a JSON document in `secret_json`
and is only ever decoded by services.credential_service.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from typing import Dict, Any

Base = declarative_base()


class WifiCredentialRecord(Base):
    __tablename__ = 'wifi_credentials'

    id = Column(Integer, primary_key=True, autoincrement=True)
    ssid = Column(String(32), nullable=False, unique=True, index=True, comment="Network SSID, one row per SSID")
    security = Column(String(16), nullable=False, comment="Security class: open/wep/wpa-personal/sae/enterprise")
    secret_json = Column(Text, nullable=False, comment="Secret material as JSON, never returned by to_dict")
    addressing_json = Column(Text, nullable=True, comment="Optional DesiredConfig for the wireless link")

    auto_connect = Column(Boolean, nullable=False, default=True)
    hidden = Column(Boolean, nullable=False, default=False)
    priority = Column(Integer, nullable=False, default=0, comment="Higher value is tried first")
    last_connected = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'ssid': self.ssid,
            'security': self.security,
            'auto_connect': self.auto_connect,
            'hidden': self.hidden,
            'priority': self.priority,
            'last_connected': self.last_connected.isoformat() if self.last_connected else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<WifiCredentialRecord(ssid='{self.ssid}', security='{self.security}')>"
