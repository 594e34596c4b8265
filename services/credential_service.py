"""
Saved WiFi credentials.

Credentials are keyed by SSID (one per SSID) and ordered for auto-connect by
auto_connect flag, priority and most recent successful connection.
"""

import os
import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import SQLAlchemyError

import config
from models.credential_models import Base, WifiCredentialRecord
from models.wifi_models import (
    EapMethod, EnterpriseSecret, OpenSecret, PersonalSecret, SaeSecret, SecurityClass, WepSecret,
    WifiCredential
)
from services.file_service import ensure_directory_exists
from utils.validators import desired_config_from_dict, validate_credential

logger = logging.getLogger(__name__)

SECRET_TYPES = {
    SecurityClass.OPEN: OpenSecret,
    SecurityClass.WEP: WepSecret,
    SecurityClass.WPA_PERSONAL: PersonalSecret,
    SecurityClass.SAE: SaeSecret,
    SecurityClass.ENTERPRISE: EnterpriseSecret,
}


def _secret_to_json(secret) -> str:
    data = asdict(secret)
    if isinstance(secret, EnterpriseSecret):
        data['method'] = secret.method.value
    return json.dumps(data)


def _secret_from_json(security: str, payload: str):
    data = json.loads(payload)
    secret_type = SECRET_TYPES[SecurityClass(security)]
    if secret_type is EnterpriseSecret:
        data['method'] = EapMethod(data['method'])
    return secret_type(**data)


class CredentialStore:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.CREDENTIALS_DB_PATH
        ensure_directory_exists(os.path.dirname(self.db_path), mode=0o700)
        self.engine = create_engine(
            f'sqlite:///{self.db_path}',
            pool_pre_ping=True,
            connect_args={'check_same_thread': False}  # SQLite多线程支持
        )
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Create the table if needed and restrict the database file to its owner."""
        Base.metadata.create_all(self.engine)
        os.chmod(self.db_path, 0o600)
        logger.info(f"Credential store ready: {self.db_path}")

    def _to_credential(self, record: WifiCredentialRecord) -> WifiCredential:
        addressing = json.loads(record.addressing_json) if record.addressing_json else None
        return WifiCredential(
            ssid=record.ssid,
            secret=_secret_from_json(record.security, record.secret_json),
            auto_connect=record.auto_connect,
            hidden=record.hidden,
            priority=record.priority,
            last_connected=record.last_connected,
            addressing=desired_config_from_dict(addressing) if addressing else None,
        )

    def save(self, credential: WifiCredential) -> WifiCredential:
        """
        Insert or replace the credential for an SSID.

        Returns:
            WifiCredential: The stored credential

        Raises:
            ValidationError: Credential is malformed, nothing stored
            SQLAlchemyError: Database write failed
        """
        validate_credential(credential)
        session = self.SessionLocal()
        try:
            record = session.query(WifiCredentialRecord).filter(
                WifiCredentialRecord.ssid == credential.ssid
            ).first()
            if record is None:
                record = WifiCredentialRecord(ssid=credential.ssid)
                session.add(record)
            record.security = credential.security.value
            record.secret_json = _secret_to_json(credential.secret)
            record.addressing_json = json.dumps(credential.addressing.to_dict()) if credential.addressing else None
            record.auto_connect = credential.auto_connect
            record.hidden = credential.hidden
            record.priority = credential.priority
            if credential.last_connected:
                record.last_connected = credential.last_connected
            session.commit()
            logger.info(f"Saved credential for SSID '{credential.ssid}' ({credential.security.value})")
            return credential
        except SQLAlchemyError as e:
            logger.error(f"Failed to save credential for '{credential.ssid}': {e}")
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, ssid: str) -> Optional[WifiCredential]:
        session = self.SessionLocal()
        try:
            record = session.query(WifiCredentialRecord).filter(WifiCredentialRecord.ssid == ssid).first()
            return self._to_credential(record) if record else None
        finally:
            session.close()

    def list_credentials(self) -> List[WifiCredential]:
        """All credentials, best auto-connect candidate first."""
        session = self.SessionLocal()
        try:
            records = session.query(WifiCredentialRecord).all()
            credentials = [self._to_credential(record) for record in records]
        finally:
            session.close()

        credentials.sort(key=lambda c: (
            not c.auto_connect,
            -c.priority,
            -(c.last_connected.timestamp() if c.last_connected else 0),
            c.ssid,
        ))
        return credentials

    def delete(self, ssid: str) -> bool:
        session = self.SessionLocal()
        try:
            deleted = session.query(WifiCredentialRecord).filter(WifiCredentialRecord.ssid == ssid).delete()
            session.commit()
            if deleted:
                logger.info(f"Deleted credential for SSID '{ssid}'")
            return bool(deleted)
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete credential for '{ssid}': {e}")
            session.rollback()
            raise
        finally:
            session.close()

    def mark_connected(self, ssid: str, when: Optional[datetime] = None) -> None:
        session = self.SessionLocal()
        try:
            record = session.query(WifiCredentialRecord).filter(WifiCredentialRecord.ssid == ssid).first()
            if record is not None:
                record.last_connected = when or datetime.now()
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update last connection for '{ssid}': {e}")
            session.rollback()
            raise
        finally:
            session.close()
