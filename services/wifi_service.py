import os
import time
import logging
import threading
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

import config
from models.network_models import DesiredConfig, DhcpAddressing
from models.wifi_models import (
    SecurityClass, Transition, WifiCredential, WifiDiagnostics, WifiNetwork, WifiState, WifiStatus
)
from services.credential_service import CredentialStore
from services.file_service import atomic_write_file, remove_file
from services.interface_registry import InterfaceRegistry
from services.network_service import Reconciler
from services.system_service import ToolGateway
from services.task_service import InterfaceRoles
from utils.config_parser import parse_iw_link, parse_iw_scan, parse_station_dump, render_wpa_supplicant
from utils.exceptions import (
    ConvergenceTimeout, ExternalToolError, InvalidTransition, LanternError, OperationCancelled, ValidationError
)
from utils.validators import validate_credential

logger = logging.getLogger(__name__)

ROLE = "wifi-client"

TRANSITIONS = {
    WifiState.IDLE: {WifiState.SCANNING, WifiState.SELECTING},
    WifiState.SCANNING: {WifiState.NETWORKS_LISTED, WifiState.FAILED, WifiState.IDLE},
    WifiState.NETWORKS_LISTED: {WifiState.SELECTING, WifiState.SCANNING, WifiState.FAILED, WifiState.IDLE},
    WifiState.SELECTING: {WifiState.AUTHENTICATING, WifiState.SELECTING, WifiState.SCANNING,
                          WifiState.FAILED, WifiState.IDLE},
    WifiState.AUTHENTICATING: {WifiState.ASSOCIATING, WifiState.FAILED, WifiState.IDLE},
    WifiState.ASSOCIATING: {WifiState.CONNECTED, WifiState.FAILED, WifiState.IDLE},
    WifiState.CONNECTED: {WifiState.FAILED, WifiState.IDLE},
    WifiState.FAILED: {WifiState.SCANNING, WifiState.SELECTING, WifiState.FAILED, WifiState.IDLE},
}

DEFAULT_WIRELESS_CONFIG = DesiredConfig(ipv4=DhcpAddressing(), ipv6=DhcpAddressing())


class WifiController:
    """
    WiFi client state machine for one wireless interface.

    Idle -> Scanning -> NetworksListed -> Selecting -> Authenticating ->
    Associating -> Connected, with Failed reachable from every state after Idle.
    Every wait is bounded, and each method is blocking: callers run them
    through the TaskRunner so one interface sees one operation at a time.
    """

    def __init__(self, interface: str, gateway: ToolGateway, registry: InterfaceRegistry,
                 reconciler: Reconciler, credentials: CredentialStore, roles: InterfaceRoles,
                 association_attempts: Optional[int] = None, association_interval: Optional[float] = None):
        self.interface = interface
        self.gateway = gateway
        self.registry = registry
        self.reconciler = reconciler
        self.credentials = credentials
        self.roles = roles
        self.association_attempts = association_attempts or config.ASSOCIATION_ATTEMPTS
        self.association_interval = (config.ASSOCIATION_INTERVAL if association_interval is None
                                     else association_interval)

        self._lock = threading.RLock()
        self.state = WifiState.IDLE
        self.networks: List[WifiNetwork] = []
        self.selected: Optional[WifiNetwork] = None
        self.error: Optional[str] = None
        self.diagnostics_data: Optional[WifiDiagnostics] = None
        self.history = deque(maxlen=50)

    @property
    def supplicant_conf(self) -> str:
        return os.path.join(config.WPA_SUPPLICANT_DIR, f"wpa_supplicant-{self.interface}.conf")

    # state handling

    def _transition(self, target: WifiState, reason: Optional[str] = None) -> None:
        with self._lock:
            source = self.state
            if target not in TRANSITIONS[source]:
                raise InvalidTransition(self.interface, source.value, f"move to {target.value}")
            self.state = target
            self.history.append(Transition(source=source, target=target, at=datetime.now(), reason=reason))
        if reason:
            logger.info(f"{self.interface}: {source.value} -> {target.value} ({reason})")
        else:
            logger.info(f"{self.interface}: {source.value} -> {target.value}")

    def _fail(self, reason: str) -> None:
        with self._lock:
            self.error = reason
            if self.state != WifiState.IDLE:
                self._transition(WifiState.FAILED, reason)

    def _abort(self, reason: str) -> None:
        """Fail a connection attempt and undo its partial setup. The original error is re-raised by the caller."""
        self._fail(reason)
        try:
            self.gateway.stop_supplicant(self.interface)
            remove_file(self.supplicant_conf)
        except (ExternalToolError, OSError) as e:
            logger.error(f"{self.interface}: cleanup after failed connection incomplete: {e}")
        finally:
            self.roles.release(self.interface, ROLE)

    def _require(self, operation: str, *states: WifiState) -> None:
        with self._lock:
            if self.state not in states:
                raise InvalidTransition(self.interface, self.state.value, operation)

    def status(self) -> WifiStatus:
        with self._lock:
            return WifiStatus(interface=self.interface, state=self.state, networks=list(self.networks),
                              selected=self.selected, error=self.error, diagnostics=self.diagnostics_data)

    def history_dicts(self) -> List[Dict]:
        with self._lock:
            return [transition.to_dict() for transition in self.history]

    # operations

    def scan(self, cancel_event: Optional[threading.Event] = None) -> List[WifiNetwork]:
        """
        Run a bounded scan and list the networks in range.

        Raises:
            InvalidTransition: Not allowed from the current state (e.g. while connected)
            ExternalToolError: Scan failed; the controller is left in Failed
                with reason 'scan-timeout' when the scan exceeded its bound
        """
        self._require("scan", WifiState.IDLE, WifiState.NETWORKS_LISTED, WifiState.SELECTING, WifiState.FAILED)
        self.roles.check(self.interface, ROLE)
        self._transition(WifiState.SCANNING)
        self.error = None
        try:
            live = self.registry.get(self.interface)
            if live is not None and not live.admin_up:
                self.gateway.set_link(self.interface, up=True)
            output = self.gateway.iw_scan(self.interface, cancel_event)
        except ExternalToolError as e:
            self._fail("scan-timeout" if e.timed_out else str(e))
            raise
        except OperationCancelled:
            self._transition(WifiState.IDLE, "cancelled")
            raise

        networks = parse_iw_scan(output)
        with self._lock:
            self.networks = networks
            self.selected = None
        self._transition(WifiState.NETWORKS_LISTED, f"{len(networks)} networks")
        return networks

    def select(self, ssid: str, security: Optional[SecurityClass] = None,
               cancel_event: Optional[threading.Event] = None) -> WifiState:
        """
        Pick a listed network.

        When a stored credential for the SSID has auto-connect enabled the
        controller continues through authentication without further input,
        otherwise it waits in Selecting for provide_credential().
        """
        self._require("select a network", WifiState.NETWORKS_LISTED, WifiState.SELECTING)
        network = self._find(ssid, security)
        if network is None:
            raise ValidationError('ssid', f"{ssid} is not in the scan results")
        self.roles.check(self.interface, ROLE)

        with self._lock:
            self.selected = network
        self._transition(WifiState.SELECTING, ssid)

        credential = self.credentials.get(ssid)
        if credential is not None and credential.auto_connect and credential.security == network.security:
            return self._connect(credential, cancel_event)
        return self.state

    def provide_credential(self, credential: WifiCredential, save: bool = True,
                           cancel_event: Optional[threading.Event] = None) -> WifiState:
        """Continue from Selecting with a credential supplied by the user."""
        self._require("accept a credential", WifiState.SELECTING)
        selected = self.selected
        if selected is None:
            raise InvalidTransition(self.interface, self.state.value, "accept a credential without a network")
        if credential.ssid != selected.ssid:
            raise ValidationError('ssid', f"credential is for {credential.ssid}, selected network is {selected.ssid}")
        if credential.security != selected.security:
            raise ValidationError('security', f"{selected.ssid} uses {selected.security.value}, "
                                              f"credential is {credential.security.value}")
        validate_credential(credential)
        self.roles.check(self.interface, ROLE)
        if save:
            self.credentials.save(credential)
        return self._connect(credential, cancel_event)

    def connect_hidden(self, credential: WifiCredential, save: bool = True,
                       cancel_event: Optional[threading.Event] = None) -> WifiState:
        """
        Connect to a network that does not broadcast its SSID.

        The SSID is taken from the credential instead of the scan list, and the
        supplicant is told to scan for it actively.
        """
        self._require("connect to a hidden network", WifiState.IDLE, WifiState.NETWORKS_LISTED,
                      WifiState.SELECTING, WifiState.FAILED)
        credential = replace(credential, hidden=True)
        validate_credential(credential)
        self.roles.check(self.interface, ROLE)

        with self._lock:
            self.selected = WifiNetwork(ssid=credential.ssid, security=credential.security, hidden=True)
        self._transition(WifiState.SELECTING, f"hidden {credential.ssid}")
        if save:
            self.credentials.save(credential)
        return self._connect(credential, cancel_event)

    def _connect(self, credential: WifiCredential, cancel_event: Optional[threading.Event]) -> WifiState:
        self.roles.claim(self.interface, ROLE)
        self._transition(WifiState.AUTHENTICATING, credential.security.value)
        try:
            atomic_write_file(self.supplicant_conf, render_wpa_supplicant(credential),
                              mode=config.SUPPLICANT_CONF_MODE)
            self.gateway.start_supplicant(self.interface, cancel_event)

            self._transition(WifiState.ASSOCIATING)
            desired = credential.addressing or DEFAULT_WIRELESS_CONFIG
            self.reconciler.apply(self.interface, desired, role="wireless", confirm=False,
                                  cancel_event=cancel_event)
            if not self._wait_for_association(cancel_event):
                raise ConvergenceTimeout(self.interface, self.association_attempts)
        except ConvergenceTimeout:
            self._abort("association-timeout")
            raise
        except OperationCancelled:
            self._abort("cancelled")
            raise
        except (LanternError, OSError) as e:
            self._abort(str(e))
            raise

        try:
            self.credentials.mark_connected(credential.ssid)
        except SQLAlchemyError as e:
            # 连接已建立，只是没有记录时间
            logger.error(f"{self.interface}: connected to {credential.ssid} but could not record it: {e}")
        self._transition(WifiState.CONNECTED, credential.ssid)
        try:
            self.diagnostics()
        except ExternalToolError as e:
            logger.warning(f"{self.interface}: initial diagnostics unavailable: {e}")
        return self.state

    def _wait_for_association(self, cancel_event: Optional[threading.Event]) -> bool:
        """Poll until the link is operationally up with an address, within a fixed number of attempts."""
        for attempt in range(self.association_attempts):
            live = self.registry.refresh().get(self.interface)
            if live is not None and live.oper_state == 'up' and live.addresses:
                return True
            if attempt == self.association_attempts - 1:
                break
            if cancel_event is not None:
                if cancel_event.wait(self.association_interval):
                    raise OperationCancelled(f"{self.interface}: association cancelled")
            else:
                time.sleep(self.association_interval)
        return False

    def disconnect(self, cancel_event: Optional[threading.Event] = None) -> WifiState:
        """
        Tear down the supplicant and the wireless unit, settling in Idle.

        If teardown itself fails the controller settles in Failed instead.
        """
        with self._lock:
            if self.state == WifiState.IDLE and self.roles.owner(self.interface) != ROLE:
                return self.state
        try:
            self.gateway.stop_supplicant(self.interface)
            remove_file(self.supplicant_conf)
            self.reconciler.remove(self.interface, cancel_event=cancel_event, owner=ROLE)
        except (ExternalToolError, OSError) as e:
            self._fail(f"disconnect failed: {e}")
            raise
        finally:
            self.roles.release(self.interface, ROLE)

        with self._lock:
            self.selected = None
            self.diagnostics_data = None
            self.error = None
            if self.state != WifiState.IDLE:
                self._transition(WifiState.IDLE, "disconnected")
        return self.state

    def diagnostics(self) -> WifiDiagnostics:
        """
        Refresh signal, bitrate and retry counters without leaving Connected.

        Raises:
            InvalidTransition: Not connected
            ExternalToolError: iw failed or the link was lost; the controller moves to Failed
        """
        self._require("read diagnostics", WifiState.CONNECTED)
        try:
            link = parse_iw_link(self.gateway.iw_link(self.interface))
            if not link:
                raise ExternalToolError("iw", "interface is no longer associated")
            station = parse_station_dump(self.gateway.iw_station_dump(self.interface))
        except ExternalToolError as e:
            self._fail(str(e))
            raise

        diagnostics = WifiDiagnostics(
            interface=self.interface,
            ssid=link.get('ssid'),
            bssid=link.get('bssid'),
            signal_dbm=station.get('signal_dbm') or link.get('signal_dbm'),
            frequency=link.get('frequency'),
            channel=link.get('channel'),
            tx_bitrate=link.get('tx_bitrate'),
            rx_bitrate=link.get('rx_bitrate'),
            rx_bytes=station.get('rx_bytes', 0),
            tx_bytes=station.get('tx_bytes', 0),
            tx_retries=station.get('tx_retries', 0),
            tx_failed=station.get('tx_failed', 0),
            refreshed_at=datetime.now(),
        )
        with self._lock:
            self.diagnostics_data = diagnostics
        return diagnostics

    def auto_connect(self, cancel_event: Optional[threading.Event] = None) -> Optional[str]:
        """
        Scan and join the best stored auto-connect network in range.

        Returns:
            Optional[str]: SSID joined, None when nothing was attempted
        """
        with self._lock:
            if self.state not in (WifiState.IDLE, WifiState.FAILED, WifiState.NETWORKS_LISTED):
                return None
        if self.roles.owner(self.interface) not in (None, ROLE):
            return None
        candidates = [c for c in self.credentials.list_credentials() if c.auto_connect]
        if not candidates:
            return None

        networks = self.scan(cancel_event)
        visible = {network.key for network in networks}
        for credential in candidates:
            if (credential.ssid, credential.security) in visible:
                logger.info(f"{self.interface}: auto-connecting to {credential.ssid}")
                self.select(credential.ssid, credential.security, cancel_event)
                return credential.ssid
        logger.debug(f"{self.interface}: no stored auto-connect network in range")
        return None

    def _find(self, ssid: str, security: Optional[SecurityClass]) -> Optional[WifiNetwork]:
        with self._lock:
            for network in self.networks:
                if network.ssid == ssid and (security is None or network.security == security):
                    return network
        return None
