import os
import time
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

import config
from models.hotspot_models import HotspotConfig, HotspotStatus
from models.network_models import InterfaceKind
from services.file_service import ensure_directory_exists, atomic_write_file, remove_file
from services.interface_registry import InterfaceRegistry
from services.network_service import Reconciler, UnitSpec
from services.system_service import ToolGateway
from services.task_service import InterfaceRoles
from utils.config_parser import (
    hotspot_desired_config, hotspot_network, parse_default_route, parse_iw_info, render_dnsmasq,
    render_hostapd, render_network_unit
)
from utils.exceptions import ConvergenceTimeout, ExternalToolError, OperationCancelled, ValidationError
from utils.validators import validate_hotspot_config, validate_interface_name

logger = logging.getLogger(__name__)

ROLE = "hotspot"


class HotspotManager:
    """
    Access point lifecycle: hostapd serves the SSID, dnsmasq hands out leases,
    and a static unit gives the interface its gateway address.
    """

    def __init__(self, gateway: ToolGateway, reconciler: Reconciler, roles: InterfaceRoles,
                 registry: Optional[InterfaceRegistry] = None, run_dir: Optional[str] = None,
                 confirm_attempts: Optional[int] = None, confirm_interval: Optional[float] = None):
        self.gateway = gateway
        self.reconciler = reconciler
        self.roles = roles
        self.registry = registry or reconciler.registry
        self.run_dir = run_dir or config.HOTSPOT_RUN_DIR
        self.confirm_attempts = confirm_attempts or config.HOTSPOT_CONFIRM_ATTEMPTS
        self.confirm_interval = (config.HOTSPOT_CONFIRM_INTERVAL if confirm_interval is None
                                 else confirm_interval)
        self._lock = threading.RLock()
        self._active: Dict[str, HotspotConfig] = {}
        self._started: Dict[str, datetime] = {}

    def _path(self, interface: str, name: str) -> str:
        return os.path.join(self.run_dir, f"{name}-{interface}")

    def _files(self, interface: str) -> Dict[str, str]:
        return {
            'hostapd_conf': self._path(interface, "hostapd") + ".conf",
            'hostapd_pid': self._path(interface, "hostapd") + ".pid",
            'dnsmasq_conf': self._path(interface, "dnsmasq") + ".conf",
            'dnsmasq_pid': self._path(interface, "dnsmasq") + ".pid",
        }

    def start(self, hotspot: HotspotConfig, cancel_event: Optional[threading.Event] = None) -> HotspotStatus:
        """
        Start an access point on an interface.

        Args:
            hotspot: SSID, password, channel and addressing of the access point
            cancel_event: Aborts the start; partial setup is torn down

        Returns:
            HotspotStatus: Status once the interface reports AP mode

        Raises:
            ValidationError: Bad SSID, password, channel or gateway, or the interface
                is not wireless; nothing is run
            ConflictError: The interface is owned by the WiFi client or a tunnel
            ExternalToolError: hostapd, dnsmasq or the network daemon failed
            ConvergenceTimeout: The interface never reported AP mode
        """
        validate_hotspot_config(hotspot)
        interface = hotspot.interface
        self.require_wireless(interface)
        self.roles.check(interface, ROLE)
        if hotspot.detect_upstream and hotspot.upstream is None:
            hotspot = replace(hotspot, upstream=self.default_upstream(interface))

        with self._lock:
            if interface in self._active:
                logger.info(f"Hotspot already running on {interface}, stopping it first")
                self.stop(interface)

            self.roles.claim(interface, ROLE)
            try:
                self._start(hotspot, cancel_event)
            except (ExternalToolError, ConvergenceTimeout, OperationCancelled, OSError) as e:
                logger.error(f"Hotspot start on {interface} failed: {e}")
                try:
                    self._cleanup(interface, hotspot)
                except (ExternalToolError, OSError) as cleanup_error:
                    logger.error(f"Cleanup after failed hotspot start on {interface} incomplete: {cleanup_error}")
                raise

            self._active[interface] = hotspot
            self._started[interface] = datetime.now()
        logger.info(f"Hotspot '{hotspot.ssid}' active on {interface} (channel {hotspot.channel})")
        return self.status(interface)

    def require_wireless(self, interface: str) -> None:
        live = self.registry.get(interface) or self.registry.refresh().get(interface)
        if live is None:
            raise ValidationError('interface', f"Interface {interface} does not exist")
        if live.kind != InterfaceKind.WIRELESS:
            raise ValidationError('interface',
                                  f"{interface} is {live.kind.value}, an access point needs a wireless interface")

    def default_upstream(self, interface: str) -> Optional[str]:
        """Interface holding the default route, or None when there is nothing to share."""
        try:
            upstream = parse_default_route(self.gateway.default_route())
        except ExternalToolError as e:
            logger.warning(f"Cannot read the default route, hotspot on {interface} shares no connection: {e}")
            return None
        if upstream is None or upstream == interface:
            logger.info(f"No upstream for hotspot on {interface}, NAT disabled")
            return None
        logger.info(f"Hotspot on {interface} shares the default route through {upstream}")
        return upstream

    def _start(self, hotspot: HotspotConfig, cancel_event: Optional[threading.Event]) -> None:
        interface = hotspot.interface
        files = self._files(interface)
        ensure_directory_exists(self.run_dir, mode=0o700)
        # hostapd 配置包含明文密码
        atomic_write_file(files['hostapd_conf'], render_hostapd(hotspot), mode=0o600)
        atomic_write_file(files['dnsmasq_conf'], render_dnsmasq(hotspot), mode=0o644)

        filename = self.reconciler.store.unit_filename(interface, ROLE)
        unit = UnitSpec(render_network_unit(interface, hotspot_desired_config(hotspot)))
        self.reconciler.apply_units(interface, {filename: unit}, confirm=False, cancel_event=cancel_event,
                                    owner=ROLE)

        self.gateway.start_hostapd(files['hostapd_conf'], files['hostapd_pid'])
        self.gateway.start_dnsmasq(files['dnsmasq_conf'], files['dnsmasq_pid'])
        if hotspot.upstream:
            self._enable_nat(hotspot)
        self._confirm_ap_mode(interface, cancel_event)

    def _nat_rules(self, hotspot: HotspotConfig) -> List[List[str]]:
        subnet = str(hotspot_network(hotspot))
        return [
            ["-t", "nat", "{op}", "POSTROUTING", "-s", subnet, "-o", hotspot.upstream, "-j", "MASQUERADE"],
            ["{op}", "FORWARD", "-i", hotspot.interface, "-o", hotspot.upstream, "-j", "ACCEPT"],
            ["{op}", "FORWARD", "-i", hotspot.upstream, "-o", hotspot.interface,
             "-m", "state", "--state", "RELATED,ESTABLISHED", "-j", "ACCEPT"],
        ]

    def _enable_nat(self, hotspot: HotspotConfig) -> None:
        self.gateway.sysctl("net.ipv4.ip_forward", "1")
        for rule in self._nat_rules(hotspot):
            self.gateway.iptables([part.replace("{op}", "-A") for part in rule])
        logger.info(f"NAT enabled from {hotspot.interface} to {hotspot.upstream}")

    def _disable_nat(self, hotspot: HotspotConfig) -> None:
        for rule in self._nat_rules(hotspot):
            try:
                self.gateway.iptables([part.replace("{op}", "-D") for part in rule])
            except ExternalToolError as e:
                # 规则可能从未添加成功
                logger.debug(f"NAT rule removal skipped: {e}")

    def _confirm_ap_mode(self, interface: str, cancel_event: Optional[threading.Event]) -> None:
        for attempt in range(self.confirm_attempts):
            info = parse_iw_info(self.gateway.iw_info(interface))
            if info.get('type') == 'AP':
                return
            if attempt == self.confirm_attempts - 1:
                break
            if cancel_event is not None:
                if cancel_event.wait(self.confirm_interval):
                    raise OperationCancelled(f"{interface}: hotspot start cancelled")
            else:
                time.sleep(self.confirm_interval)
        raise ConvergenceTimeout(interface, self.confirm_attempts)

    def stop(self, interface: str) -> HotspotStatus:
        """
        Stop the access point and return the interface to an unconfigured state.

        Stopping an interface without a hotspot only cleans up leftover
        processes from an earlier run, and does nothing if there are none.
        """
        validate_interface_name(interface)
        self.roles.check(interface, ROLE)
        with self._lock:
            hotspot = self._active.pop(interface, None)
            self._started.pop(interface, None)
            files = self._files(interface)
            if hotspot is None and not any(os.path.exists(files[key]) for key in ('hostapd_pid', 'dnsmasq_pid')):
                return self.status(interface)
            self._cleanup(interface, hotspot)
        logger.info(f"Hotspot on {interface} stopped")
        return self.status(interface)

    def _cleanup(self, interface: str, hotspot: Optional[HotspotConfig]) -> None:
        files = self._files(interface)
        try:
            for pid_key in ('hostapd_pid', 'dnsmasq_pid'):
                pid = self.gateway.read_pid_file(files[pid_key])
                if pid is not None:
                    self.gateway.terminate(pid)
            if hotspot is not None and hotspot.upstream:
                self._disable_nat(hotspot)
            for path in files.values():
                remove_file(path)
            self.reconciler.remove(interface, owner=ROLE)
            self.gateway.flush_addresses(interface)
        finally:
            self.roles.release(interface, ROLE)

    def status(self, interface: str) -> HotspotStatus:
        files = self._files(interface)
        with self._lock:
            hotspot = self._active.get(interface)
            started_at = self._started.get(interface)
        if hotspot is None:
            return HotspotStatus(interface=interface, active=False)

        hostapd_pid = self.gateway.read_pid_file(files['hostapd_pid'])
        status = HotspotStatus(
            interface=interface,
            active=hostapd_pid is not None,
            config=hotspot,
            hostapd_pid=hostapd_pid,
            dnsmasq_pid=self.gateway.read_pid_file(files['dnsmasq_pid']),
            started_at=started_at,
        )
        if status.active:
            try:
                status.clients = self._clients(interface)
            except ExternalToolError as e:
                logger.warning(f"Could not list hotspot clients on {interface}: {e}")
        return status

    def _clients(self, interface: str) -> List[str]:
        output = self.gateway.iw_station_dump(interface)
        clients = []
        for line in output.splitlines():
            if line.startswith('Station '):
                clients.append(line.split()[1].lower())
        return clients

    def active_interfaces(self) -> List[str]:
        with self._lock:
            return sorted(self._active)
