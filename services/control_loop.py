import logging
import threading
from typing import Dict, List, Optional

import config
from models.network_models import InterfaceKind
from models.wifi_models import WifiState
from services.credential_service import CredentialStore
from services.file_service import UnitStore
from services.hotspot_service import HotspotManager
from services.interface_registry import InterfaceRegistry
from services.network_service import Reconciler
from services.system_service import ToolGateway
from services.task_service import InterfaceRoles, TaskRunner
from services.tunnel_service import TunnelManager, ROLE as TUNNEL_ROLE
from services.wifi_service import WifiController
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


class ControlLoop:
    """
    Owns every component instance for the lifetime of the process.

    The HTTP layer reaches components only through this object, and the
    background ticks (registry polling, WiFi auto-connect) start and stop with it.
    """

    def __init__(self, store: Optional[UnitStore] = None, gateway: Optional[ToolGateway] = None,
                 registry: Optional[InterfaceRegistry] = None, credentials: Optional[CredentialStore] = None,
                 tasks: Optional[TaskRunner] = None, auto_connect_interval: Optional[float] = None):
        self.store = store or UnitStore()
        self.gateway = gateway or ToolGateway()
        self.registry = registry or InterfaceRegistry(self.store)
        self.credentials = credentials or CredentialStore()
        self.tasks = tasks or TaskRunner()
        self.roles = InterfaceRoles()
        self.reconciler = Reconciler(self.store, self.registry, self.gateway, roles=self.roles)
        self.hotspots = HotspotManager(self.gateway, self.reconciler, self.roles, registry=self.registry)
        self.tunnels = TunnelManager(self.gateway, self.reconciler, self.registry, self.roles)
        self.auto_connect_interval = auto_connect_interval or config.AUTO_CONNECT_INTERVAL

        self._wifi: Dict[str, WifiController] = {}
        self._wifi_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._tick_thread = None

    def start(self) -> None:
        self.credentials.init_db()
        for tunnel in self.tunnels.list_tunnels():
            self.roles.claim(tunnel['name'], TUNNEL_ROLE)
        self.registry.start()
        self._stop_event.clear()
        self._tick_thread = threading.Thread(target=self._tick_loop, name="auto-connect", daemon=True)
        self._tick_thread.start()
        logger.info("Control loop started")

    def stop(self) -> None:
        self._stop_event.set()
        if self._tick_thread is not None:
            self._tick_thread.join(timeout=5)
            self._tick_thread = None
        self.tasks.shutdown()
        self.registry.stop()
        logger.info("Control loop stopped")

    def wifi(self, interface: str) -> Optional[WifiController]:
        """
        Controller for a wireless interface, created on first use.

        Returns:
            Optional[WifiController]: None when the interface does not exist

        Raises:
            ValidationError: The interface exists but is not wireless
        """
        with self._wifi_lock:
            controller = self._wifi.get(interface)
        if controller is not None:
            return controller

        live = self.registry.get(interface) or self.registry.refresh().get(interface)
        if live is None:
            return None
        if live.kind != InterfaceKind.WIRELESS:
            raise ValidationError('interface', f"{interface} is not a wireless interface")

        with self._wifi_lock:
            return self._wifi.setdefault(interface, WifiController(
                interface, self.gateway, self.registry, self.reconciler, self.credentials, self.roles
            ))

    def wifi_interfaces(self) -> List[str]:
        return [i.name for i in self.registry.snapshot().interfaces if i.kind == InterfaceKind.WIRELESS]

    def _tick_loop(self) -> None:
        while not self._stop_event.wait(self.auto_connect_interval):
            self.auto_connect_tick()

    def auto_connect_tick(self) -> List[str]:
        """
        Queue an auto-connect attempt on every idle wireless interface.

        Interfaces with queued or running tasks, or owned by a hotspot, are skipped.

        Returns:
            List[str]: Interfaces an attempt was queued for
        """
        queued = []
        if not any(credential.auto_connect for credential in self.credentials.list_credentials()):
            return queued
        for interface in self.wifi_interfaces():
            if any(not task.finished for task in self.tasks.list_tasks(interface)):
                continue
            if self.roles.owner(interface) not in (None, 'wifi-client'):
                continue
            controller = self.wifi(interface)
            if controller is None or controller.state not in (WifiState.IDLE, WifiState.FAILED):
                continue
            self.tasks.submit(interface, 'wifi-auto-connect', controller.auto_connect)
            queued.append(interface)
        return queued

    def status(self) -> Dict:
        snapshot = self.registry.snapshot()
        return {
            'interfaces': len(snapshot.interfaces),
            'snapshot_stale': snapshot.stale,
            'snapshot_error': snapshot.error,
            'roles': self.roles.to_dict(),
            'hotspots': self.hotspots.active_interfaces(),
            'running_tasks': sum(1 for task in self.tasks.list_tasks() if not task.finished),
        }
