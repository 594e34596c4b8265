import time
import logging
import ipaddress
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import config
from models.network_models import (
    ApplyResult, DesiredConfig, DhcpAddressing, Interface, InterfaceKind, StaticAddressing
)
from services.file_service import UnitStore
from services.interface_registry import InterfaceRegistry
from services.system_service import ToolGateway
from services.task_service import InterfaceRoles
from utils.config_parser import render_network_unit
from utils.exceptions import ConvergenceTimeout, ExternalToolError, OperationCancelled, ValidationError
from utils.validators import validate_desired_config, validate_interface_name

logger = logging.getLogger(__name__)

CONVERGED_OPER_STATES = ("up", "unknown")

# unit role -> InterfaceRoles owner allowed to write it
UNIT_OWNERS = {
    "wired": "wired",
    "wireless": "wifi-client",
    "hotspot": "hotspot",
    "tunnel": "tunnel",
}


@dataclass(frozen=True)
class UnitSpec:
    content: str
    mode: int = config.NETWORK_UNIT_MODE
    group: Optional[str] = None


@dataclass(frozen=True)
class WriteUnit:
    filename: str
    unit: UnitSpec


@dataclass(frozen=True)
class RemoveUnit:
    filename: str


@dataclass(frozen=True)
class DeleteLink:
    interface: str


@dataclass(frozen=True)
class ReloadDaemon:
    pass


@dataclass(frozen=True)
class ReconfigureInterface:
    interface: str


@dataclass(frozen=True)
class SetLinkUp:
    interface: str


Action = Union[WriteUnit, RemoveUnit, DeleteLink, ReloadDaemon, ReconfigureInterface, SetLinkUp]


def reconcile(interface: str, desired: Dict[str, UnitSpec], persisted: Dict[str, str],
              live: Optional[Interface]) -> List[Action]:
    """
    Compute the ordered actions that move persisted and live state toward desired state.

    Pure function: it only compares its inputs.

    Args:
        interface: Kernel name of the interface
        desired: File name to unit for every unit the interface should have
        persisted: File name to content for every unit currently matching the interface
        live: Current kernel view of the interface, None if it does not exist

    Returns:
        List[Action]: Empty when nothing needs to change
    """
    actions: List[Action] = []
    for filename in sorted(desired):
        if persisted.get(filename) != desired[filename].content:
            actions.append(WriteUnit(filename, desired[filename]))
    for filename in sorted(persisted):
        if filename not in desired:
            actions.append(RemoveUnit(filename))

    netdev_changed = any(action.filename.endswith('.netdev') for action in actions)
    if actions:
        # networkd 不会修改已存在的 netdev，需要先删除链路
        if netdev_changed and live is not None and live.kind == InterfaceKind.TUNNEL:
            actions.append(DeleteLink(interface))
        actions.append(ReloadDaemon())
        if live is not None and not netdev_changed:
            actions.append(ReconfigureInterface(interface))

    if desired and live is not None and not live.admin_up and not netdev_changed:
        actions.append(SetLinkUp(interface))
    return actions


def _has_address(present: List[str], expected: str) -> bool:
    wanted = ipaddress.ip_interface(expected)
    for address in present:
        try:
            if ipaddress.ip_interface(address) == wanted:
                return True
        except ValueError:
            continue
    return False


def is_converged(live: Optional[Interface], desired: Optional[DesiredConfig]) -> bool:
    """
    Check whether live state satisfies a DesiredConfig.

    Static families need every configured address present; DHCP families need
    any address of that family. The link must be administratively up and
    operationally up (or unknown, as for tunnels without carrier reporting).
    """
    if live is None or not live.admin_up:
        return False
    if live.oper_state not in CONVERGED_OPER_STATES:
        return False
    if desired is None:
        return True
    for addressing, present in ((desired.ipv4, live.ipv4_addresses), (desired.ipv6, live.ipv6_addresses)):
        if isinstance(addressing, StaticAddressing):
            if not all(_has_address(present, address) for address in addressing.addresses):
                return False
        elif isinstance(addressing, DhcpAddressing):
            if not present:
                return False
    return True


class Reconciler:
    """
    Applies desired units for one interface at a time.

    Writes go through the UnitStore's write-then-rename path. If any file
    operation or daemon call fails, every touched unit is restored byte-for-byte
    before the error propagates.
    """

    def __init__(self, store: UnitStore, registry: InterfaceRegistry, gateway: ToolGateway,
                 attempts: Optional[int] = None, backoff: Optional[float] = None,
                 roles: Optional[InterfaceRoles] = None):
        self.store = store
        self.registry = registry
        self.gateway = gateway
        self.attempts = attempts or config.CONVERGENCE_ATTEMPTS
        self.backoff = config.CONVERGENCE_BACKOFF_SECONDS if backoff is None else backoff
        self.roles = roles

    def plan(self, interface: str, desired: DesiredConfig, role: str = "wired") -> List[Action]:
        """Actions apply() would take for this config, without side effects."""
        validate_desired_config(desired)
        filename = self.store.unit_filename(interface, role)
        units = {filename: UnitSpec(render_network_unit(interface, desired))}
        return reconcile(interface, units, self.store.find_units_for_interface(interface),
                         self.registry.get(interface))

    def apply(self, interface: str, desired: DesiredConfig, role: str = "wired",
              cancel_event: Optional[threading.Event] = None, confirm: bool = True) -> ApplyResult:
        """
        Apply a DesiredConfig to an interface.

        Args:
            interface: Kernel name of the interface
            desired: Configuration to persist
            role: Unit role, selects the priority prefix (wired, wireless, hotspot)
            cancel_event: Aborts the convergence wait when set
            confirm: Wait for live state to match before returning

        Returns:
            ApplyResult: confirmed is False when live state did not converge in time

        Raises:
            ValidationError: Invalid config or unknown interface, nothing written
            ConflictError: The interface is owned by another role, nothing written
            ExternalToolError: Daemon call failed, previous units restored
        """
        validate_interface_name(interface)
        validate_desired_config(desired)
        content = render_network_unit(interface, desired)
        filename = self.store.unit_filename(interface, role)
        return self.apply_units(interface, {filename: UnitSpec(content)}, expected=desired,
                                confirm=confirm, cancel_event=cancel_event, owner=UNIT_OWNERS[role])

    def apply_units(self, interface: str, units: Dict[str, UnitSpec], expected: Optional[DesiredConfig] = None,
                    require_existing: bool = True, confirm: bool = True,
                    cancel_event: Optional[threading.Event] = None, owner: str = "wired") -> ApplyResult:
        if self.roles is not None:
            self.roles.check(interface, owner)
        live = self._live(interface)
        if require_existing and live is None:
            raise ValidationError('interface', f"Interface {interface} does not exist")

        with self.store.lock:
            persisted = self.store.find_units_for_interface(interface)
            actions = reconcile(interface, units, persisted, live)
            if not actions:
                logger.info(f"{interface}: configuration unchanged")
                return ApplyResult(interface=interface, changed=False, confirmed=True, message="no changes")
            self.execute(actions)

        written = [action.filename for action in actions if isinstance(action, WriteUnit)]
        removed = [action.filename for action in actions if isinstance(action, RemoveUnit)]
        result = ApplyResult(interface=interface, changed=bool(written or removed), confirmed=True,
                             written=written, removed=removed)

        if confirm and units:
            result.confirmed = self.wait_for_convergence(interface, expected, cancel_event)
            if not result.confirmed:
                result.message = str(ConvergenceTimeout(interface, self.attempts))
                logger.warning(result.message)
        return result

    def remove(self, interface: str, cancel_event: Optional[threading.Event] = None,
               owner: str = "wired") -> ApplyResult:
        """Delete every unit for the interface and reload the daemon."""
        validate_interface_name(interface)
        return self.apply_units(interface, {}, require_existing=False, cancel_event=cancel_event, owner=owner)

    def set_link(self, interface: str, up: bool, cancel_event: Optional[threading.Event] = None) -> Interface:
        """
        Bring the link administratively up or down. Unit files are left alone,
        so networkd keeps its configuration for the next time the link comes up.

        Returns:
            Interface: Live state after the change

        Raises:
            ValidationError: Unknown interface
            OperationCancelled: cancel_event was set before the change
        """
        validate_interface_name(interface)
        if self._live(interface) is None:
            raise ValidationError('interface', f"Interface {interface} does not exist")
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"{interface}: link change cancelled")

        self.gateway.set_link(interface, up=up)
        logger.info(f"{interface}: link set {'up' if up else 'down'}")
        live = self.registry.refresh().get(interface)
        if live is None:
            raise ValidationError('interface', f"Interface {interface} disappeared")
        return live

    def execute(self, actions: List[Action]) -> None:
        touched = [action.filename for action in actions if isinstance(action, (WriteUnit, RemoveUnit))]
        reloaded = False
        with self.store.lock:
            saved = self.store.snapshot(touched)
            try:
                for action in actions:
                    if isinstance(action, WriteUnit):
                        self.store.write_unit(action.filename, action.unit.content, action.unit.mode,
                                              action.unit.group)
                    elif isinstance(action, RemoveUnit):
                        self.store.remove_unit(action.filename)
                    elif isinstance(action, DeleteLink):
                        self.gateway.delete_link(action.interface)
                    elif isinstance(action, ReloadDaemon):
                        self.gateway.reload_networkd()
                        reloaded = True
                    elif isinstance(action, ReconfigureInterface):
                        self.gateway.reconfigure(action.interface)
                    elif isinstance(action, SetLinkUp):
                        self.gateway.set_link(action.interface, up=True)
            except (ExternalToolError, OperationCancelled, OSError) as e:
                logger.error(f"Apply failed, restoring previous units: {e}")
                self.store.restore(saved)
                if reloaded:
                    self._reload_after_restore()
                raise

    def _reload_after_restore(self) -> None:
        try:
            self.gateway.reload_networkd()
        except ExternalToolError as e:
            logger.error(f"Reload after restore failed: {e}")

    def _live(self, interface: str) -> Optional[Interface]:
        live = self.registry.get(interface)
        if live is None:
            live = self.registry.refresh().get(interface)
        return live

    def wait_for_convergence(self, interface: str, expected: Optional[DesiredConfig],
                             cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Re-poll the registry a bounded number of times.

        Returns:
            bool: True once the interface matches the expectation, False when the
                retry budget is exhausted

        Raises:
            OperationCancelled: cancel_event was set while waiting
        """
        for attempt in range(1, self.attempts + 1):
            snapshot = self.registry.refresh()
            if not snapshot.stale and is_converged(snapshot.get(interface), expected):
                logger.info(f"{interface}: converged after {attempt} attempt(s)")
                return True
            if attempt == self.attempts:
                break
            if cancel_event is not None:
                if cancel_event.wait(self.backoff):
                    raise OperationCancelled(f"{interface}: convergence wait cancelled")
            else:
                time.sleep(self.backoff)
        return False
