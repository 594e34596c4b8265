"""
WireGuard tunnels managed as a .netdev/.network unit pair.

Private keys exist only in memory and inside the .netdev unit, which is written
readable by the network daemon's group and nobody else.
"""

import logging
import threading
from typing import Dict, List, Optional

import config
from models.network_models import ApplyResult, DesiredConfig, InterfaceKind, StaticAddressing
from models.tunnel_models import KeyPair, TunnelConfig, TunnelStatus
from services.interface_registry import InterfaceRegistry
from services.network_service import Reconciler, UnitSpec
from services.system_service import ToolGateway
from services.task_service import InterfaceRoles
from utils.config_parser import parse_netdev, parse_wg_dump, parse_wg_quick, render_netdev, render_tunnel_network
from utils.exceptions import ConflictError, LanternError, ValidationError
from utils.validators import (
    tunnel_config_from_dict, validate_interface_name, validate_tunnel_config, validate_wireguard_key
)

logger = logging.getLogger(__name__)

ROLE = "tunnel"


def _expected_config(tunnel: TunnelConfig) -> Optional[DesiredConfig]:
    ipv4 = tuple(address for address in tunnel.addresses if ':' not in address)
    ipv6 = tuple(address for address in tunnel.addresses if ':' in address)
    if not ipv4 and not ipv6:
        return None
    return DesiredConfig(
        ipv4=StaticAddressing(addresses=ipv4) if ipv4 else None,
        ipv6=StaticAddressing(addresses=ipv6) if ipv6 else None,
        required_for_online=False,
    )


class TunnelManager:
    def __init__(self, gateway: ToolGateway, reconciler: Reconciler, registry: InterfaceRegistry,
                 roles: InterfaceRoles):
        self.gateway = gateway
        self.reconciler = reconciler
        self.registry = registry
        self.roles = roles
        self._lock = threading.Lock()
        self._keys: Dict[str, str] = {}

    def create_tunnel(self, name: str) -> KeyPair:
        """
        Generate a key pair for a new tunnel.

        The private key is held in memory until configure() writes it into
        the tunnel's .netdev unit.

        Returns:
            KeyPair: Generated keys; its repr never shows the private key
        """
        validate_interface_name(name, 'name')
        self.roles.check(name, ROLE)
        private_key = self.gateway.wg_genkey()
        validate_wireguard_key(private_key, 'private_key')
        keys = KeyPair(private_key=private_key, public_key=self.public_key(private_key))
        with self._lock:
            self._keys[name] = private_key
        logger.info(f"Generated key pair for tunnel {name}, public key {keys.public_key}")
        return keys

    def public_key(self, private_key: str) -> str:
        """Derive the public key with `wg pubkey`, passing the private key on stdin."""
        validate_wireguard_key(private_key, 'private_key')
        public_key = self.gateway.wg_pubkey(private_key)
        validate_wireguard_key(public_key, 'public_key')
        return public_key

    def private_key_for(self, name: str) -> Optional[str]:
        """Private key of a tunnel, from memory or from its existing .netdev unit."""
        with self._lock:
            private_key = self._keys.get(name)
        if private_key:
            return private_key
        for filename, content in self.reconciler.store.find_units_for_interface(name).items():
            if filename.endswith('.netdev'):
                existing = parse_netdev(content)
                if existing is not None and existing.private_key:
                    return existing.private_key
        return None

    def configure(self, tunnel: TunnelConfig, cancel_event: Optional[threading.Event] = None) -> ApplyResult:
        """
        Write the tunnel's .netdev and .network units and bring it up.

        Re-applying an identical configuration changes nothing.

        Raises:
            ValidationError: Bad key, address or allowed-IP range; nothing written
            ConflictError: The name is used by the WiFi client, a hotspot, a non-tunnel
                device or another interface's unit
            ExternalToolError: The network daemon failed; previous units restored
        """
        validate_tunnel_config(tunnel)
        self._check_foreign(tunnel.name)
        self.roles.claim(tunnel.name, ROLE)
        store = self.reconciler.store
        units = {
            store.unit_filename(tunnel.name, ROLE, ".netdev"): UnitSpec(
                render_netdev(tunnel), mode=config.TUNNEL_UNIT_MODE, group=config.TUNNEL_UNIT_GROUP
            ),
            store.unit_filename(tunnel.name, ROLE): UnitSpec(render_tunnel_network(tunnel)),
        }
        try:
            result = self.reconciler.apply_units(tunnel.name, units, expected=_expected_config(tunnel),
                                                 require_existing=False, owner=ROLE,
                                                 cancel_event=cancel_event)
        except (LanternError, OSError):
            if not store.find_units_for_interface(tunnel.name):
                self.roles.release(tunnel.name, ROLE)
            raise
        with self._lock:
            self._keys[tunnel.name] = tunnel.private_key
        logger.info(f"Tunnel {tunnel.name} configured with {len(tunnel.peers)} peer(s): {result.status}")
        return result

    def _check_foreign(self, name: str) -> None:
        live = self.registry.get(name) or self.registry.refresh().get(name)
        if live is not None and live.kind != InterfaceKind.TUNNEL:
            raise ConflictError(name, live.kind.value, ROLE)
        prefix = f"{config.UNIT_PREFIXES[ROLE]}-"
        foreign = [filename for filename in self.reconciler.store.find_units_for_interface(name)
                   if not filename.startswith(prefix)]
        if foreign:
            raise ConflictError(name, f"the interface configured by {foreign[0]}", ROLE)

    def build_config(self, name: str, data: Dict) -> TunnelConfig:
        """Validated TunnelConfig from API input, using the key generated or persisted for the tunnel."""
        validate_interface_name(name, 'name')
        private_key = self.private_key_for(name)
        if not private_key:
            raise ValidationError('private_key', f"no key pair exists for {name}, create the tunnel first")
        return tunnel_config_from_dict(name, private_key, data)

    def parse_import(self, name: str, content: str) -> TunnelConfig:
        """Validated TunnelConfig from a wg-quick style configuration."""
        validate_interface_name(name, 'name')
        private_key, data = parse_wg_quick(content or '')
        if not private_key:
            raise ValidationError('private_key', "imported configuration has no [Interface] PrivateKey")
        return tunnel_config_from_dict(name, private_key, data)

    def import_config(self, name: str, content: str,
                      cancel_event: Optional[threading.Event] = None) -> ApplyResult:
        """Import a wg-quick style configuration as a managed tunnel."""
        tunnel = self.parse_import(name, content)
        logger.info(f"Importing tunnel {name} with {len(tunnel.peers)} peer(s)")
        return self.configure(tunnel, cancel_event)

    def teardown(self, name: str, cancel_event: Optional[threading.Event] = None) -> ApplyResult:
        """Remove the tunnel's units and delete its link."""
        validate_interface_name(name, 'name')
        self.roles.check(name, ROLE)
        result = self.reconciler.remove(name, cancel_event=cancel_event, owner=ROLE)
        if self.registry.refresh().get(name) is not None:
            self.gateway.delete_link(name)
        with self._lock:
            self._keys.pop(name, None)
        self.roles.release(name, ROLE)
        logger.info(f"Tunnel {name} removed")
        return result

    def status(self, name: str) -> TunnelStatus:
        validate_interface_name(name, 'name')
        if self.registry.get(name) is None and self.registry.refresh().get(name) is None:
            return TunnelStatus(name=name, up=False)
        return parse_wg_dump(name, self.gateway.wg_show_dump(name))

    def list_tunnels(self) -> List[Dict]:
        """Tunnels persisted in the unit directory, without key material."""
        store = self.reconciler.store
        tunnels = []
        for filename in store.find_unit_files():
            if not filename.endswith('.netdev'):
                continue
            tunnel = parse_netdev(store.read(filename) or '')
            if tunnel is not None and tunnel.name:
                data = tunnel.to_dict()
                data['unit'] = filename
                tunnels.append(data)
        return tunnels
