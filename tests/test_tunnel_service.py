import os
import shutil
import tempfile
import unittest
from datetime import datetime
from unittest.mock import ANY, MagicMock, patch
import config
from models.network_models import Interface, InterfaceKind, InterfaceSnapshot
from services.file_service import UnitStore
from services.network_service import Reconciler
from services.task_service import InterfaceRoles
from services.tunnel_service import TunnelManager
from utils.exceptions import ConflictError, ExternalToolError, ValidationError

PRIVATE_KEY = "yAnz5TF+lXXJte14tji3zlMNq+hd2rYUIgJBgB3fBmk="
PUBLIC_KEY = "HIgo9xNzJMWLKASShiTqIybxZ0U3wGLiUeJ1PKf8ykw="
PEER_KEY = "xTIBA5rboUvnH4htodjb6e697QjLERt1NAB4mZqp8Dg="

TUNNEL_DATA = {
    'addresses': ['10.8.0.2/24'],
    'listen_port': 51820,
    'peers': [{'public_key': PEER_KEY, 'allowed_ips': ['10.8.0.0/24'], 'endpoint': '203.0.113.5:51820'}],
}

WG_QUICK = (
    "[Interface]\n"
    f"PrivateKey = {PRIVATE_KEY}\n"
    "Address = 10.8.0.2/24\n"
    "\n"
    "[Peer]\n"
    f"PublicKey = {PEER_KEY}\n"
    "AllowedIPs = 10.8.0.0/24\n"
    "Endpoint = 203.0.113.5:51820\n"
)


class TestTunnelManager(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.unit_dir = os.path.join(self.temp_dir, "network")
        os.makedirs(self.unit_dir)
        self.group_patcher = patch.object(config, 'TUNNEL_UNIT_GROUP', None)
        self.group_patcher.start()

        self.live = []
        self.registry = MagicMock()
        self.registry.get.return_value = None
        self.registry.refresh.side_effect = lambda: InterfaceSnapshot(interfaces=tuple(self.live),
                                                                      taken_at=datetime.now())
        self.gateway = MagicMock()
        self.gateway.wg_genkey.return_value = PRIVATE_KEY
        self.gateway.wg_pubkey.return_value = PUBLIC_KEY
        # the link exists exactly while networkd has a .netdev for it
        self.gateway.reload_networkd.side_effect = self._sync_live

        store = UnitStore(self.unit_dir, os.path.join(self.temp_dir, "backup"))
        self.reconciler = Reconciler(store, self.registry, self.gateway, attempts=2, backoff=0)
        self.roles = InterfaceRoles()
        self.manager = TunnelManager(self.gateway, self.reconciler, self.registry, self.roles)

    def tearDown(self):
        self.group_patcher.stop()
        shutil.rmtree(self.temp_dir)

    def _sync_live(self):
        if os.path.exists(os.path.join(self.unit_dir, "50-wg0.netdev")):
            self._bring_up()
        else:
            self.live = []

    def _bring_up(self):
        self.live = [Interface(name="wg0", kind=InterfaceKind.TUNNEL, admin_up=True, oper_state="unknown",
                               ipv4_addresses=["10.8.0.2/24"])]

    def _mode(self, filename):
        return os.stat(os.path.join(self.unit_dir, filename)).st_mode & 0o777

    def test_create_tunnel_derives_public_key(self):
        keys = self.manager.create_tunnel("wg0")

        self.assertEqual(keys.public_key, PUBLIC_KEY)
        self.gateway.wg_pubkey.assert_called_once_with(PRIVATE_KEY)
        self.assertNotIn(PRIVATE_KEY, repr(keys))
        self.assertNotIn(PRIVATE_KEY, str(keys))
        self.assertEqual(self.manager.private_key_for("wg0"), PRIVATE_KEY)

    def test_malformed_tool_output_is_rejected(self):
        self.gateway.wg_pubkey.return_value = "not-a-key"
        with self.assertRaises(ValidationError):
            self.manager.public_key(PRIVATE_KEY)

    def test_configure_writes_unit_pair(self):
        self.manager.create_tunnel("wg0")
        result = self.manager.configure(self.manager.build_config("wg0", TUNNEL_DATA))

        self.assertEqual(result.status, "applied")
        self.assertEqual(sorted(result.written), ["50-wg0.netdev", "50-wg0.network"])
        self.assertEqual(self._mode("50-wg0.netdev"), 0o640)
        self.assertEqual(self._mode("50-wg0.network"), 0o644)
        with open(os.path.join(self.unit_dir, "50-wg0.netdev")) as f:
            self.assertIn(f"PrivateKey={PRIVATE_KEY}", f.read())
        self.assertEqual(self.roles.owner("wg0"), "tunnel")

    def test_configure_is_idempotent(self):
        self.manager.create_tunnel("wg0")
        tunnel = self.manager.build_config("wg0", TUNNEL_DATA)
        self.manager.configure(tunnel)
        before = os.stat(os.path.join(self.unit_dir, "50-wg0.netdev")).st_mtime_ns

        result = self.manager.configure(tunnel)

        self.assertEqual(result.status, "unchanged")
        self.assertEqual(self.gateway.reload_networkd.call_count, 1)
        self.assertEqual(os.stat(os.path.join(self.unit_dir, "50-wg0.netdev")).st_mtime_ns, before)

    def test_build_config_without_keys(self):
        with self.assertRaises(ValidationError) as ctx:
            self.manager.build_config("wg0", TUNNEL_DATA)
        self.assertEqual(ctx.exception.field, 'private_key')

    def test_persisted_key_is_reused(self):
        self.manager.import_config("wg0", WG_QUICK)
        restarted = TunnelManager(self.gateway, self.reconciler, self.registry, InterfaceRoles())
        self.assertEqual(restarted.private_key_for("wg0"), PRIVATE_KEY)

    def test_import_without_private_key(self):
        with self.assertRaises(ValidationError):
            self.manager.import_config("wg0", WG_QUICK.replace(f"PrivateKey = {PRIVATE_KEY}\n", ""))
        self.assertEqual(os.listdir(self.unit_dir), [])

    def test_failed_apply_releases_name(self):
        self.gateway.reload_networkd.side_effect = ExternalToolError("networkctl", "Failed", returncode=1)
        with self.assertRaises(ExternalToolError):
            self.manager.import_config("wg0", WG_QUICK)
        self.assertEqual(os.listdir(self.unit_dir), [])
        self.assertIsNone(self.roles.owner("wg0"))

    def test_failed_reconfigure_restores_netdev_ownership(self):
        self.manager.import_config("wg0", WG_QUICK)
        netdev = os.path.join(self.unit_dir, "50-wg0.netdev")
        before = os.stat(netdev)
        with open(netdev) as f:
            original = f.read()
        self.gateway.reload_networkd.side_effect = ExternalToolError("networkctl", "Failed", returncode=1)
        changed = WG_QUICK.replace("Address = 10.8.0.2/24\n", "Address = 10.8.0.2/24\nListenPort = 51821\n")

        with patch('services.file_service.os.fchown') as mock_fchown:
            with self.assertRaises(ExternalToolError):
                self.manager.import_config("wg0", changed)

        mock_fchown.assert_called_once_with(ANY, before.st_uid, before.st_gid)
        with open(netdev) as f:
            self.assertEqual(f.read(), original)
        self.assertEqual(self._mode("50-wg0.netdev"), 0o640)
        self.assertEqual(self.roles.owner("wg0"), "tunnel")

    def test_name_of_non_tunnel_device_is_refused(self):
        self.live = [Interface(name="br0", kind=InterfaceKind.BRIDGE, admin_up=True, oper_state="up")]
        with open(os.path.join(self.unit_dir, "10-br0.network"), 'w') as f:
            f.write("[Match]\nName=br0\n\n[Network]\nDHCP=yes\n")

        with self.assertRaises(ConflictError):
            self.manager.import_config("br0", WG_QUICK)

        self.gateway.delete_link.assert_not_called()
        self.assertEqual(os.listdir(self.unit_dir), ["10-br0.network"])
        self.assertIsNone(self.roles.owner("br0"))

    def test_name_with_foreign_unit_is_refused(self):
        with open(os.path.join(self.unit_dir, "10-wg0.network"), 'w') as f:
            f.write("[Match]\nName=wg0\n\n[Network]\nDHCP=yes\n")

        with self.assertRaises(ConflictError):
            self.manager.import_config("wg0", WG_QUICK)

        self.assertEqual(os.listdir(self.unit_dir), ["10-wg0.network"])
        self.gateway.reload_networkd.assert_not_called()

    def test_name_in_use_by_hotspot(self):
        self.roles.claim("wg0", "hotspot")
        with self.assertRaises(ConflictError):
            self.manager.create_tunnel("wg0")
        self.gateway.wg_genkey.assert_not_called()

    def test_list_tunnels_hides_keys(self):
        self.manager.import_config("wg0", WG_QUICK)
        tunnels = self.manager.list_tunnels()
        self.assertEqual([t['name'] for t in tunnels], ["wg0"])
        self.assertEqual(tunnels[0]['unit'], "50-wg0.netdev")
        self.assertNotIn(PRIVATE_KEY, str(tunnels))

    def test_teardown(self):
        self.manager.import_config("wg0", WG_QUICK)

        self.manager.teardown("wg0")

        self.assertEqual(os.listdir(self.unit_dir), [])
        self.gateway.delete_link.assert_called_once_with("wg0")
        self.assertIsNone(self.roles.owner("wg0"))
        self.assertIsNone(self.manager.private_key_for("wg0"))

    def test_status(self):
        self.assertFalse(self.manager.status("wg0").up)
        self.gateway.wg_show_dump.assert_not_called()

        self._bring_up()
        self.gateway.wg_show_dump.return_value = (
            f"{PRIVATE_KEY}\t{PUBLIC_KEY}\t51820\toff\n"
            f"{PEER_KEY}\t(none)\t203.0.113.5:51820\t10.8.0.0/24\t1700000000\t1024\t2048\toff\n"
        )
        status = self.manager.status("wg0")
        self.assertTrue(status.up)
        self.assertEqual(status.peers[0].tx_bytes, 2048)
        self.assertNotIn(PRIVATE_KEY, str(status.to_dict()))


if __name__ == '__main__':
    unittest.main()
