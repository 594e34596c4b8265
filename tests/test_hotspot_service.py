import os
import shutil
import tempfile
import unittest
from datetime import datetime
from unittest.mock import MagicMock
from models.hotspot_models import HotspotConfig
from models.network_models import Interface, InterfaceKind, InterfaceSnapshot
from services.file_service import UnitStore
from services.hotspot_service import HotspotManager
from services.task_service import InterfaceRoles
from utils.exceptions import ConflictError, ConvergenceTimeout, ValidationError

AP_INFO = "Interface wlan1\n\tifindex 4\n\ttype AP\n\tssid Lantern\n\tchannel 6 (2437 MHz), width: 20 MHz\n"
MANAGED_INFO = "Interface wlan1\n\tifindex 4\n\ttype managed\n"
STATION_OUTPUT = "Station AA:BB:CC:00:11:22 (on wlan1)\n\trx bytes:\t100\nStation aa:bb:cc:00:11:33 (on wlan1)\n"


class TestHotspotManager(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.run_dir = os.path.join(self.temp_dir, "run")

        self.gateway = MagicMock()
        self.gateway.iw_info.return_value = AP_INFO
        self.gateway.iw_station_dump.return_value = STATION_OUTPUT
        self.gateway.read_pid_file.side_effect = lambda path: 4242 if os.path.exists(path) else None
        self.gateway.start_hostapd.side_effect = self._write_pid
        self.gateway.start_dnsmasq.side_effect = self._write_pid

        self.reconciler = MagicMock()
        self.reconciler.store = UnitStore(os.path.join(self.temp_dir, "network"))
        self.roles = InterfaceRoles()

        snapshot = InterfaceSnapshot(interfaces=(
            Interface(name="eth0", kind=InterfaceKind.WIRED, admin_up=True, oper_state="up"),
            Interface(name="wlan1", kind=InterfaceKind.WIRELESS, admin_up=True, oper_state="dormant"),
        ), taken_at=datetime.now())
        self.registry = MagicMock()
        self.registry.get.side_effect = snapshot.get
        self.registry.refresh.return_value = snapshot

        self.manager = HotspotManager(self.gateway, self.reconciler, self.roles, registry=self.registry,
                                      run_dir=self.run_dir, confirm_attempts=2, confirm_interval=0)
        self.hotspot = HotspotConfig(ssid="Lantern", password="hotspot-pass", interface="wlan1", upstream="eth0")

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    @staticmethod
    def _write_pid(conf_path, pid_file):
        with open(pid_file, 'w') as f:
            f.write("4242\n")

    def _iptables_ops(self):
        return [c[0][0][2] if c[0][0][0] == "-t" else c[0][0][0] for c in self.gateway.iptables.call_args_list]

    def test_start_configures_everything(self):
        status = self.manager.start(self.hotspot)

        self.assertTrue(status.active)
        self.assertEqual(status.clients, ["aa:bb:cc:00:11:22", "aa:bb:cc:00:11:33"])
        self.assertEqual(self.roles.owner("wlan1"), "hotspot")
        self.assertEqual(self.manager.active_interfaces(), ["wlan1"])

        hostapd_conf = os.path.join(self.run_dir, "hostapd-wlan1.conf")
        self.assertEqual(os.stat(hostapd_conf).st_mode & 0o777, 0o600)
        self.assertTrue(os.path.exists(os.path.join(self.run_dir, "dnsmasq-wlan1.conf")))

        units = self.reconciler.apply_units.call_args[0][1]
        self.assertEqual(list(units), ["30-wlan1.network"])
        self.assertIn("Address=192.168.4.1/24", units["30-wlan1.network"].content)

        self.gateway.sysctl.assert_called_once_with("net.ipv4.ip_forward", "1")
        self.assertEqual(self._iptables_ops(), ["-A", "-A", "-A"])
        self.assertNotIn("hotspot-pass", repr(status.config))
        self.assertNotIn("hotspot-pass", str(status.to_dict()))

    def test_short_password_runs_nothing(self):
        with self.assertRaises(ValidationError) as ctx:
            self.manager.start(HotspotConfig(ssid="Lantern", password="short", interface="wlan1"))
        self.assertEqual(ctx.exception.field, 'password')
        self.assertEqual(self.gateway.method_calls, [])
        self.assertFalse(os.path.exists(self.run_dir))

    def test_bad_channel_runs_nothing(self):
        with self.assertRaises(ValidationError):
            self.manager.start(HotspotConfig(ssid="Lantern", password="hotspot-pass", interface="wlan1", channel=15))
        self.assertEqual(self.gateway.method_calls, [])
        self.reconciler.apply_units.assert_not_called()

    def test_interface_owned_by_wifi_client(self):
        self.roles.claim("wlan1", "wifi-client")
        with self.assertRaises(ConflictError):
            self.manager.start(self.hotspot)
        self.assertEqual(self.gateway.method_calls, [])
        self.assertEqual(self.roles.owner("wlan1"), "wifi-client")

    def test_unconfirmed_ap_mode_is_rolled_back(self):
        self.gateway.iw_info.return_value = MANAGED_INFO

        with self.assertRaises(ConvergenceTimeout):
            self.manager.start(self.hotspot)

        self.assertEqual(self.gateway.iw_info.call_count, 2)
        self.assertEqual(self.gateway.terminate.call_count, 2)
        self.assertEqual(os.listdir(self.run_dir), [])
        self.reconciler.remove.assert_called_once_with("wlan1", owner="hotspot")
        self.assertIsNone(self.roles.owner("wlan1"))
        self.assertEqual(self.manager.active_interfaces(), [])

    def test_stop(self):
        self.manager.start(self.hotspot)

        status = self.manager.stop("wlan1")

        self.assertFalse(status.active)
        self.gateway.terminate.assert_called_with(4242)
        self.assertEqual(self._iptables_ops()[3:], ["-D", "-D", "-D"])
        self.assertEqual(os.listdir(self.run_dir), [])
        self.reconciler.remove.assert_called_once_with("wlan1", owner="hotspot")
        self.gateway.flush_addresses.assert_called_once_with("wlan1")
        self.assertIsNone(self.roles.owner("wlan1"))

    def test_stop_without_hotspot_is_a_no_op(self):
        status = self.manager.stop("wlan1")
        self.assertFalse(status.active)
        self.reconciler.remove.assert_not_called()
        self.gateway.flush_addresses.assert_not_called()

    def test_wired_interface_is_refused_before_anything_runs(self):
        with self.assertRaises(ValidationError) as ctx:
            self.manager.start(HotspotConfig(ssid="Lantern", password="hotspot-pass", interface="eth0"))

        self.assertEqual(ctx.exception.field, 'interface')
        self.assertEqual(self.gateway.method_calls, [])
        self.reconciler.apply_units.assert_not_called()
        self.reconciler.remove.assert_not_called()
        self.assertIsNone(self.roles.owner("eth0"))

    def test_upstream_defaults_to_default_route(self):
        self.gateway.default_route.return_value = (
            "default via 192.168.1.1 dev eth0 proto dhcp src 192.168.1.100 metric 100\n"
        )
        hotspot = HotspotConfig(ssid="Lantern", password="hotspot-pass", interface="wlan1", detect_upstream=True)

        status = self.manager.start(hotspot)

        self.assertEqual(status.config.upstream, "eth0")
        self.assertEqual(self._iptables_ops(), ["-A", "-A", "-A"])

    def test_no_default_route_means_no_nat(self):
        self.gateway.default_route.return_value = ""
        hotspot = HotspotConfig(ssid="Lantern", password="hotspot-pass", interface="wlan1", detect_upstream=True)

        status = self.manager.start(hotspot)

        self.assertIsNone(status.config.upstream)
        self.gateway.sysctl.assert_not_called()
        self.gateway.iptables.assert_not_called()

    def test_restart_replaces_running_hotspot(self):
        self.manager.start(self.hotspot)
        status = self.manager.start(HotspotConfig(ssid="Lantern2", password="hotspot-pass", interface="wlan1"))

        self.assertEqual(status.config.ssid, "Lantern2")
        self.assertEqual(self.reconciler.remove.call_count, 1)
        self.assertEqual(self.roles.owner("wlan1"), "hotspot")


if __name__ == '__main__':
    unittest.main()
