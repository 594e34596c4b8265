import os
import shutil
import tempfile
import unittest
from datetime import datetime
from unittest.mock import MagicMock
from models.network_models import Interface, InterfaceKind, InterfaceSnapshot
from models.wifi_models import PersonalSecret, WifiCredential
from services.control_loop import ControlLoop
from services.credential_service import CredentialStore
from services.file_service import UnitStore
from utils.exceptions import ValidationError

PRIVATE_KEY = "yAnz5TF+lXXJte14tji3zlMNq+hd2rYUIgJBgB3fBmk="


class TestControlLoop(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.unit_dir = os.path.join(self.temp_dir, "network")
        os.makedirs(self.unit_dir)

        snapshot = InterfaceSnapshot(interfaces=(
            Interface(name="eth0", kind=InterfaceKind.WIRED, admin_up=True),
            Interface(name="wlan0", kind=InterfaceKind.WIRELESS, admin_up=True),
            Interface(name="wlan1", kind=InterfaceKind.WIRELESS, admin_up=True),
        ), taken_at=datetime.now())
        self.registry = MagicMock()
        self.registry.snapshot.return_value = snapshot
        self.registry.refresh.return_value = snapshot
        self.registry.get.side_effect = snapshot.get

        self.tasks = MagicMock()
        self.tasks.list_tasks.return_value = []
        self.credentials = CredentialStore(os.path.join(self.temp_dir, "credentials.db"))
        self.control = ControlLoop(store=UnitStore(self.unit_dir), gateway=MagicMock(), registry=self.registry,
                                   credentials=self.credentials, tasks=self.tasks, auto_connect_interval=3600)
        self.control.start()

    def tearDown(self):
        self.control.stop()
        self.credentials.engine.dispose()
        shutil.rmtree(self.temp_dir)

    def test_wifi_controllers(self):
        controller = self.control.wifi("wlan0")
        self.assertIs(self.control.wifi("wlan0"), controller)
        self.assertIsNone(self.control.wifi("wlan9"))
        with self.assertRaises(ValidationError):
            self.control.wifi("eth0")
        self.assertEqual(self.control.wifi_interfaces(), ["wlan0", "wlan1"])

    def test_tick_without_credentials_queues_nothing(self):
        self.assertEqual(self.control.auto_connect_tick(), [])
        self.tasks.submit.assert_not_called()

    def test_tick_skips_busy_and_foreign_interfaces(self):
        self.credentials.save(WifiCredential(ssid="Home", secret=PersonalSecret("correcthorse")))
        self.control.roles.claim("wlan1", "hotspot")

        queued = self.control.auto_connect_tick()

        self.assertEqual(queued, ["wlan0"])
        self.tasks.submit.assert_called_once_with("wlan0", "wifi-auto-connect",
                                                  self.control.wifi("wlan0").auto_connect)

        busy = MagicMock(finished=False)
        self.tasks.list_tasks.side_effect = lambda interface=None: [busy] if interface == "wlan0" else []
        self.assertEqual(self.control.auto_connect_tick(), [])

    def test_persisted_tunnels_are_claimed_on_start(self):
        with open(os.path.join(self.unit_dir, "50-wg0.netdev"), 'w') as f:
            f.write(f"[NetDev]\nName=wg0\nKind=wireguard\n\n[WireGuard]\nPrivateKey={PRIVATE_KEY}\n")
        self.control.stop()

        self.control.start()

        self.assertEqual(self.control.roles.owner("wg0"), "tunnel")
        self.assertEqual(self.control.status()['roles'], {"wg0": "tunnel"})


if __name__ == '__main__':
    unittest.main()
