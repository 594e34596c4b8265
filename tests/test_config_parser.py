import unittest
from models.network_models import DesiredConfig, DhcpAddressing, StaticAddressing
from models.wifi_models import (
    EapMethod, EnterpriseSecret, OpenSecret, PersonalSecret, SaeSecret, SecurityClass, WifiCredential
)
from models.hotspot_models import HotspotConfig
from models.tunnel_models import TunnelConfig, TunnelPeer
from utils.config_parser import (
    parse_default_route, parse_iw_info, parse_iw_link, parse_iw_scan, parse_netdev, parse_network_unit,
    parse_station_dump, parse_wg_dump, parse_wg_quick, render_dnsmasq, render_hostapd, render_netdev,
    render_network_unit, render_tunnel_network, render_wpa_supplicant, unit_interface_name
)
from utils.exceptions import ValidationError

PRIVATE_KEY = "yAnz5TF+lXXJte14tji3zlMNq+hd2rYUIgJBgB3fBmk="
PEER_KEY = "xTIBA5rboUvnH4htodjb6e697QjLERt1NAB4mZqp8Dg="

SCAN_OUTPUT = """BSS 00:11:22:33:44:55(on wlan0)
\tfreq: 2437
\tcapability: ESS Privacy ShortSlotTime (0x0411)
\tsignal: -45.00 dBm
\tSSID: Home
\tRSN:\t * Version: 1
\t\t * Authentication suites: PSK
BSS 00:11:22:33:44:66(on wlan0)
\tfreq: 5180
\tcapability: ESS Privacy (0x0011)
\tsignal: -70.00 dBm
\tSSID: Home
\tRSN:\t * Version: 1
\t\t * Authentication suites: PSK
BSS 66:77:88:99:aa:bb(on wlan0)
\tfreq: 2462
\tcapability: ESS Privacy (0x0011)
\tsignal: -60.00 dBm
\tSSID: Office
\tRSN:\t * Version: 1
\t\t * Authentication suites: IEEE 802.1X
BSS 66:77:88:99:aa:cc(on wlan0)
\tfreq: 2412
\tcapability: ESS (0x0001)
\tsignal: -80.00 dBm
\tSSID:
"""


class TestNetworkUnit(unittest.TestCase):
    def test_static_eth0_renders_address_gateway_dns(self):
        desired = DesiredConfig(
            ipv4=StaticAddressing(addresses=("192.168.1.10/24",), gateway="192.168.1.1"),
            dns=("1.1.1.1",),
        )
        content = render_network_unit("eth0", desired)

        self.assertIn("[Match]\nName=eth0\n", content)
        self.assertIn("Address=192.168.1.10/24\n", content)
        self.assertIn("Gateway=192.168.1.1\n", content)
        self.assertIn("DNS=1.1.1.1\n", content)
        self.assertNotIn("DHCP=", content)
        self.assertTrue(content.endswith("\n"))

    def test_round_trip_static_dual_stack(self):
        desired = DesiredConfig(
            ipv4=StaticAddressing(addresses=("10.0.0.2/24", "10.0.1.2/24"), gateway="10.0.0.1"),
            ipv6=StaticAddressing(addresses=("2001:db8::2/64",), gateway="2001:db8::1"),
            dns=("10.0.0.1", "2001:db8::53"),
            mtu=1400,
            required_for_online=False,
            ipv6_accept_ra=False,
        )
        name, parsed = parse_network_unit(render_network_unit("eth1", desired))
        self.assertEqual(name, "eth1")
        self.assertEqual(parsed, desired)

    def test_round_trip_dhcp(self):
        for desired in (DesiredConfig(ipv4=DhcpAddressing(), ipv6=DhcpAddressing()),
                        DesiredConfig(ipv4=DhcpAddressing()),
                        DesiredConfig(ipv6=DhcpAddressing(), dns=("9.9.9.9",))):
            with self.subTest(dhcp=desired.dhcp):
                _, parsed = parse_network_unit(render_network_unit("eth0", desired))
                self.assertEqual(parsed, desired)

    def test_dhcp_mixed_with_static_in_other_family(self):
        desired = DesiredConfig(ipv4=DhcpAddressing(), ipv6=StaticAddressing(addresses=("fd00::5/64",)))
        content = render_network_unit("eth0", desired)
        self.assertIn("DHCP=ipv4\n", content)
        self.assertEqual(parse_network_unit(content)[1], desired)

    def test_render_rejects_empty_static(self):
        with self.assertRaises(ValidationError) as ctx:
            render_network_unit("eth0", DesiredConfig(ipv4=StaticAddressing(addresses=())))
        self.assertEqual(ctx.exception.field, "ipv4_addresses")

    def test_parse_without_match_section(self):
        self.assertEqual(parse_network_unit("[Network]\nDHCP=yes\n"), (None, None))

    def test_parse_folds_address_sections(self):
        content = "[Match]\nName=eth0\n\n[Network]\nDNS=1.1.1.1 8.8.8.8\n\n[Address]\nAddress=192.0.2.4/24\n"
        name, parsed = parse_network_unit(content)
        self.assertEqual(parsed.ipv4, StaticAddressing(addresses=("192.0.2.4/24",)))
        self.assertEqual(parsed.dns, ("1.1.1.1", "8.8.8.8"))

    def test_unit_interface_name(self):
        self.assertEqual(unit_interface_name("[Match]\nName=en*\n"), "en*")
        self.assertEqual(unit_interface_name("[NetDev]\nName=wg0\nKind=wireguard\n"), "wg0")
        self.assertIsNone(unit_interface_name("[Link]\nMTUBytes=1500\n"))


class TestWireGuardUnits(unittest.TestCase):
    def setUp(self):
        self.tunnel = TunnelConfig(
            name="wg0",
            private_key=PRIVATE_KEY,
            listen_port=51820,
            addresses=("10.8.0.2/24",),
            dns=("10.8.0.1",),
            peers=(TunnelPeer(public_key=PEER_KEY, allowed_ips=("10.8.0.0/24", "0.0.0.0/0"),
                              endpoint="vpn.example.com:51820", persistent_keepalive=25),),
        )

    def test_netdev_round_trip(self):
        content = render_netdev(self.tunnel)
        self.assertIn("Kind=wireguard\n", content)
        self.assertIn("[WireGuardPeer]\n", content)
        parsed = parse_netdev(content)
        self.assertEqual(parsed.name, "wg0")
        self.assertEqual(parsed.private_key, PRIVATE_KEY)
        self.assertEqual(parsed.listen_port, 51820)
        self.assertEqual(parsed.peers, self.tunnel.peers)

    def test_tunnel_network_routes_skip_default(self):
        content = render_tunnel_network(self.tunnel)
        self.assertIn("Address=10.8.0.2/24\n", content)
        self.assertIn("Destination=10.8.0.0/24\n", content)
        self.assertNotIn("Destination=0.0.0.0/0", content)
        self.assertIn("RequiredForOnline=no\n", content)

    def test_parse_wg_quick(self):
        content = (
            "[Interface]\n"
            f"PrivateKey = {PRIVATE_KEY}\n"
            "Address = 10.8.0.2/24, fd08::2/64\n"
            "DNS = 10.8.0.1, corp.example\n"
            "\n"
            "[Peer]\n"
            f"PublicKey = {PEER_KEY}\n"
            "AllowedIPs = 10.8.0.0/24, 192.168.50.0/24\n"
            "Endpoint = 203.0.113.5:51820\n"
        )
        private_key, data = parse_wg_quick(content)
        self.assertEqual(private_key, PRIVATE_KEY)
        self.assertEqual(data['addresses'], ["10.8.0.2/24", "fd08::2/64"])
        self.assertEqual(data['dns'], ["10.8.0.1"])
        self.assertEqual(data['peers'][0]['allowed_ips'], ["10.8.0.0/24", "192.168.50.0/24"])
        self.assertEqual(data['peers'][0]['endpoint'], "203.0.113.5:51820")

    def test_parse_wg_dump_omits_private_key(self):
        output = (
            f"{PRIVATE_KEY}\tPUBKEY=\t51820\toff\n"
            f"{PEER_KEY}\t(none)\t203.0.113.5:51820\t10.8.0.0/24\t1700000000\t1024\t2048\t25\n"
        )
        status = parse_wg_dump("wg0", output)
        self.assertTrue(status.up)
        self.assertEqual(status.listen_port, 51820)
        self.assertEqual(len(status.peers), 1)
        self.assertEqual(status.peers[0].rx_bytes, 1024)
        self.assertEqual(status.peers[0].persistent_keepalive, 25)
        self.assertNotIn(PRIVATE_KEY, str(status.to_dict()))


class TestWpaSupplicant(unittest.TestCase):
    def test_personal(self):
        content = render_wpa_supplicant(WifiCredential(ssid="Home", secret=PersonalSecret("correcthorse")))
        self.assertIn('ssid="Home"', content)
        self.assertIn('psk="correcthorse"', content)
        self.assertIn("key_mgmt=WPA-PSK", content)
        self.assertNotIn("scan_ssid", content)

    def test_hex_psk_is_unquoted(self):
        psk = "a" * 64
        content = render_wpa_supplicant(WifiCredential(ssid="Home", secret=PersonalSecret(psk)))
        self.assertIn(f"psk={psk}\n", content)

    def test_sae_requires_management_frame_protection(self):
        content = render_wpa_supplicant(WifiCredential(ssid="Home6", secret=SaeSecret("secret-pass")))
        self.assertIn("key_mgmt=SAE", content)
        self.assertIn("ieee80211w=2", content)

    def test_open_hidden(self):
        content = render_wpa_supplicant(WifiCredential(ssid="Cafe", secret=OpenSecret(), hidden=True))
        self.assertIn("scan_ssid=1", content)
        self.assertIn("key_mgmt=NONE", content)

    def test_enterprise_peap(self):
        secret = EnterpriseSecret(method=EapMethod.PEAP, identity="alice", password="pw",
                                  phase2="mschapv2", ca_cert="/etc/ssl/ca.pem")
        content = render_wpa_supplicant(WifiCredential(ssid="Office", secret=secret))
        self.assertIn("key_mgmt=WPA-EAP", content)
        self.assertIn("eap=PEAP", content)
        self.assertIn('phase2="auth=MSCHAPV2"', content)
        self.assertIn('ca_cert="/etc/ssl/ca.pem"', content)

    def test_enterprise_missing_fields_rejected(self):
        secret = EnterpriseSecret(method=EapMethod.TTLS, identity="alice", password="pw")
        with self.assertRaises(ValidationError) as ctx:
            render_wpa_supplicant(WifiCredential(ssid="Office", secret=secret))
        self.assertEqual(ctx.exception.field, "phase2")


class TestIwParsers(unittest.TestCase):
    def test_scan_merges_bssids_and_skips_hidden(self):
        networks = parse_iw_scan(SCAN_OUTPUT)
        self.assertEqual([n.ssid for n in networks], ["Home", "Office"])

        home = networks[0]
        self.assertEqual(home.security, SecurityClass.WPA_PERSONAL)
        self.assertEqual(home.bssids, frozenset({"00:11:22:33:44:55", "00:11:22:33:44:66"}))
        self.assertEqual(home.signal_dbm, -45.0)
        self.assertEqual(home.channel, 6)
        self.assertEqual(networks[1].security, SecurityClass.ENTERPRISE)

    def test_link(self):
        output = ("Connected to 00:11:22:33:44:55 (on wlan0)\n"
                  "\tSSID: Home\n\tfreq: 2437\n\tsignal: -52 dBm\n"
                  "\trx bitrate: 65.0 MBit/s\n\ttx bitrate: 72.2 MBit/s\n")
        link = parse_iw_link(output)
        self.assertEqual(link['ssid'], "Home")
        self.assertEqual(link['channel'], 6)
        self.assertEqual(link['signal_dbm'], -52.0)
        self.assertEqual(link['tx_bitrate'], "72.2 MBit/s")
        self.assertEqual(parse_iw_link("Not connected.\n"), {})

    def test_station_dump(self):
        output = ("Station 00:11:22:33:44:55 (on wlan0)\n"
                  "\trx bytes:\t1000\n\ttx bytes:\t2000\n\ttx retries:\t7\n\ttx failed:\t1\n"
                  "\tsignal:  \t-50 [-52, -53] dBm\n")
        station = parse_station_dump(output)
        self.assertEqual(station['rx_bytes'], 1000)
        self.assertEqual(station['tx_retries'], 7)
        self.assertEqual(station['tx_failed'], 1)
        self.assertEqual(station['signal_dbm'], -50.0)

    def test_info(self):
        output = "Interface wlan0\n\tifindex 3\n\ttype AP\n\tssid Lantern\n\tchannel 6 (2437 MHz), width: 20 MHz\n"
        self.assertEqual(parse_iw_info(output), {'type': 'AP', 'ssid': 'Lantern', 'channel': 6})

    def test_default_route(self):
        output = ("default via 192.168.1.1 dev wlan0 proto dhcp src 192.168.1.100 metric 600\n"
                  "default via 10.0.0.1 dev eth1 proto static metric 700\n")
        self.assertEqual(parse_default_route(output), "wlan0")
        self.assertEqual(parse_default_route("default dev wg0 scope link\n"), "wg0")
        self.assertIsNone(parse_default_route(""))


class TestHotspotConfigs(unittest.TestCase):
    def test_hostapd_and_dnsmasq(self):
        hotspot = HotspotConfig(ssid="Lantern", password="hotspot-pass", interface="wlan1", channel=36)
        hostapd = render_hostapd(hotspot)
        self.assertIn("interface=wlan1\n", hostapd)
        self.assertIn("hw_mode=a\n", hostapd)
        self.assertIn("wpa_passphrase=hotspot-pass\n", hostapd)

        dnsmasq = render_dnsmasq(hotspot)
        self.assertIn("dhcp-range=192.168.4.10,192.168.4.50,255.255.255.0,24h\n", dnsmasq)
        self.assertIn("dhcp-option=3,192.168.4.1\n", dnsmasq)


if __name__ == '__main__':
    unittest.main()
