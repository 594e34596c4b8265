import unittest
from models.network_models import DhcpAddressing, StaticAddressing
from models.wifi_models import EnterpriseSecret, SecurityClass
from models.hotspot_models import HotspotConfig
from utils.exceptions import ValidationError
from utils.validators import (
    credential_from_dict, desired_config_from_dict, hotspot_config_from_dict, tunnel_config_from_dict,
    validate_hotspot_config, validate_interface_name, validate_ip_address, validate_wireguard_key
)

PRIVATE_KEY = "yAnz5TF+lXXJte14tji3zlMNq+hd2rYUIgJBgB3fBmk="
PEER_KEY = "xTIBA5rboUvnH4htodjb6e697QjLERt1NAB4mZqp8Dg="


class TestAddressValidation(unittest.TestCase):
    def test_validate_ip_address(self):
        self.assertTrue(validate_ip_address("192.168.1.1"))
        self.assertTrue(validate_ip_address("192.168.1.1/24"))
        self.assertTrue(validate_ip_address("2001:db8::1/64"))
        self.assertFalse(validate_ip_address("300.1.1.1"))
        self.assertFalse(validate_ip_address("not-an-ip"))

    def test_interface_names(self):
        self.assertEqual(validate_interface_name("enp3s0"), "enp3s0")
        for name in ("", "a" * 16, "eth0;rm", "../eth0"):
            with self.subTest(name=name):
                with self.assertRaises(ValidationError):
                    validate_interface_name(name)


class TestDesiredConfigFromDict(unittest.TestCase):
    def test_static(self):
        desired = desired_config_from_dict({
            'ipv4_addresses': ['192.168.1.10/24'],
            'ipv4_gateway': '192.168.1.1',
            'dns': ['1.1.1.1'],
        })
        self.assertEqual(desired.ipv4, StaticAddressing(addresses=('192.168.1.10/24',), gateway='192.168.1.1'))
        self.assertIsNone(desired.ipv6)
        self.assertEqual(desired.dns, ('1.1.1.1',))

    def test_dhcp(self):
        desired = desired_config_from_dict({'dhcp': 'yes'})
        self.assertEqual(desired.ipv4, DhcpAddressing())
        self.assertEqual(desired.ipv6, DhcpAddressing())

    def test_dhcp_and_static_same_family_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            desired_config_from_dict({'dhcp': 'ipv4', 'ipv4_addresses': ['10.0.0.2/24']})
        self.assertEqual(ctx.exception.field, 'ipv4_addresses')

    def test_dhcp_v4_with_static_v6_allowed(self):
        desired = desired_config_from_dict({'dhcp': 'ipv4', 'ipv6_addresses': ['fd00::2/64']})
        self.assertEqual(desired.ipv4, DhcpAddressing())
        self.assertEqual(desired.ipv6, StaticAddressing(addresses=('fd00::2/64',)))

    def test_field_errors(self):
        cases = [
            ({'ipv4_addresses': ['192.168.1.10']}, 'ipv4_addresses'),
            ({'ipv4_addresses': ['2001:db8::1/64']}, 'ipv4_addresses'),
            ({'ipv4_addresses': ['10.0.0.2/24'], 'ipv4_gateway': '2001:db8::1'}, 'ipv4_gateway'),
            ({'ipv6_gateway': 'fe80::1'}, 'ipv6_gateway'),
            ({'dhcp': 'sometimes'}, 'dhcp'),
            ({'dns': ['8.8.8.8/32']}, 'dns'),
            ({'dhcp': 'yes', 'mtu': 40}, 'mtu'),
        ]
        for data, field in cases:
            with self.subTest(field=field, data=data):
                with self.assertRaises(ValidationError) as ctx:
                    desired_config_from_dict(data)
                self.assertEqual(ctx.exception.field, field)

    def test_to_dict_is_accepted_back(self):
        desired = desired_config_from_dict({'ipv6_addresses': ['2001:db8::5/64'], 'mtu': 9000,
                                            'ipv6_accept_ra': False})
        self.assertEqual(desired_config_from_dict(desired.to_dict()), desired)


class TestCredentialFromDict(unittest.TestCase):
    def test_personal(self):
        credential = credential_from_dict({'ssid': 'Home', 'password': 'correcthorse', 'priority': 5})
        self.assertEqual(credential.security, SecurityClass.WPA_PERSONAL)
        self.assertEqual(credential.priority, 5)

    def test_short_passphrase(self):
        with self.assertRaises(ValidationError) as ctx:
            credential_from_dict({'ssid': 'Home', 'password': 'short'})
        self.assertEqual(ctx.exception.field, 'password')

    def test_ssid_too_long(self):
        with self.assertRaises(ValidationError) as ctx:
            credential_from_dict({'ssid': 'x' * 33, 'security': 'open'})
        self.assertEqual(ctx.exception.field, 'ssid')

    def test_enterprise_tls_requirements(self):
        data = {'ssid': 'Office', 'security': 'enterprise', 'eap_method': 'tls', 'identity': 'alice',
                'client_cert': '/etc/certs/alice.pem'}
        with self.assertRaises(ValidationError) as ctx:
            credential_from_dict(data)
        self.assertEqual(ctx.exception.field, 'private_key')

        data['private_key'] = '/etc/certs/alice.key'
        credential = credential_from_dict(data)
        self.assertIsInstance(credential.secret, EnterpriseSecret)

    def test_unknown_eap_method(self):
        with self.assertRaises(ValidationError) as ctx:
            credential_from_dict({'ssid': 'Office', 'security': 'enterprise', 'eap_method': 'fast'})
        self.assertEqual(ctx.exception.field, 'eap_method')

    def test_to_dict_hides_secret(self):
        credential = credential_from_dict({'ssid': 'Home', 'password': 'correcthorse'})
        self.assertNotIn('correcthorse', str(credential.to_dict()))
        self.assertNotIn('correcthorse', repr(credential))


class TestHotspotValidation(unittest.TestCase):
    def test_password_bounds(self):
        for password in ('short', 'p' * 64):
            with self.subTest(length=len(password)):
                with self.assertRaises(ValidationError) as ctx:
                    validate_hotspot_config(HotspotConfig(ssid='Lantern', password=password, interface='wlan0'))
                self.assertEqual(ctx.exception.field, 'password')

    def test_channels(self):
        for channel in (0, 12, 14, 37, '6'):
            with self.subTest(channel=channel):
                with self.assertRaises(ValidationError) as ctx:
                    hotspot_config_from_dict('wlan0', {'ssid': 'Lantern', 'password': 'hotspot-pass',
                                                       'channel': channel})
                self.assertEqual(ctx.exception.field, 'channel')
        hotspot = hotspot_config_from_dict('wlan0', {'ssid': 'Lantern', 'password': 'hotspot-pass',
                                                     'channel': 149})
        self.assertEqual(hotspot.channel, 149)

    def test_gateway_must_be_ipv4(self):
        with self.assertRaises(ValidationError) as ctx:
            hotspot_config_from_dict('wlan0', {'ssid': 'Lantern', 'password': 'hotspot-pass',
                                               'gateway': 'fd00::1'})
        self.assertEqual(ctx.exception.field, 'gateway')

    def test_upstream_differs(self):
        with self.assertRaises(ValidationError) as ctx:
            hotspot_config_from_dict('wlan0', {'ssid': 'Lantern', 'password': 'hotspot-pass',
                                               'upstream': 'wlan0'})
        self.assertEqual(ctx.exception.field, 'upstream')

    def test_omitted_upstream_is_detected(self):
        hotspot = hotspot_config_from_dict('wlan0', {'ssid': 'Lantern', 'password': 'hotspot-pass'})
        self.assertTrue(hotspot.detect_upstream)

        hotspot = hotspot_config_from_dict('wlan0', {'ssid': 'Lantern', 'password': 'hotspot-pass',
                                                     'upstream': None})
        self.assertFalse(hotspot.detect_upstream)
        self.assertIsNone(hotspot.upstream)


class TestTunnelValidation(unittest.TestCase):
    def test_wireguard_key(self):
        self.assertEqual(validate_wireguard_key(PRIVATE_KEY, 'key'), PRIVATE_KEY)
        for key in ('', 'abc', 'A' * 44, PRIVATE_KEY[:-1] + '!'):
            with self.subTest(key=key):
                with self.assertRaises(ValidationError):
                    validate_wireguard_key(key, 'key')

    def test_allowed_ips_must_be_cidr(self):
        data = {'addresses': ['10.8.0.2/24'],
                'peers': [{'public_key': PEER_KEY, 'allowed_ips': ['10.8.0.1']}]}
        with self.assertRaises(ValidationError) as ctx:
            tunnel_config_from_dict('wg0', PRIVATE_KEY, data)
        self.assertEqual(ctx.exception.field, 'peers[0].allowed_ips')

    def test_duplicate_peers(self):
        peer = {'public_key': PEER_KEY, 'allowed_ips': ['10.8.0.0/24']}
        with self.assertRaises(ValidationError) as ctx:
            tunnel_config_from_dict('wg0', PRIVATE_KEY, {'peers': [peer, dict(peer)]})
        self.assertEqual(ctx.exception.field, 'peers[1].public_key')

    def test_allowed_ips_as_string(self):
        tunnel = tunnel_config_from_dict('wg0', PRIVATE_KEY, {
            'addresses': ['10.8.0.2/24'],
            'listen_port': '51820',
            'peers': [{'public_key': PEER_KEY, 'allowed_ips': '10.8.0.0/24, 0.0.0.0/0'}],
        })
        self.assertEqual(tunnel.listen_port, 51820)
        self.assertEqual(tunnel.peers[0].allowed_ips, ('10.8.0.0/24', '0.0.0.0/0'))


if __name__ == '__main__':
    unittest.main()
