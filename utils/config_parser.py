import re
import ipaddress
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import config
from models.network_models import DesiredConfig, DhcpAddressing, StaticAddressing
from models.wifi_models import (
    EapMethod, EnterpriseSecret, OpenSecret, PersonalSecret, SaeSecret, SecurityClass, WepSecret,
    WifiCredential, WifiNetwork
)
from models.hotspot_models import HotspotConfig
from models.tunnel_models import PeerStatus, TunnelConfig, TunnelPeer, TunnelStatus
from utils.validators import (
    HEX_PSK_REGEX, validate_credential, validate_desired_config, validate_hotspot_config,
    validate_ip_address, validate_tunnel_config
)

logger = logging.getLogger(__name__)

SECTION_REGEX = re.compile(r'^\[([A-Za-z0-9]+)\]\s*$')
KEY_VALUE_REGEX = re.compile(r'^([A-Za-z0-9_]+)\s*=\s*(.*?)\s*$')
BSS_REGEX = re.compile(r'^BSS ([0-9a-fA-F]{2}(?::[0-9a-fA-F]{2}){5})')
STATION_REGEX = re.compile(r'^Station ([0-9a-fA-F:]{17})')
CONNECTED_REGEX = re.compile(r'^Connected to ([0-9a-fA-F:]{17})')
SIGNAL_REGEX = re.compile(r'(-?\d+(?:\.\d+)?)')

DEFAULT_ROUTES = ('0.0.0.0/0', '::/0')
TRUE_VALUES = ('yes', 'true', '1', 'on')

Sections = List[Tuple[str, List[Tuple[str, str]]]]


def parse_sections(content: str) -> Sections:
    """
    Split an INI-style unit into ordered sections.

    Repeated sections and repeated keys are preserved, which systemd relies on for
    Address=, DNS= and [WireGuardPeer].
    """
    sections = []
    current = None
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#') or line.startswith(';'):
            continue
        section_match = SECTION_REGEX.match(line)
        if section_match:
            current = (section_match.group(1), [])
            sections.append(current)
            continue
        kv_match = KEY_VALUE_REGEX.match(line)
        if kv_match and current is not None:
            current[1].append((kv_match.group(1), kv_match.group(2)))
    return sections


def section_values(sections: Sections, section: str, key: str) -> List[str]:
    values = []
    for name, entries in sections:
        if name != section:
            continue
        values.extend(value for entry_key, value in entries if entry_key == key)
    return values


def first_value(sections: Sections, section: str, key: str) -> Optional[str]:
    values = section_values(sections, section, key)
    return values[0] if values else None


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def unit_interface_name(content: str) -> Optional[str]:
    """Return the raw [Match] Name= (or [NetDev] Name=) value of a unit."""
    sections = parse_sections(content)
    return first_value(sections, 'Match', 'Name') or first_value(sections, 'NetDev', 'Name')


def render_network_unit(interface_name: str, desired: DesiredConfig) -> str:
    """
    Generate systemd-networkd .network content for an interface.

    Args:
        interface_name: Kernel name used in [Match]
        desired: Validated intent for the interface

    Returns:
        str: Unit text ending with a newline

    Raises:
        ValidationError: If the configuration violates an invariant
    """
    validate_desired_config(desired)

    lines = [
        "[Match]",
        f"Name={interface_name}",
        "",
        "[Network]",
    ]

    if desired.dhcp != "no":
        lines.append(f"DHCP={desired.dhcp}")

    for addressing in (desired.ipv4, desired.ipv6):
        if isinstance(addressing, StaticAddressing):
            for address in addressing.addresses:
                lines.append(f"Address={address}")
    for addressing in (desired.ipv4, desired.ipv6):
        if isinstance(addressing, StaticAddressing) and addressing.gateway:
            lines.append(f"Gateway={addressing.gateway}")

    for dns in desired.dns:
        lines.append(f"DNS={dns}")

    if desired.ipv6_accept_ra is not None:
        lines.append(f"IPv6AcceptRA={_yes_no(desired.ipv6_accept_ra)}")

    lines.extend([
        "",
        "[Link]",
        f"RequiredForOnline={_yes_no(desired.required_for_online)}",
    ])
    if desired.mtu is not None:
        lines.append(f"MTUBytes={desired.mtu}")

    # 确保文件以换行符结尾（Linux/Unix标准）
    return "\n".join(lines) + "\n"


def _family(value: str) -> Optional[int]:
    try:
        if '/' in value:
            return ipaddress.ip_interface(value).version
        return ipaddress.ip_address(value).version
    except ValueError:
        return None


def parse_network_unit(content: str) -> Tuple[Optional[str], Optional[DesiredConfig]]:
    """
    Parse .network text back into an interface name and DesiredConfig.

    Inverse of render_network_unit for every field it emits. Address= entries
    from [Address] sections are folded into the static address list.

    Returns:
        Tuple containing:
        - Optional[str]: Interface name from [Match], None if absent
        - Optional[DesiredConfig]: Parsed configuration, None if there is no [Match] name
    """
    sections = parse_sections(content)
    interface_name = first_value(sections, 'Match', 'Name')
    if not interface_name:
        return None, None

    dhcp = (first_value(sections, 'Network', 'DHCP') or 'no').lower()
    dhcp_v4 = dhcp in TRUE_VALUES or dhcp == 'ipv4'
    dhcp_v6 = dhcp in TRUE_VALUES or dhcp == 'ipv6'

    addresses = {4: [], 6: []}
    gateways = {4: None, 6: None}
    for address in section_values(sections, 'Network', 'Address') + section_values(sections, 'Address', 'Address'):
        version = _family(address)
        if version:
            addresses[version].append(address)
    for gateway in section_values(sections, 'Network', 'Gateway'):
        version = _family(gateway)
        if version and gateways[version] is None:
            gateways[version] = gateway

    families = {}
    for version, use_dhcp in ((4, dhcp_v4), (6, dhcp_v6)):
        if use_dhcp:
            families[version] = DhcpAddressing()
        elif addresses[version]:
            families[version] = StaticAddressing(addresses=tuple(addresses[version]), gateway=gateways[version])
        else:
            families[version] = None

    dns = []
    for value in section_values(sections, 'Network', 'DNS'):
        dns.extend(value.split())

    accept_ra = first_value(sections, 'Network', 'IPv6AcceptRA')
    required = first_value(sections, 'Link', 'RequiredForOnline')
    mtu = first_value(sections, 'Link', 'MTUBytes')

    return interface_name, DesiredConfig(
        ipv4=families[4],
        ipv6=families[6],
        dns=tuple(dns),
        mtu=int(mtu) if mtu and mtu.isdigit() else None,
        required_for_online=required is None or not required.lower().startswith('no'),
        ipv6_accept_ra=None if accept_ra is None else accept_ra.lower() in TRUE_VALUES,
    )


# WireGuard

def render_netdev(tunnel: TunnelConfig) -> str:
    """Render the .netdev unit. The result contains the private key."""
    validate_tunnel_config(tunnel)
    lines = [
        "[NetDev]",
        f"Name={tunnel.name}",
        "Kind=wireguard",
        "Description=WireGuard tunnel",
        "",
        "[WireGuard]",
        f"PrivateKey={tunnel.private_key}",
    ]
    if tunnel.listen_port is not None:
        lines.append(f"ListenPort={tunnel.listen_port}")

    for peer in tunnel.peers:
        lines.extend(["", "[WireGuardPeer]", f"PublicKey={peer.public_key}"])
        if peer.preshared_key:
            lines.append(f"PresharedKey={peer.preshared_key}")
        if peer.endpoint:
            lines.append(f"Endpoint={peer.endpoint}")
        for allowed in peer.allowed_ips:
            lines.append(f"AllowedIPs={allowed}")
        if peer.persistent_keepalive is not None:
            lines.append(f"PersistentKeepalive={peer.persistent_keepalive}")

    return "\n".join(lines) + "\n"


def parse_netdev(content: str) -> Optional[TunnelConfig]:
    sections = parse_sections(content)
    if (first_value(sections, 'NetDev', 'Kind') or '').lower() != 'wireguard':
        return None

    peers = []
    for name, entries in sections:
        if name != 'WireGuardPeer':
            continue
        values = {}
        allowed = []
        for key, value in entries:
            if key == 'AllowedIPs':
                allowed.extend(item.strip() for item in value.split(',') if item.strip())
            else:
                values[key] = value
        keepalive = values.get('PersistentKeepalive')
        peers.append(TunnelPeer(
            public_key=values.get('PublicKey', ''),
            allowed_ips=tuple(allowed),
            endpoint=values.get('Endpoint'),
            preshared_key=values.get('PresharedKey'),
            persistent_keepalive=int(keepalive) if keepalive and keepalive.isdigit() else None,
        ))

    port = first_value(sections, 'WireGuard', 'ListenPort')
    return TunnelConfig(
        name=first_value(sections, 'NetDev', 'Name') or '',
        private_key=first_value(sections, 'WireGuard', 'PrivateKey') or '',
        listen_port=int(port) if port and port.isdigit() else None,
        peers=tuple(peers),
    )


def render_tunnel_network(tunnel: TunnelConfig) -> str:
    """Render the .network unit for a tunnel, with a route per non-default allowed range."""
    lines = [
        "[Match]",
        f"Name={tunnel.name}",
        "",
        "[Network]",
    ]
    for address in tunnel.addresses:
        lines.append(f"Address={address}")
    for dns in tunnel.dns:
        lines.append(f"DNS={dns}")

    destinations = []
    for peer in tunnel.peers:
        for allowed in peer.allowed_ips:
            if allowed not in DEFAULT_ROUTES and allowed not in destinations:
                destinations.append(allowed)
    for destination in destinations:
        lines.extend(["", "[Route]", f"Destination={destination}"])

    lines.extend(["", "[Link]", "RequiredForOnline=no"])
    if tunnel.mtu is not None:
        lines.append(f"MTUBytes={tunnel.mtu}")
    return "\n".join(lines) + "\n"


def parse_wg_quick(content: str) -> Tuple[Optional[str], Dict]:
    """
    Parse a wg-quick style configuration.

    Returns:
        Tuple containing:
        - Optional[str]: The [Interface] private key
        - Dict: Remaining fields in the form accepted by tunnel_config_from_dict
    """
    sections = parse_sections(content)

    def split_list(values: List[str]) -> List[str]:
        items = []
        for value in values:
            items.extend(item.strip() for item in value.split(',') if item.strip())
        return items

    dns = []
    for entry in split_list(section_values(sections, 'Interface', 'DNS')):
        if validate_ip_address(entry):
            dns.append(entry)
        else:
            # wg-quick 允许在 DNS= 中写搜索域，networkd 不支持
            logger.debug(f"Ignoring non-address DNS entry {entry}")

    data = {
        'addresses': split_list(section_values(sections, 'Interface', 'Address')),
        'dns': dns,
        'listen_port': first_value(sections, 'Interface', 'ListenPort'),
        'mtu': first_value(sections, 'Interface', 'MTU'),
        'peers': [],
    }
    for name, entries in sections:
        if name != 'Peer':
            continue
        values = dict(entries)
        data['peers'].append({
            'public_key': values.get('PublicKey'),
            'preshared_key': values.get('PresharedKey'),
            'endpoint': values.get('Endpoint'),
            'allowed_ips': split_list([value for key, value in entries if key == 'AllowedIPs']),
            'persistent_keepalive': values.get('PersistentKeepalive'),
        })
    return first_value(sections, 'Interface', 'PrivateKey'), data


def parse_wg_dump(name: str, output: str) -> TunnelStatus:
    """
    Parse `wg show <name> dump`. The private key column is never read into the result.
    """
    status = TunnelStatus(name=name, up=False)
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        return status

    header = lines[0].split('\t')
    if len(header) >= 3:
        status.up = True
        status.public_key = header[1]
        status.listen_port = int(header[2]) if header[2].isdigit() else None

    for line in lines[1:]:
        fields = line.split('\t')
        if len(fields) < 8:
            continue
        handshake = int(fields[4]) if fields[4].isdigit() else 0
        status.peers.append(PeerStatus(
            public_key=fields[0],
            endpoint=None if fields[2] == '(none)' else fields[2],
            allowed_ips=[] if fields[3] == '(none)' else fields[3].split(','),
            latest_handshake=datetime.fromtimestamp(handshake) if handshake else None,
            rx_bytes=int(fields[5]) if fields[5].isdigit() else 0,
            tx_bytes=int(fields[6]) if fields[6].isdigit() else 0,
            persistent_keepalive=int(fields[7]) if fields[7].isdigit() else None,
        ))
    return status


# WiFi client

def _quote(value: str) -> str:
    return f'"{value}"'


def render_wpa_supplicant(credential: WifiCredential, country: str = None) -> str:
    """
    Generate wpa_supplicant-<interface>.conf content for a single network.

    The result contains secret material and must be written with mode 0600.
    """
    validate_credential(credential)
    secret = credential.secret

    lines = [
        "ctrl_interface=/run/wpa_supplicant",
        "update_config=1",
        f"country={country or config.WIFI_COUNTRY}",
        "",
        "network={",
        f"    ssid={_quote(credential.ssid)}",
    ]
    if credential.hidden:
        lines.append("    scan_ssid=1")

    if isinstance(secret, OpenSecret):
        lines.append("    key_mgmt=NONE")
    elif isinstance(secret, WepSecret):
        key = secret.key if len(secret.key) in (10, 26) else _quote(secret.key)
        lines.extend([f"    wep_key0={key}", "    key_mgmt=NONE", "    wep_tx_keyidx=0"])
    elif isinstance(secret, PersonalSecret):
        psk = secret.passphrase if HEX_PSK_REGEX.match(secret.passphrase) else _quote(secret.passphrase)
        lines.extend([f"    psk={psk}", "    key_mgmt=WPA-PSK"])
    elif isinstance(secret, SaeSecret):
        lines.extend([f"    psk={_quote(secret.password)}", "    key_mgmt=SAE", "    ieee80211w=2"])
    elif isinstance(secret, EnterpriseSecret):
        lines.extend(["    key_mgmt=WPA-EAP", f"    eap={secret.method.value}",
                      f"    identity={_quote(secret.identity)}"])
        if secret.anonymous_identity:
            lines.append(f"    anonymous_identity={_quote(secret.anonymous_identity)}")
        if secret.password:
            lines.append(f"    password={_quote(secret.password)}")
        if secret.ca_cert:
            lines.append(f"    ca_cert={_quote(secret.ca_cert)}")
        if secret.method in (EapMethod.PEAP, EapMethod.TTLS) and secret.phase2:
            lines.append(f'    phase2="auth={secret.phase2.upper()}"')
        if secret.client_cert:
            lines.append(f"    client_cert={_quote(secret.client_cert)}")
        if secret.private_key:
            lines.append(f"    private_key={_quote(secret.private_key)}")
        if secret.private_key_password:
            lines.append(f"    private_key_passwd={_quote(secret.private_key_password)}")

    lines.append("}")
    return "\n".join(lines) + "\n"


def frequency_to_channel(frequency: Optional[int]) -> Optional[int]:
    if frequency is None:
        return None
    if frequency == 2484:
        return 14
    if 2412 <= frequency <= 2472:
        return (frequency - 2407) // 5
    if 5000 <= frequency <= 5900:
        return (frequency - 5000) // 5
    if 5955 <= frequency <= 7115:
        return (frequency - 5950) // 5
    return None


def _security_of(bss: Dict) -> SecurityClass:
    suites = " ".join(bss['auth_suites'])
    if bss['rsn']:
        if '802.1X' in suites:
            return SecurityClass.ENTERPRISE
        if 'SAE' in suites and 'PSK' not in suites:
            return SecurityClass.SAE
        return SecurityClass.WPA_PERSONAL
    if bss['privacy']:
        return SecurityClass.WEP
    return SecurityClass.OPEN


def parse_iw_scan(output: str) -> List[WifiNetwork]:
    """
    Parse `iw dev <if> scan` output into networks.

    Access points sharing an SSID and security class are merged into one
    WifiNetwork carrying every BSSID and the strongest signal. Entries without an
    SSID (hidden networks) are left out.
    """
    entries = []
    bss = None
    for raw_line in output.splitlines():
        bss_match = BSS_REGEX.match(raw_line)
        if bss_match:
            bss = {'bssid': bss_match.group(1).lower(), 'ssid': None, 'signal': None, 'freq': None,
                   'rsn': False, 'privacy': False, 'auth_suites': []}
            entries.append(bss)
            continue
        if bss is None:
            continue
        line = raw_line.strip()
        if line.startswith('SSID:'):
            bss['ssid'] = line[5:].strip()
        elif line.startswith('signal:'):
            match = SIGNAL_REGEX.search(line)
            bss['signal'] = float(match.group(1)) if match else None
        elif line.startswith('freq:'):
            try:
                bss['freq'] = int(float(line[5:].strip()))
            except ValueError:
                bss['freq'] = None
        elif line.startswith('RSN:') or line.startswith('WPA:'):
            bss['rsn'] = True
        elif line.startswith('capability:') and 'Privacy' in line:
            bss['privacy'] = True
        elif 'Authentication suites:' in line:
            bss['auth_suites'].append(line.split('Authentication suites:', 1)[1].strip())

    merged = {}
    for entry in entries:
        ssid = entry['ssid']
        if not ssid or not ssid.replace('\\x00', '').strip():
            continue
        security = _security_of(entry)
        key = (ssid, security)
        existing = merged.get(key)
        if existing is None:
            merged[key] = {'bssids': {entry['bssid']}, 'signal': entry['signal'], 'freq': entry['freq']}
            continue
        existing['bssids'].add(entry['bssid'])
        if entry['signal'] is not None and (existing['signal'] is None or entry['signal'] > existing['signal']):
            existing['signal'] = entry['signal']
            existing['freq'] = entry['freq']

    networks = [
        WifiNetwork(ssid=ssid, security=security, bssids=frozenset(data['bssids']),
                    signal_dbm=data['signal'], frequency=data['freq'],
                    channel=frequency_to_channel(data['freq']))
        for (ssid, security), data in merged.items()
    ]
    networks.sort(key=lambda n: (n.signal_dbm is None, -(n.signal_dbm or 0), n.ssid))
    return networks


def _parse_indented(output: str) -> Dict[str, str]:
    values = {}
    for raw_line in output.splitlines()[1:]:
        line = raw_line.strip()
        if ':' in line:
            key, value = line.split(':', 1)
            values[key.strip().lower()] = value.strip()
    return values


def parse_iw_link(output: str) -> Dict:
    """Parse `iw dev <if> link`. Returns an empty dict when not connected."""
    lines = output.strip().splitlines()
    if not lines:
        return {}
    match = CONNECTED_REGEX.match(lines[0].strip())
    if not match:
        return {}
    values = _parse_indented(output)
    signal = SIGNAL_REGEX.search(values.get('signal', ''))
    freq = values.get('freq')
    frequency = int(float(freq)) if freq else None
    return {
        'bssid': match.group(1).lower(),
        'ssid': values.get('ssid'),
        'frequency': frequency,
        'channel': frequency_to_channel(frequency),
        'signal_dbm': float(signal.group(1)) if signal else None,
        'rx_bitrate': values.get('rx bitrate'),
        'tx_bitrate': values.get('tx bitrate'),
    }


def parse_station_dump(output: str) -> Dict:
    """Parse `iw dev <if> station dump` counters for the first station."""
    stations = output.strip().split('\nStation ')
    if not output.strip() or not STATION_REGEX.match(output.strip()):
        return {}
    values = _parse_indented(stations[0])

    def number(key: str) -> int:
        match = re.match(r'\d+', values.get(key, ''))
        return int(match.group(0)) if match else 0

    signal = SIGNAL_REGEX.search(values.get('signal', ''))
    return {
        'rx_bytes': number('rx bytes'),
        'tx_bytes': number('tx bytes'),
        'tx_retries': number('tx retries'),
        'tx_failed': number('tx failed'),
        'signal_dbm': float(signal.group(1)) if signal else None,
        'tx_bitrate': values.get('tx bitrate'),
        'rx_bitrate': values.get('rx bitrate'),
    }


def parse_iw_info(output: str) -> Dict:
    """Parse `iw dev <if> info` into type, ssid and channel."""
    info = {}
    for raw_line in output.splitlines():
        parts = raw_line.strip().split(None, 1)
        if len(parts) != 2:
            continue
        key, value = parts
        if key == 'type':
            info['type'] = value.strip()
        elif key == 'ssid':
            info['ssid'] = value.strip()
        elif key == 'channel':
            channel = value.split()[0]
            info['channel'] = int(channel) if channel.isdigit() else None
    return info


# Access point

def render_hostapd(hotspot: HotspotConfig) -> str:
    validate_hotspot_config(hotspot)
    hw_mode = 'g' if hotspot.channel <= 14 else 'a'
    lines = [
        f"interface={hotspot.interface}",
        "driver=nl80211",
        f"ssid={hotspot.ssid}",
        f"hw_mode={hw_mode}",
        f"channel={hotspot.channel}",
        "wmm_enabled=1",
        "macaddr_acl=0",
        "auth_algs=1",
        "ignore_broadcast_ssid=0",
        "wpa=2",
        f"wpa_passphrase={hotspot.password}",
        "wpa_key_mgmt=WPA-PSK",
        "rsn_pairwise=CCMP",
    ]
    return "\n".join(lines) + "\n"


def hotspot_network(hotspot: HotspotConfig) -> ipaddress.IPv4Network:
    return ipaddress.ip_interface(f"{hotspot.gateway}/{hotspot.prefix_length}").network


def render_dnsmasq(hotspot: HotspotConfig) -> str:
    """DHCP server for hotspot clients: leases .10 to .50 of the hotspot subnet."""
    validate_hotspot_config(hotspot)
    network = hotspot_network(hotspot)
    start = network.network_address + 10
    end = min(network.network_address + 50, network.broadcast_address - 1)
    lines = [
        f"interface={hotspot.interface}",
        "bind-interfaces",
        f"listen-address={hotspot.gateway}",
        f"dhcp-range={start},{end},{network.netmask},{config.HOTSPOT_DHCP_LEASE}",
        f"dhcp-option=3,{hotspot.gateway}",
        f"dhcp-option=6,{','.join(config.HOTSPOT_UPSTREAM_DNS)}",
        "no-resolv",
    ]
    for server in config.HOTSPOT_UPSTREAM_DNS:
        lines.append(f"server={server}")
    return "\n".join(lines) + "\n"


def hotspot_desired_config(hotspot: HotspotConfig) -> DesiredConfig:
    """Static address for the access point side of the hotspot link."""
    return DesiredConfig(
        ipv4=StaticAddressing(addresses=(f"{hotspot.gateway}/{hotspot.prefix_length}",)),
        required_for_online=False,
    )


def parse_default_route(output: str) -> Optional[str]:
    """
    Interface of the first default route in `ip route show default` output.

    e.g. "default via 192.168.1.1 dev eth0 proto dhcp src 192.168.1.100 metric 100"
    """
    for line in output.splitlines():
        fields = line.split()
        if not fields or fields[0] != 'default':
            continue
        if 'dev' in fields[:-1]:
            return fields[fields.index('dev') + 1]
    return None
