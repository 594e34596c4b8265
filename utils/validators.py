import base64
import binascii
import ipaddress
import re
from typing import List, Dict, Any, Optional, Tuple

from models.network_models import DesiredConfig, DhcpAddressing, StaticAddressing
from models.wifi_models import (
    EapMethod, EnterpriseSecret, OpenSecret, PersonalSecret, SaeSecret, WepSecret,
    WifiCredential, PHASE2_METHODS
)
from models.hotspot_models import HotspotConfig
from models.tunnel_models import TunnelConfig, TunnelPeer
from utils.exceptions import ValidationError

INTERFACE_NAME_REGEX = re.compile(r'^[A-Za-z0-9_.\-]{1,15}$')
HEX_PSK_REGEX = re.compile(r'^[0-9a-fA-F]{64}$')

CHANNELS_24GHZ = tuple(range(1, 12))
CHANNELS_5GHZ = (36, 40, 44, 48, 52, 56, 60, 64,
                 100, 104, 108, 112, 116, 120, 124, 128, 132, 136, 140, 144,
                 149, 153, 157, 161, 165)

DHCP_VALUES = {
    'yes': (True, True), 'true': (True, True), 'both': (True, True),
    'ipv4': (True, False), 'ipv6': (False, True),
    'no': (False, False), 'false': (False, False), 'none': (False, False),
}


def validate_ip_address(ip: str) -> bool:
    """
    Validate if the given string is a valid IPv4 or IPv6 address with optional CIDR notation.

    Args:
        ip: IP address string potentially with CIDR notation (e.g., "192.168.1.1/24" or "2001:db8::1/64")

    Returns:
        bool: True if valid, False otherwise
    """
    try:
        if '/' in ip:
            ipaddress.ip_interface(ip)
        else:
            ipaddress.ip_address(ip)
        return True
    except (ValueError, TypeError):
        return False


def validate_interface_name(name: str, field: str = 'interface') -> str:
    if not isinstance(name, str) or not INTERFACE_NAME_REGEX.match(name):
        raise ValidationError(field, f"invalid interface name: {name!r}")
    return name


def _require_version(value: str, version: int, field: str, with_prefix: bool) -> str:
    if not isinstance(value, str):
        raise ValidationError(field, f"expected a string, got {type(value).__name__}")
    try:
        if with_prefix:
            if '/' not in value:
                raise ValidationError(field, f"{value} must include a prefix length")
            parsed = ipaddress.ip_interface(value)
        else:
            if '/' in value:
                raise ValidationError(field, f"{value} must not include a prefix length")
            parsed = ipaddress.ip_address(value)
    except ValueError:
        raise ValidationError(field, f"invalid IPv{version} address: {value}")
    if parsed.version != version:
        raise ValidationError(field, f"{value} is not an IPv{version} address")
    return value


def validate_cidr(value: str, field: str) -> str:
    """Validate a network range such as 10.0.0.0/8 or ::/0."""
    if not isinstance(value, str) or '/' not in value:
        raise ValidationError(field, f"{value!r} is not a CIDR range")
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError:
        raise ValidationError(field, f"{value!r} is not a CIDR range")
    return value


def validate_dns_servers(servers, field: str = 'dns') -> Tuple[str, ...]:
    if servers is None:
        return ()
    if not isinstance(servers, (list, tuple)):
        raise ValidationError(field, "must be a list of addresses")
    for server in servers:
        if not isinstance(server, str) or '/' in server or not validate_ip_address(server):
            raise ValidationError(field, f"invalid DNS server address: {server}")
    return tuple(servers)


def validate_desired_config(desired: DesiredConfig) -> DesiredConfig:
    """
    Check the DesiredConfig invariants.

    Args:
        desired: Configuration to check

    Returns:
        DesiredConfig: The same object when valid

    Raises:
        ValidationError: Identifies the first offending field
    """
    for version, addressing in ((4, desired.ipv4), (6, desired.ipv6)):
        field = f'ipv{version}_addresses'
        if addressing is None or isinstance(addressing, DhcpAddressing):
            continue
        if not isinstance(addressing, StaticAddressing):
            raise ValidationError(f'ipv{version}', f"unknown addressing mode {addressing!r}")
        if not addressing.addresses:
            raise ValidationError(field, "static addressing requires at least one address")
        for address in addressing.addresses:
            _require_version(address, version, field, with_prefix=True)
        if addressing.gateway:
            _require_version(addressing.gateway, version, f'ipv{version}_gateway', with_prefix=False)

    validate_dns_servers(desired.dns)

    if desired.mtu is not None:
        if not isinstance(desired.mtu, int) or isinstance(desired.mtu, bool) or not (68 <= desired.mtu <= 65535):
            raise ValidationError('mtu', f"MTU must be an integer within 68-65535, got {desired.mtu!r}")

    return desired


def _address_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key) or []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValidationError(key, "must be a list of addresses")
    return list(value)


def desired_config_from_dict(data: Dict[str, Any]) -> DesiredConfig:
    """
    Build a validated DesiredConfig from user supplied JSON.

    Accepted keys: dhcp ("yes", "ipv4", "ipv6", "no" or a boolean), ipv4_addresses,
    ipv4_gateway, ipv6_addresses, ipv6_gateway, dns, mtu, required_for_online,
    ipv6_accept_ra. A family is unmanaged when it has neither DHCP nor addresses.

    Raises:
        ValidationError: When any field is malformed, including DHCP combined with
            static addresses in the same family
    """
    if not isinstance(data, dict):
        raise ValidationError('config', "configuration must be a JSON object")

    dhcp = data.get('dhcp', 'no')
    if isinstance(dhcp, bool):
        dhcp = 'yes' if dhcp else 'no'
    if not isinstance(dhcp, str) or dhcp.lower() not in DHCP_VALUES:
        raise ValidationError('dhcp', f"unsupported value {dhcp!r}, expected yes/ipv4/ipv6/no")
    dhcp_v4, dhcp_v6 = DHCP_VALUES[dhcp.lower()]

    families = {}
    for version, use_dhcp in ((4, dhcp_v4), (6, dhcp_v6)):
        addresses = _address_list(data, f'ipv{version}_addresses')
        gateway = data.get(f'ipv{version}_gateway') or None
        if use_dhcp and addresses:
            raise ValidationError(f'ipv{version}_addresses',
                                  "DHCP and static addressing are mutually exclusive")
        if use_dhcp:
            families[version] = DhcpAddressing()
        elif addresses:
            families[version] = StaticAddressing(addresses=tuple(addresses), gateway=gateway)
        else:
            if gateway:
                raise ValidationError(f'ipv{version}_gateway', "a gateway requires a static address")
            families[version] = None

    mtu = data.get('mtu')
    if isinstance(mtu, str) and mtu.isdigit():
        mtu = int(mtu)

    accept_ra = data.get('ipv6_accept_ra')
    if accept_ra is not None and not isinstance(accept_ra, bool):
        raise ValidationError('ipv6_accept_ra', "must be a boolean")

    desired = DesiredConfig(
        ipv4=families[4],
        ipv6=families[6],
        dns=validate_dns_servers(data.get('dns')),
        mtu=mtu,
        required_for_online=bool(data.get('required_for_online', True)),
        ipv6_accept_ra=accept_ra,
    )
    return validate_desired_config(desired)


def validate_ssid(ssid: str, field: str = 'ssid') -> str:
    if not isinstance(ssid, str) or not ssid:
        raise ValidationError(field, "SSID must not be empty")
    if len(ssid.encode('utf-8')) > 32:
        raise ValidationError(field, "SSID must be at most 32 bytes")
    if '"' in ssid or '\n' in ssid:
        raise ValidationError(field, "SSID must not contain quotes or newlines")
    return ssid


def validate_passphrase(passphrase: str, field: str = 'password') -> str:
    """WPA passphrases are 8-63 printable characters, or a raw 64 hex digit PSK."""
    if not isinstance(passphrase, str):
        raise ValidationError(field, "password is required")
    if HEX_PSK_REGEX.match(passphrase):
        return passphrase
    if not (8 <= len(passphrase) <= 63):
        raise ValidationError(field, "password must be 8-63 characters")
    if '"' in passphrase or '\n' in passphrase:
        raise ValidationError(field, "password must not contain quotes or newlines")
    return passphrase


def validate_enterprise(secret: EnterpriseSecret) -> EnterpriseSecret:
    """
    Per-method required fields:

    - PEAP / TTLS: identity, password and a phase-2 method
    - TLS: identity, client certificate and private key
    - PWD / LEAP: identity and password
    """
    if not secret.identity:
        raise ValidationError('identity', f"{secret.method.value} requires an identity")

    if secret.method in (EapMethod.PEAP, EapMethod.TTLS):
        if not secret.password:
            raise ValidationError('password', f"{secret.method.value} requires a password")
        if not secret.phase2:
            raise ValidationError('phase2', f"{secret.method.value} requires a phase-2 method")
        if secret.phase2.upper() not in PHASE2_METHODS:
            raise ValidationError('phase2', f"unsupported phase-2 method {secret.phase2}")
    elif secret.method == EapMethod.TLS:
        if not secret.client_cert:
            raise ValidationError('client_cert', "TLS requires a client certificate path")
        if not secret.private_key:
            raise ValidationError('private_key', "TLS requires a private key path")
    else:
        if not secret.password:
            raise ValidationError('password', f"{secret.method.value} requires a password")

    for field in ('identity', 'password', 'anonymous_identity', 'ca_cert', 'client_cert',
                  'private_key', 'private_key_password'):
        value = getattr(secret, field)
        if value and ('"' in value or '\n' in value):
            raise ValidationError(field, "must not contain quotes or newlines")
    return secret


def validate_credential(credential: WifiCredential) -> WifiCredential:
    validate_ssid(credential.ssid)
    secret = credential.secret
    if isinstance(secret, PersonalSecret):
        validate_passphrase(secret.passphrase)
    elif isinstance(secret, SaeSecret):
        if not secret.password:
            raise ValidationError('password', "SAE requires a password")
        if '"' in secret.password or '\n' in secret.password:
            raise ValidationError('password', "password must not contain quotes or newlines")
    elif isinstance(secret, WepSecret):
        key = secret.key or ''
        if len(key) not in (5, 13) and not re.match(r'^([0-9a-fA-F]{10}|[0-9a-fA-F]{26})$', key):
            raise ValidationError('password', "WEP key must be 5/13 characters or 10/26 hex digits")
    elif isinstance(secret, EnterpriseSecret):
        validate_enterprise(secret)
    elif not isinstance(secret, OpenSecret):
        raise ValidationError('security', f"unsupported secret {type(secret).__name__}")
    if credential.addressing is not None:
        validate_desired_config(credential.addressing)
    return credential


def secret_from_dict(data: Dict[str, Any]):
    security = (data.get('security') or 'wpa-personal').lower()
    if security == 'open':
        return OpenSecret()
    if security == 'wep':
        return WepSecret(key=data.get('password') or '')
    if security in ('wpa-personal', 'wpa', 'wpa2', 'psk'):
        return PersonalSecret(passphrase=data.get('password'))
    if security in ('sae', 'wpa3'):
        return SaeSecret(password=data.get('password') or '')
    if security == 'enterprise':
        method = (data.get('eap_method') or '').upper()
        try:
            eap_method = EapMethod(method)
        except ValueError:
            raise ValidationError('eap_method', f"unsupported EAP method {method!r}")
        return EnterpriseSecret(
            method=eap_method,
            identity=data.get('identity') or '',
            password=data.get('password'),
            anonymous_identity=data.get('anonymous_identity'),
            phase2=data.get('phase2'),
            ca_cert=data.get('ca_cert'),
            client_cert=data.get('client_cert'),
            private_key=data.get('private_key'),
            private_key_password=data.get('private_key_password'),
        )
    raise ValidationError('security', f"unsupported security class {security!r}")


def credential_from_dict(data: Dict[str, Any]) -> WifiCredential:
    if not isinstance(data, dict):
        raise ValidationError('credential', "credential must be a JSON object")
    addressing = data.get('addressing')
    priority = data.get('priority', 0)
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise ValidationError('priority', "must be an integer")
    credential = WifiCredential(
        ssid=data.get('ssid'),
        secret=secret_from_dict(data),
        auto_connect=bool(data.get('auto_connect', True)),
        hidden=bool(data.get('hidden', False)),
        priority=priority,
        addressing=desired_config_from_dict(addressing) if addressing else None,
    )
    return validate_credential(credential)


def validate_channel(channel) -> int:
    if not isinstance(channel, int) or isinstance(channel, bool):
        raise ValidationError('channel', f"channel must be an integer, got {channel!r}")
    if channel not in CHANNELS_24GHZ and channel not in CHANNELS_5GHZ:
        raise ValidationError('channel', f"channel {channel} is outside 1-11 and the 5GHz channel set")
    return channel


def validate_hotspot_config(hotspot: HotspotConfig) -> HotspotConfig:
    validate_interface_name(hotspot.interface)
    validate_ssid(hotspot.ssid)
    if not isinstance(hotspot.password, str) or len(hotspot.password) < 8:
        raise ValidationError('password', "hotspot password must be at least 8 characters")
    if len(hotspot.password) > 63:
        raise ValidationError('password', "hotspot password must be at most 63 characters")
    validate_passphrase(hotspot.password)
    validate_channel(hotspot.channel)
    _require_version(hotspot.gateway, 4, 'gateway', with_prefix=False)
    if not (8 <= hotspot.prefix_length <= 26):
        raise ValidationError('prefix_length', "prefix length must be within 8-26")
    if hotspot.upstream is not None:
        validate_interface_name(hotspot.upstream, 'upstream')
        if hotspot.upstream == hotspot.interface:
            raise ValidationError('upstream', "upstream must differ from the hotspot interface")
    return hotspot


def hotspot_config_from_dict(interface: str, data: Dict[str, Any]) -> HotspotConfig:
    if not isinstance(data, dict):
        raise ValidationError('hotspot', "hotspot configuration must be a JSON object")
    kwargs = {key: data[key] for key in ('channel', 'gateway', 'prefix_length', 'upstream') if key in data}
    return validate_hotspot_config(HotspotConfig(
        ssid=data.get('ssid'),
        password=data.get('password'),
        interface=interface,
        detect_upstream='upstream' not in data,
        **kwargs
    ))


def validate_wireguard_key(key: str, field: str) -> str:
    """WireGuard keys are 32 bytes encoded as 44 characters of base64."""
    if not isinstance(key, str) or len(key) != 44:
        raise ValidationError(field, "not a WireGuard key")
    try:
        decoded = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(field, "not a WireGuard key")
    if len(decoded) != 32:
        raise ValidationError(field, "not a WireGuard key")
    return key


def validate_endpoint(endpoint: str, field: str = 'endpoint') -> str:
    match = re.match(r'^(\[[0-9a-fA-F:]+\]|[A-Za-z0-9.\-]+):(\d{1,5})$', endpoint or '')
    if not match or not (1 <= int(match.group(2)) <= 65535):
        raise ValidationError(field, f"endpoint must be host:port, got {endpoint!r}")
    return endpoint


def validate_tunnel_config(tunnel: TunnelConfig) -> TunnelConfig:
    validate_interface_name(tunnel.name, 'name')
    validate_wireguard_key(tunnel.private_key, 'private_key')
    if tunnel.listen_port is not None and not (1 <= tunnel.listen_port <= 65535):
        raise ValidationError('listen_port', f"port must be within 1-65535, got {tunnel.listen_port}")
    for address in tunnel.addresses:
        if not validate_ip_address(address) or '/' not in address:
            raise ValidationError('addresses', f"{address} is not an address with prefix length")
    validate_dns_servers(tunnel.dns)
    if tunnel.mtu is not None and not (1280 <= tunnel.mtu <= 65535):
        raise ValidationError('mtu', f"tunnel MTU must be within 1280-65535, got {tunnel.mtu}")

    seen = set()
    for index, peer in enumerate(tunnel.peers):
        prefix = f"peers[{index}]"
        validate_wireguard_key(peer.public_key, f"{prefix}.public_key")
        if peer.public_key in seen:
            raise ValidationError(f"{prefix}.public_key", "duplicate peer")
        seen.add(peer.public_key)
        if peer.preshared_key is not None:
            validate_wireguard_key(peer.preshared_key, f"{prefix}.preshared_key")
        if not peer.allowed_ips:
            raise ValidationError(f"{prefix}.allowed_ips", "at least one allowed-IP range is required")
        for allowed in peer.allowed_ips:
            validate_cidr(allowed, f"{prefix}.allowed_ips")
        if peer.endpoint is not None:
            validate_endpoint(peer.endpoint, f"{prefix}.endpoint")
        if peer.persistent_keepalive is not None and not (0 <= peer.persistent_keepalive <= 65535):
            raise ValidationError(f"{prefix}.persistent_keepalive", "must be within 0-65535")
    return tunnel


def _optional_int(data: Dict[str, Any], key: str, field: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(field, f"must be an integer, got {value!r}")


def tunnel_config_from_dict(name: str, private_key: str, data: Dict[str, Any]) -> TunnelConfig:
    if not isinstance(data, dict):
        raise ValidationError('tunnel', "tunnel configuration must be a JSON object")
    peers = []
    for index, peer in enumerate(data.get('peers') or []):
        if not isinstance(peer, dict):
            raise ValidationError(f"peers[{index}]", "peer must be a JSON object")
        allowed = peer.get('allowed_ips') or []
        if isinstance(allowed, str):
            allowed = [item.strip() for item in allowed.split(',') if item.strip()]
        peers.append(TunnelPeer(
            public_key=peer.get('public_key'),
            allowed_ips=tuple(allowed),
            endpoint=peer.get('endpoint'),
            preshared_key=peer.get('preshared_key'),
            persistent_keepalive=_optional_int(peer, 'persistent_keepalive',
                                               f"peers[{index}].persistent_keepalive"),
        ))
    return validate_tunnel_config(TunnelConfig(
        name=name,
        private_key=private_key,
        listen_port=_optional_int(data, 'listen_port', 'listen_port'),
        addresses=tuple(data.get('addresses') or ()),
        dns=tuple(data.get('dns') or ()),
        mtu=_optional_int(data, 'mtu', 'mtu'),
        peers=tuple(peers),
    ))
