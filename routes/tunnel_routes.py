from flask import Blueprint, jsonify
from routes.route_utils import get_control, json_body, submit_task
from utils.exceptions import ValidationError
from utils.validators import validate_interface_name
import logging

logger = logging.getLogger(__name__)

tunnel_bp = Blueprint('tunnel', __name__, url_prefix='/api/tunnels')


@tunnel_bp.route('', methods=['GET'])
def list_tunnels():
    """Persisted tunnels, without private keys"""
    return jsonify(get_control().tunnels.list_tunnels())


@tunnel_bp.route('/<name>', methods=['POST'])
def create_tunnel(name):
    """
    Generate a key pair for a new tunnel.

    Only the public key is returned; the private key stays on this host.
    """
    keys = get_control().tunnels.create_tunnel(name)
    return jsonify({'name': name, 'public_key': keys.public_key}), 201


@tunnel_bp.route('/<name>', methods=['PUT'])
def configure_tunnel(name):
    """
    Configure a tunnel created earlier.

    Request Body (JSON):
        - addresses (list): Tunnel addresses with prefix length
        - listen_port (int, optional), dns (list, optional), mtu (int, optional)
        - peers (list): public_key, allowed_ips, endpoint, preshared_key, persistent_keepalive
    """
    control = get_control()
    tunnel = control.tunnels.build_config(name, json_body())
    control.roles.check(name, 'tunnel')
    return submit_task(name, 'tunnel-configure',
                       lambda cancel_event: control.tunnels.configure(tunnel, cancel_event))


@tunnel_bp.route('/<name>/import', methods=['POST'])
def import_tunnel(name):
    """Import a wg-quick configuration passed as {"config": "<file content>"}"""
    data = json_body()
    content = data.get('config')
    if not isinstance(content, str) or not content.strip():
        raise ValidationError('config', 'config must be the text of a wg-quick file')
    control = get_control()
    tunnel = control.tunnels.parse_import(name, content)
    control.roles.check(name, 'tunnel')
    return submit_task(name, 'tunnel-import',
                       lambda cancel_event: control.tunnels.configure(tunnel, cancel_event))


@tunnel_bp.route('/<name>', methods=['DELETE'])
def teardown_tunnel(name):
    validate_interface_name(name, 'name')
    control = get_control()
    control.roles.check(name, 'tunnel')
    return submit_task(name, 'tunnel-teardown',
                       lambda cancel_event: control.tunnels.teardown(name, cancel_event), supersede=True)


@tunnel_bp.route('/<name>', methods=['GET'])
def get_tunnel_status(name):
    """Runtime status from `wg show`: handshakes, transfer counters, endpoints"""
    return jsonify(get_control().tunnels.status(name).to_dict())


@tunnel_bp.route('/public-key', methods=['POST'])
def derive_public_key():
    """Derive the public key for {"private_key": ...}"""
    private_key = json_body().get('private_key')
    return jsonify({'public_key': get_control().tunnels.public_key(private_key)})
