from flask import Blueprint, jsonify
from routes.route_utils import action_to_dict, get_control, json_body, submit_task
from utils.exceptions import ValidationError
from utils.validators import desired_config_from_dict, validate_interface_name
import logging

logger = logging.getLogger(__name__)

network_bp = Blueprint('network', __name__, url_prefix='/api/network')


@network_bp.route('/interfaces', methods=['GET'])
def get_interfaces():
    """Get all network interfaces"""
    return jsonify(get_control().registry.snapshot().to_dict())


@network_bp.route('/interfaces/<interface_name>', methods=['GET'])
def get_interface_details(interface_name):
    """Get details for a specific network interface"""
    interface = get_control().registry.get(interface_name)

    if not interface:
        return jsonify({'error': f'Interface {interface_name} not found'}), 404

    return jsonify(interface.to_dict())


@network_bp.route('/interfaces/<interface_name>', methods=['POST'])
def configure_network_interface(interface_name):
    """
    Apply a desired configuration to a wired interface.

    Request Body (JSON):
        - dhcp (str): yes, ipv4, ipv6 or no
        - ipv4_addresses / ipv6_addresses (list): Addresses with prefix length
        - ipv4_gateway / ipv6_gateway (str): Gateways
        - dns (list): DNS servers
        - mtu (int), required_for_online (bool), ipv6_accept_ra (bool)

    Returns:
        202 with the task record; the task result is the ApplyResult
        409 if a WiFi client, hotspot or tunnel owns the interface
    """
    validate_interface_name(interface_name)
    desired = desired_config_from_dict(json_body())
    control = get_control()
    if control.registry.get(interface_name) is None and control.registry.refresh().get(interface_name) is None:
        return jsonify({'error': f'Interface {interface_name} not found'}), 404
    control.roles.check(interface_name, 'wired')

    logger.info(f"Apply requested for {interface_name}: {desired.to_dict()}")
    return submit_task(interface_name, 'apply',
                       lambda cancel_event: control.reconciler.apply(interface_name, desired,
                                                                     cancel_event=cancel_event))


@network_bp.route('/interfaces/<interface_name>/plan', methods=['POST'])
def plan_network_interface(interface_name):
    """Show the actions an apply would take, without changing anything"""
    validate_interface_name(interface_name)
    desired = desired_config_from_dict(json_body())
    actions = get_control().reconciler.plan(interface_name, desired)
    return jsonify({'interface': interface_name, 'actions': [action_to_dict(action) for action in actions]})


@network_bp.route('/interfaces/<interface_name>', methods=['DELETE'])
def remove_network_interface(interface_name):
    """Delete every unit configuring the interface"""
    validate_interface_name(interface_name)
    control = get_control()
    control.roles.check(interface_name, 'wired')
    return submit_task(interface_name, 'remove',
                       lambda cancel_event: control.reconciler.remove(interface_name, cancel_event=cancel_event))


@network_bp.route('/interfaces/<interface_name>/link', methods=['POST'])
def set_interface_link(interface_name):
    """
    Bring an interface up or down.

    Request Body (JSON):
        - up (bool): Desired administrative state

    Returns:
        202 with the task record; the task result is the live interface
    """
    validate_interface_name(interface_name)
    up = json_body().get('up')
    if not isinstance(up, bool):
        raise ValidationError('up', 'up must be true or false')
    control = get_control()
    if control.registry.get(interface_name) is None and control.registry.refresh().get(interface_name) is None:
        return jsonify({'error': f'Interface {interface_name} not found'}), 404

    logger.info(f"Link {'up' if up else 'down'} requested for {interface_name}")
    return submit_task(interface_name, 'link',
                       lambda cancel_event: control.reconciler.set_link(interface_name, up,
                                                                        cancel_event=cancel_event))


@network_bp.route('/units', methods=['GET'])
def list_units():
    """List persisted unit files"""
    return jsonify(get_control().store.find_unit_files())


@network_bp.route('/reload', methods=['POST'])
def reload_network():
    """Reload networkd configuration"""
    get_control().gateway.reload_networkd()
    return jsonify({'message': 'Network configuration reloaded successfully'}), 200
