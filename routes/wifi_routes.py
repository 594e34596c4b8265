from flask import Blueprint, jsonify
from models.wifi_models import SecurityClass
from routes.route_utils import get_control, json_body, submit_task
from utils.exceptions import ValidationError
from utils.validators import credential_from_dict
import logging

logger = logging.getLogger(__name__)

wifi_bp = Blueprint('wifi', __name__, url_prefix='/api/wifi')


def _controller(interface_name):
    controller = get_control().wifi(interface_name)
    if controller is None:
        return None, (jsonify({'error': f'Interface {interface_name} not found'}), 404)
    return controller, None


def _security(value):
    if value is None:
        return None
    try:
        return SecurityClass(value)
    except ValueError:
        raise ValidationError('security', f"unknown security class {value!r}")


@wifi_bp.route('/interfaces', methods=['GET'])
def list_wifi_interfaces():
    """Wireless interfaces and the state of their WiFi client"""
    control = get_control()
    result = []
    for name in control.wifi_interfaces():
        controller = control.wifi(name)
        result.append(controller.status().to_dict())
    return jsonify(result)


@wifi_bp.route('/interfaces/<interface_name>', methods=['GET'])
def get_wifi_status(interface_name):
    controller, error = _controller(interface_name)
    if error:
        return error
    data = controller.status().to_dict()
    data['history'] = controller.history_dicts()
    data['owner'] = get_control().roles.owner(interface_name)
    return jsonify(data)


@wifi_bp.route('/interfaces/<interface_name>/scan', methods=['POST'])
def scan_networks(interface_name):
    """Start a scan; the task result lists the networks found"""
    controller, error = _controller(interface_name)
    if error:
        return error
    return submit_task(interface_name, 'wifi-scan',
                       lambda cancel_event: [n.to_dict() for n in controller.scan(cancel_event)])


@wifi_bp.route('/interfaces/<interface_name>/networks', methods=['GET'])
def list_networks(interface_name):
    """Networks from the most recent scan, strongest first"""
    controller, error = _controller(interface_name)
    if error:
        return error
    return jsonify([network.to_dict() for network in controller.status().networks])


@wifi_bp.route('/interfaces/<interface_name>/select', methods=['POST'])
def select_network(interface_name):
    """
    Select a scanned network.

    Request Body (JSON):
        - ssid (str): Network name
        - security (str, optional): Security class when the SSID is listed more than once
    """
    controller, error = _controller(interface_name)
    if error:
        return error
    data = json_body()
    ssid = data.get('ssid')
    if not isinstance(ssid, str) or not ssid:
        raise ValidationError('ssid', 'ssid is required')
    security = _security(data.get('security'))
    return submit_task(interface_name, 'wifi-select',
                       lambda cancel_event: {'state': controller.select(ssid, security, cancel_event).value},
                       supersede=True)


@wifi_bp.route('/interfaces/<interface_name>/connect', methods=['POST'])
def connect_network(interface_name):
    """
    Provide the credential for the selected network and connect.

    Request Body (JSON): credential fields (ssid, security, password or
    enterprise fields) plus optional save (bool, default true)
    """
    controller, error = _controller(interface_name)
    if error:
        return error
    data = json_body()
    credential = credential_from_dict(data)
    save = bool(data.get('save', True))
    get_control().roles.check(interface_name, 'wifi-client')
    return submit_task(interface_name, 'wifi-connect',
                       lambda cancel_event: {'state': controller.provide_credential(
                           credential, save=save, cancel_event=cancel_event).value},
                       supersede=True)


@wifi_bp.route('/interfaces/<interface_name>/hidden', methods=['POST'])
def connect_hidden_network(interface_name):
    """Connect to a network that does not broadcast its SSID"""
    controller, error = _controller(interface_name)
    if error:
        return error
    data = json_body()
    credential = credential_from_dict(data)
    save = bool(data.get('save', True))
    get_control().roles.check(interface_name, 'wifi-client')
    return submit_task(interface_name, 'wifi-connect-hidden',
                       lambda cancel_event: {'state': controller.connect_hidden(
                           credential, save=save, cancel_event=cancel_event).value},
                       supersede=True)


@wifi_bp.route('/interfaces/<interface_name>/disconnect', methods=['POST'])
def disconnect_network(interface_name):
    controller, error = _controller(interface_name)
    if error:
        return error
    return submit_task(interface_name, 'wifi-disconnect',
                       lambda cancel_event: {'state': controller.disconnect(cancel_event).value},
                       supersede=True)


@wifi_bp.route('/interfaces/<interface_name>/diagnostics', methods=['GET'])
def get_diagnostics(interface_name):
    """Refresh link diagnostics of a connected interface"""
    controller, error = _controller(interface_name)
    if error:
        return error
    return jsonify(controller.diagnostics().to_dict())


@wifi_bp.route('/credentials', methods=['GET'])
def list_credentials():
    """Saved credentials in auto-connect order, without secrets"""
    return jsonify([credential.to_dict() for credential in get_control().credentials.list_credentials()])


@wifi_bp.route('/credentials', methods=['POST'])
def save_credential():
    credential = get_control().credentials.save(credential_from_dict(json_body()))
    return jsonify(credential.to_dict()), 201


@wifi_bp.route('/credentials/<ssid>', methods=['GET'])
def get_credential(ssid):
    credential = get_control().credentials.get(ssid)
    if credential is None:
        return jsonify({'error': f'No credential saved for {ssid}'}), 404
    return jsonify(credential.to_dict())


@wifi_bp.route('/credentials/<ssid>', methods=['DELETE'])
def delete_credential(ssid):
    if not get_control().credentials.delete(ssid):
        return jsonify({'error': f'No credential saved for {ssid}'}), 404
    return jsonify({'message': f'Credential for {ssid} deleted'}), 200


@wifi_bp.route('/auto-connect', methods=['POST'])
def trigger_auto_connect():
    """Queue an auto-connect attempt on idle wireless interfaces now"""
    queued = get_control().auto_connect_tick()
    logger.info(f"Manual auto-connect queued for {queued}")
    return jsonify({'queued': queued}), 202 if queued else 200
