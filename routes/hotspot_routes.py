from flask import Blueprint, jsonify
from routes.route_utils import get_control, json_body, submit_task
from utils.validators import hotspot_config_from_dict, validate_interface_name
import logging

logger = logging.getLogger(__name__)

hotspot_bp = Blueprint('hotspot', __name__, url_prefix='/api/hotspot')


@hotspot_bp.route('', methods=['GET'])
def list_hotspots():
    """Status of every active hotspot"""
    hotspots = get_control().hotspots
    return jsonify([hotspots.status(interface).to_dict() for interface in hotspots.active_interfaces()])


@hotspot_bp.route('/<interface_name>', methods=['GET'])
def get_hotspot(interface_name):
    validate_interface_name(interface_name)
    return jsonify(get_control().hotspots.status(interface_name).to_dict())


@hotspot_bp.route('/<interface_name>', methods=['POST'])
def start_hotspot(interface_name):
    """
    Start an access point.

    Request Body (JSON):
        - ssid (str): 1-32 bytes
        - password (str): 8-63 characters
        - channel (int, optional): 1-11 or a 5GHz channel, default 6
        - gateway (str, optional): IPv4 address of the access point, default 192.168.4.1
        - prefix_length (int, optional): default 24
        - upstream (str, optional): Interface to share through NAT; when omitted the
          interface holding the default route is used, null disables NAT

    Returns:
        202 with the task record; bad input or a non-wireless interface is rejected
        with 400 before anything runs
    """
    validate_interface_name(interface_name)
    hotspot = hotspot_config_from_dict(interface_name, json_body())
    control = get_control()
    control.hotspots.require_wireless(interface_name)
    control.roles.check(interface_name, 'hotspot')
    logger.info(f"Hotspot start requested: {hotspot!r}")
    return submit_task(interface_name, 'hotspot-start',
                       lambda cancel_event: control.hotspots.start(hotspot, cancel_event), supersede=True)


@hotspot_bp.route('/<interface_name>', methods=['DELETE'])
def stop_hotspot(interface_name):
    validate_interface_name(interface_name)
    control = get_control()
    control.roles.check(interface_name, 'hotspot')
    return submit_task(interface_name, 'hotspot-stop',
                       lambda cancel_event: control.hotspots.stop(interface_name), supersede=True)
