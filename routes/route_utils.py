from dataclasses import asdict
from typing import Any, Callable, Dict

from flask import current_app, jsonify, request

from services.control_loop import ControlLoop
from utils.exceptions import ValidationError


def get_control() -> ControlLoop:
    return current_app.extensions['lantern']


def json_body() -> Dict[str, Any]:
    """JSON object of the request, ValidationError otherwise."""
    if not request.is_json:
        raise ValidationError('body', 'Request must be JSON')
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('body', 'Request body must be a JSON object')
    return data


def submit_task(interface: str, kind: str, func: Callable, supersede: bool = False):
    """Queue func on the interface and answer 202 with the task record."""
    task = get_control().tasks.submit(interface, kind, func, supersede=supersede)
    return jsonify(task.to_dict()), 202


def action_to_dict(action) -> Dict[str, Any]:
    data = asdict(action)
    data['action'] = type(action).__name__
    return data
