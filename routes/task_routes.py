from flask import Blueprint, jsonify, request
from routes.route_utils import get_control
import logging

logger = logging.getLogger(__name__)

task_bp = Blueprint('task', __name__, url_prefix='/api/tasks')


@task_bp.route('', methods=['GET'])
def list_tasks():
    """Recent tasks, optionally filtered with ?interface=<name>"""
    interface = request.args.get('interface')
    return jsonify([task.to_dict() for task in get_control().tasks.list_tasks(interface)])


@task_bp.route('/<task_id>', methods=['GET'])
def get_task(task_id):
    task = get_control().tasks.get(task_id)
    if task is None:
        return jsonify({'error': f'Task {task_id} not found'}), 404
    return jsonify(task.to_dict())


@task_bp.route('/<task_id>/cancel', methods=['POST'])
def cancel_task(task_id):
    """Request cancellation; a running task stops at its next wait"""
    task = get_control().tasks.get(task_id)
    if task is None:
        return jsonify({'error': f'Task {task_id} not found'}), 404
    if not task.finished:
        task.cancel_event.set()
        logger.info(f"Cancellation requested for task {task_id}")
    return jsonify(task.to_dict()), 202
