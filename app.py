import sys
import atexit
import signal
import logging
import argparse
from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError
from routes.network_routes import network_bp
from routes.wifi_routes import wifi_bp
from routes.hotspot_routes import hotspot_bp
from routes.tunnel_routes import tunnel_bp
from routes.task_routes import task_bp
from services.control_loop import ControlLoop
from services.file_service import UnitStore
from services.interface_registry import InterfaceRegistry
from services.system_service import check_prerequisites
from utils.exceptions import (
    ConflictError, ConvergenceTimeout, ExternalToolError, InvalidTransition, LanternError,
    OperationCancelled, StartupError, ValidationError
)
import config

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, 400),
    (ConflictError, 409),
    (InvalidTransition, 409),
    (OperationCancelled, 409),
    (ExternalToolError, 502),
    (ConvergenceTimeout, 202),
)


def setup_logging():
    handlers = [logging.StreamHandler(sys.stdout)]
    if config.LOG_FILE:
        handlers.append(logging.FileHandler(config.LOG_FILE, mode='a'))
    logging.basicConfig(
        level=logging.DEBUG if config.DEBUG else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def create_app(control=None):
    """
    Create and configure the Flask application

    Args:
        control: ControlLoop to serve; a new one is created and started when omitted
    """
    app = Flask(__name__)

    if control is None:
        control = ControlLoop()
        control.start()
    app.extensions['lantern'] = control

    # Register blueprints
    app.register_blueprint(network_bp)
    app.register_blueprint(wifi_bp)
    app.register_blueprint(hotspot_bp)
    app.register_blueprint(tunnel_bp)
    app.register_blueprint(task_bp)

    # Error handlers
    @app.errorhandler(LanternError)
    def lantern_error(error):
        for error_type, status in ERROR_STATUS:
            if isinstance(error, error_type):
                break
        else:
            status = 500
        if status >= 500:
            logger.error(f"Request failed: {error}")
        return jsonify(error.to_dict()), status

    @app.errorhandler(SQLAlchemyError)
    def database_error(error):
        logger.error(f"Credential database error: {error}")
        return jsonify({'error': 'Credential database error'}), 500

    @app.errorhandler(404)
    def not_found(error):
        return {'error': 'Not found'}, 404

    @app.errorhandler(500)
    def server_error(error):
        logger.exception("An error occurred during a request.")
        return {'error': 'Internal server error'}, 500

    @app.route('/api/health', methods=['GET'])
    def health_check():
        """全局健康检查接口"""
        status = app.extensions['lantern'].status()
        status['status'] = 'degraded' if status['snapshot_stale'] else 'healthy'
        status['version'] = config.VERSION
        return jsonify(status), 200

    logger.info("Flask应用创建完成")
    logger.info(f"Unit directory: {config.NETWORK_CONFIG_DIR}")
    return app


def setup_graceful_shutdown(control):
    """
    设置优雅关闭处理程序
    确保在应用关闭时正确停止所有服务
    """

    def cleanup():
        logger.info("应用关闭，开始清理资源...")
        control.stop()
        logger.info("资源清理完成")

    atexit.register(cleanup)

    def signal_handler(signum, frame):
        logger.info(f"接收到信号 {signum}，开始优雅关闭...")
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def list_interfaces(out=sys.stdout):
    """Print the live interface table and exit, without starting the API"""
    registry = InterfaceRegistry(UnitStore())
    snapshot = registry.refresh()
    registry.stop()
    if snapshot.stale:
        raise StartupError([f"could not read interfaces: {snapshot.error}"])

    out.write(f"{'NAME':<16}{'KIND':<10}{'ADMIN':<7}{'OPER':<12}{'MAC':<19}ADDRESSES\n")
    for interface in snapshot.interfaces:
        out.write(f"{interface.name:<16}{interface.kind.value:<10}{'up' if interface.admin_up else 'down':<7}"
                  f"{interface.oper_state:<12}{interface.mac_address or '-':<19}"
                  f"{', '.join(interface.addresses) or '-'}\n")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='lantern',
                                     description='Declarative manager for systemd-networkd interfaces')
    parser.add_argument('--version', action='version', version=f'%(prog)s {config.VERSION}')
    parser.add_argument('--list', action='store_true', help='print interfaces and exit')
    parser.add_argument('--host', default=config.HOST, help=f'API listen address (default {config.HOST})')
    parser.add_argument('--port', type=int, default=config.PORT, help=f'API listen port (default {config.PORT})')
    parser.add_argument('--skip-checks', action='store_true', help='skip the root and required tool checks')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging()
    config.validate_config()

    try:
        if args.list:
            list_interfaces()
            return 0

        if not args.skip_checks:
            problems = check_prerequisites()
            if problems:
                raise StartupError(problems)

        control = ControlLoop()
        control.start()
        setup_graceful_shutdown(control)
        app = create_app(control)
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        return 1

    logger.info(f"启动Flask应用: {args.host}:{args.port}")
    logger.info(f"调试模式: {config.DEBUG}")
    app.run(host=args.host, port=args.port, debug=config.DEBUG, threaded=True, use_reloader=False)
    return 0


if __name__ == '__main__':
    sys.exit(main())
