#!/usr/bin/env python3
"""
Run the ftpbridge transfer API server
"""

import argparse
import logging
import os
import sys

from ftpbridge.transfer.engine_runner import EngineRunner
from ftpbridge.transfer.transfer_api import create_app
from ftpbridge.transfer.websocket_progress import WebSocketProgressReporter, init_socketio
from ftpbridge.utils.activity_log import ActivityLog
from ftpbridge.utils.config_loader import load_settings
from ftpbridge.utils.log_init import ensure_all_log_directories

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description='FTP/FTPS/SFTP transfer engine HTTP API')
    parser.add_argument('--host', default='127.0.0.1', help='Interface to bind (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=5000, help='Port to listen on (default: 5000)')
    parser.add_argument('--config', help='Path to config.yaml (default: FTPBRIDGE_CONFIG_PATH, ./config.yaml)')
    args = parser.parse_args()

    try:
        settings = load_settings(args.config)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    ensure_all_log_directories(settings.log_base)
    activity_log = ActivityLog(settings.log_base, settings.activity_log_max_entries)
    activity_log.add('info', 'Transfer API started', {'pid': os.getpid(), 'log_base': settings.log_base})

    runner = EngineRunner(settings, activity_log).start()
    app = create_app(runner)
    socketio = init_socketio(app)
    WebSocketProgressReporter(socketio).attach(runner.manager.progress_manager)

    logger.info(f"Starting transfer API on {args.host}:{args.port}")
    try:
        socketio.run(app, host=args.host, port=args.port, allow_unsafe_werkzeug=True)
    finally:
        runner.stop()
        activity_log.add('info', 'Transfer API stopped', {'pid': os.getpid()})
    return 0


if __name__ == '__main__':
    sys.exit(main())
