"""
Transfer API v1 - HTTP endpoints over the TransferManager command surface
"""

import json
import logging
from datetime import datetime
from typing import Optional

from flask import Blueprint, Flask, Response, jsonify, request, stream_with_context
from flask_cors import CORS

from .engine_runner import EngineRunner
from .errors import (
    BridgeError, ConnectError, LocalIOError, NotFoundError, TransferError, UnsupportedOperation,
)
from .models import ConnectionConfig
from ..utils.log_init import get_log_directory_info

logger = logging.getLogger(__name__)

transfer_bp = Blueprint('transfer', __name__, url_prefix='/api/v1')

# Local HTTP origins, any port
ALLOWED_ORIGINS = [
    r"http://localhost(:\d+)?",
    r"http://127\.0\.0\.1(:\d+)?",
]

ERROR_STATUS = [
    (ConnectError, 502),
    (NotFoundError, 404),
    (UnsupportedOperation, 501),
    (TransferError, 500),
    (LocalIOError, 500),
]

_runner: Optional[EngineRunner] = None


def set_runner(runner: EngineRunner):
    global _runner
    _runner = runner


def get_runner() -> EngineRunner:
    """Get or start the global engine runner."""
    global _runner
    if _runner is None:
        _runner = EngineRunner().start()
    return _runner


def _manager():
    return get_runner().manager


def _call(coro):
    return get_runner().call(coro)


def _body(*required) -> dict:
    data = request.get_json(silent=True) or {}
    for field in required:
        if data.get(field) in (None, ''):
            raise ValueError(f"Missing required field: {field}")
    return data


def _cap(data: dict) -> Optional[int]:
    cap = data.get('bytes_per_second', data.get('bytesPerSecond'))
    if cap is None:
        return None
    if isinstance(cap, bool):
        raise ValueError(f"Invalid speed limit: {cap!r}")
    try:
        return int(cap)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid speed limit: {cap!r}")


@transfer_bp.errorhandler(BridgeError)
def handle_bridge_error(e: BridgeError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(e, cls)), 500)
    if status >= 500:
        logger.error(f"{e.error_type}: {e.message}")
    return jsonify({'success': False, **e.to_dict()}), status


@transfer_bp.errorhandler(ValueError)
def handle_value_error(e: ValueError):
    return jsonify({'success': False, 'error': str(e), 'error_type': 'ValidationError'}), 400


def _transition_response(ok: bool, transfer_id: int, action: str):
    if ok:
        return jsonify({'success': True, 'transfer_id': transfer_id})
    item = _call(_manager().get_transfer(transfer_id))
    return jsonify({
        'success': False,
        'error': f"Cannot {action} transfer {transfer_id} in status {item.status.value}",
        'error_type': 'InvalidTransition',
    }), 409


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------

@transfer_bp.route('/sessions', methods=['POST'])
def connect():
    """
    Open a session.

    Request body:
    {
        "protocol": "ftp|ftps|sftp",
        "host": "ftp.example.com",
        "port": 21,
        "username": "user",
        "password": "secret",
        "privateKeyPath": "/home/user/.ssh/id_ed25519",
        "passphrase": null,
        "preserveTimestamps": false
    }

    Returns:
    {
        "success": true,
        "session_id": "3f2a..."
    }
    """
    config = ConnectionConfig.from_dict(_body('host'))
    session_id = _call(_manager().connect(config))
    return jsonify({'success': True, 'session_id': session_id})


@transfer_bp.route('/sessions', methods=['GET'])
def list_sessions():
    return jsonify({'success': True, 'sessions': _call(_manager().list_sessions())})


@transfer_bp.route('/sessions/<session_id>', methods=['DELETE'])
def disconnect(session_id):
    _call(_manager().disconnect(session_id))
    return jsonify({'success': True, 'message': f'Session {session_id} disconnected'})


@transfer_bp.route('/sessions/<session_id>/files', methods=['GET'])
def list_directory(session_id):
    path = request.args.get('path', '/')
    entries = _call(_manager().list_directory(session_id, path))
    return jsonify({'success': True, 'path': path, 'files': [e.to_dict() for e in entries]})


@transfer_bp.route('/sessions/<session_id>/stat', methods=['GET'])
def stat(session_id):
    path = request.args.get('path')
    if not path:
        raise ValueError("Missing required parameter: path")
    entry = _call(_manager().stat(session_id, path))
    return jsonify({'success': True, 'entry': entry.to_dict()})


@transfer_bp.route('/sessions/<session_id>/rename', methods=['POST'])
def rename(session_id):
    data = _body('old_path', 'new_path')
    _call(_manager().rename(session_id, data['old_path'], data['new_path']))
    return jsonify({'success': True})


@transfer_bp.route('/sessions/<session_id>/delete', methods=['POST'])
def delete(session_id):
    data = _body('path')
    _call(_manager().delete(session_id, data['path']))
    return jsonify({'success': True})


@transfer_bp.route('/sessions/<session_id>/chmod', methods=['POST'])
def chmod(session_id):
    data = _body('path', 'mode')
    _call(_manager().chmod(session_id, data['path'], data['mode']))
    return jsonify({'success': True})


@transfer_bp.route('/sessions/<session_id>/mkdir', methods=['POST'])
def mkdir(session_id):
    data = _body('path')
    _call(_manager().mkdir(session_id, data['path']))
    return jsonify({'success': True})


@transfer_bp.route('/sessions/<session_id>/preview', methods=['POST'])
def preview(session_id):
    data = _body('path')
    result = _call(_manager().preview_file(session_id, data['path']))
    return jsonify({'success': True, **result})


@transfer_bp.route('/sessions/<session_id>/limits', methods=['GET'])
def get_limits(session_id):
    limits = _call(_manager().get_speed_limits(session_id))
    return jsonify({'success': True, 'limits': limits})


@transfer_bp.route('/sessions/<session_id>/limits', methods=['PUT'])
def set_limit(session_id):
    """
    Set a per-connection speed limit.

    Request body:
    {
        "direction": "upload|download",
        "bytes_per_second": 1048576   (null or 0 clears the limit)
    }
    """
    data = _body('direction')
    manager = _manager()
    _call(manager.set_speed_limit(session_id, data['direction'], _cap(data)))
    return jsonify({'success': True, 'limits': _call(manager.get_speed_limits(session_id))})


@transfer_bp.route('/limits/global', methods=['PUT'])
def set_global_limit():
    data = _body('direction')
    _call(_manager().set_global_speed_limit(data['direction'], _cap(data)))
    return jsonify({'success': True})


# ----------------------------------------------------------------------
# Transfers
# ----------------------------------------------------------------------

@transfer_bp.route('/transfers/upload', methods=['POST'])
def upload():
    """
    Queue an upload.

    Request body:
    {
        "session_id": "3f2a...",
        "local_path": "/home/user/report.pdf",
        "remote_path": "/incoming/report.pdf"
    }

    With "compress": true, local_path (file or folder) is packed into a
    temporary .gz / .tar.gz archive and uploaded into "remote_dir".
    """
    data = _body('session_id', 'local_path')
    manager = _manager()
    if data.get('compress'):
        if not data.get('remote_dir'):
            raise ValueError("Missing required field: remote_dir")
        result = _call(manager.upload_compressed(data['session_id'], data['local_path'], data['remote_dir']))
        return jsonify({'success': True, **result})
    if not data.get('remote_path'):
        raise ValueError("Missing required field: remote_path")
    transfer_id = _call(manager.upload(data['session_id'], data['local_path'], data['remote_path']))
    return jsonify({'success': True, 'transfer_id': transfer_id})


@transfer_bp.route('/transfers/download', methods=['POST'])
def download():
    data = _body('session_id', 'remote_path', 'local_path')
    transfer_id = _call(_manager().download(data['session_id'], data['remote_path'], data['local_path']))
    return jsonify({'success': True, 'transfer_id': transfer_id})


@transfer_bp.route('/transfers', methods=['GET'])
def list_transfers():
    items = _call(_manager().list_transfers())
    return jsonify({'success': True, 'transfers': [item.to_dict() for item in items]})


@transfer_bp.route('/transfers/<int:transfer_id>', methods=['GET'])
def get_transfer(transfer_id):
    item = _call(_manager().get_transfer(transfer_id))
    return jsonify({'success': True, 'transfer': item.to_dict()})


@transfer_bp.route('/transfers/<int:transfer_id>/pause', methods=['POST'])
def pause_transfer(transfer_id):
    return _transition_response(_call(_manager().pause_transfer(transfer_id)), transfer_id, 'pause')


@transfer_bp.route('/transfers/<int:transfer_id>/resume', methods=['POST'])
def resume_transfer(transfer_id):
    return _transition_response(_call(_manager().resume_transfer(transfer_id)), transfer_id, 'resume')


@transfer_bp.route('/transfers/<int:transfer_id>/cancel', methods=['POST'])
def cancel_transfer(transfer_id):
    return _transition_response(_call(_manager().cancel_transfer(transfer_id)), transfer_id, 'cancel')


@transfer_bp.route('/transfers/pause-all', methods=['POST'])
def pause_all():
    return jsonify({'success': True, 'paused': _call(_manager().pause_all())})


@transfer_bp.route('/transfers/resume-all', methods=['POST'])
def resume_all():
    return jsonify({'success': True, 'resumed': _call(_manager().resume_all())})


@transfer_bp.route('/transfers/clear', methods=['POST'])
def clear_completed():
    return jsonify({'success': True, 'cleared': _call(_manager().clear_completed())})


async def _open_stream(manager, transfer_id: int):
    return manager.progress(transfer_id)


async def _next_event(stream):
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


async def _close_stream(stream):
    await stream.aclose()


@transfer_bp.route('/transfers/<int:transfer_id>/events', methods=['GET'])
def transfer_events(transfer_id):
    """
    Stream progress as newline-delimited JSON.

    The first line is the transfer snapshot, then one line per progress
    event, and a final snapshot once the transfer reaches a terminal status.
    """
    runner = get_runner()
    manager = runner.manager
    item = runner.call(manager.get_transfer(transfer_id))
    stream = runner.call(_open_stream(manager, transfer_id))

    def generate():
        try:
            yield json.dumps({'transfer': item.to_dict()}) + '\n'
            while True:
                event = runner.call(_next_event(stream))
                if event is None:
                    break
                yield json.dumps({'progress': event.to_dict()}) + '\n'
            final = runner.call(manager.get_transfer(transfer_id))
            yield json.dumps({'transfer': final.to_dict()}) + '\n'
        finally:
            runner.call(_close_stream(stream))

    return Response(stream_with_context(generate()), mimetype='application/x-ndjson')


# ----------------------------------------------------------------------
# Activity log and health
# ----------------------------------------------------------------------

def _activity_date() -> Optional[datetime]:
    date = request.args.get('date')
    try:
        return datetime.strptime(date, '%Y%m%d') if date else None
    except ValueError:
        raise ValueError(f"Invalid date {date!r}, expected YYYYMMDD")


@transfer_bp.route('/activity', methods=['GET'])
def get_activity():
    activity_log = _manager().activity_log
    if activity_log is None:
        return jsonify({'success': True, 'entries': []})
    entries = activity_log.get_entries(event_type=request.args.get('type'), date=_activity_date())
    return jsonify({'success': True, 'entries': entries})


@transfer_bp.route('/activity/export', methods=['GET'])
def export_activity():
    """Download one day of activity as plain text."""
    activity_log = _manager().activity_log
    day = _activity_date()
    text = activity_log.export_text(day) if activity_log is not None else ''
    filename = f"activity_{(day or datetime.now()).strftime('%Y%m%d')}.txt"
    return Response(text, mimetype='text/plain',
                    headers={'Content-Disposition': f'attachment; filename={filename}'})


@transfer_bp.route('/logs/info', methods=['GET'])
def get_log_info():
    """Get log directory information and status"""
    activity_log = _manager().activity_log
    if activity_log is None:
        return jsonify({'success': True, 'configured': False})
    return jsonify({'success': True, 'configured': True, **get_log_directory_info(activity_log.log_base)})


@transfer_bp.route('/activity', methods=['DELETE'])
def clear_activity():
    activity_log = _manager().activity_log
    if activity_log is not None:
        activity_log.clear()
    return jsonify({'success': True})


@transfer_bp.route('/health', methods=['GET'])
def health():
    manager = _manager()
    return jsonify({
        'success': True,
        'status': 'healthy',
        'sessions': len(manager.sessions.list()),
        'active_transfers': manager.queue.active_count(),
        'queue_paused': manager.queue.paused,
        'timestamp': datetime.now().isoformat(),
    })


def create_app(runner: Optional[EngineRunner] = None) -> Flask:
    """Build the Flask app with CORS and the transfer blueprint registered."""
    app = Flask(__name__)
    CORS(
        app,
        resources={r"/api/*": {"origins": ALLOWED_ORIGINS}},
        supports_credentials=False,
        methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    # Private Network Access header for Chromium-based apps
    @app.after_request
    def add_pna_header(resp):
        if resp.headers.get("Access-Control-Allow-Origin"):
            resp.headers["Access-Control-Allow-Private-Network"] = "true"
        return resp

    if runner is not None:
        set_runner(runner)
    app.register_blueprint(transfer_bp)
    logger.info("Registered Transfer API v1")
    return app
