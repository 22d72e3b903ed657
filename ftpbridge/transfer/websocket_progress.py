"""
WebSocket support for real-time transfer progress
"""

import logging
from flask_socketio import SocketIO, emit, join_room, leave_room

from .models import ProgressEvent, TransferItem
from .progress import ProgressManager

logger = logging.getLogger(__name__)

NAMESPACE = '/transfers'


def _room(transfer_id) -> str:
    return f"transfer_{transfer_id}"


def init_socketio(app):
    """Initialize Flask-SocketIO with the app."""
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')

    @socketio.on('subscribe_progress', namespace=NAMESPACE)
    def handle_subscribe(data):
        """Client subscribes to progress updates for one transfer."""
        transfer_id = (data or {}).get('transfer_id')
        if transfer_id is not None:
            join_room(_room(transfer_id))
            emit('subscribed', {'transfer_id': transfer_id})
            logger.info(f"Client subscribed to transfer progress: {transfer_id}")
        else:
            emit('error', {'message': 'transfer_id required'})

    @socketio.on('unsubscribe_progress', namespace=NAMESPACE)
    def handle_unsubscribe(data):
        """Client unsubscribes from progress updates."""
        transfer_id = (data or {}).get('transfer_id')
        if transfer_id is not None:
            leave_room(_room(transfer_id))
            emit('unsubscribed', {'transfer_id': transfer_id})
            logger.info(f"Client unsubscribed from transfer progress: {transfer_id}")

    @socketio.on('connect', namespace=NAMESPACE)
    def handle_connect():
        logger.info("Client connected to transfer websocket")
        emit('connected', {'message': 'Connected to transfer progress stream'})

    @socketio.on('disconnect', namespace=NAMESPACE)
    def handle_disconnect():
        logger.info("Client disconnected from transfer websocket")

    logger.info("Flask-SocketIO initialized")
    return socketio


class WebSocketProgressReporter:
    """Report progress and status changes via WebSocket."""

    def __init__(self, socketio: SocketIO):
        self.socketio = socketio

    def attach(self, progress_manager: ProgressManager):
        progress_manager.register_callback(self.report_progress)
        progress_manager.register_status_callback(self.report_status)

    def report_progress(self, event: ProgressEvent):
        """Emit a progress event to the transfer's room."""
        if self.socketio:
            try:
                self.socketio.emit(
                    'transfer_progress',
                    event.to_dict(),
                    namespace=NAMESPACE,
                    room=_room(event.transfer_id)
                )
            except Exception as e:
                logger.error(f"Failed to emit progress via WebSocket: {e}")

    def report_status(self, item: TransferItem):
        """Broadcast a status change to every client in the namespace."""
        if self.socketio:
            try:
                self.socketio.emit('transfer_status', item.to_dict(), namespace=NAMESPACE)
            except Exception as e:
                logger.error(f"Failed to emit status via WebSocket: {e}")
