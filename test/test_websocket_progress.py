#!/usr/bin/env python3
"""
Tests for Socket.IO transfer progress reporting
"""

import os
import sys
import unittest
from unittest.mock import MagicMock

from flask import Flask

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ftpbridge.transfer.models import ProgressEvent, TransferDirection, TransferItem
from ftpbridge.transfer.progress import ProgressManager
from ftpbridge.transfer.websocket_progress import NAMESPACE, WebSocketProgressReporter, init_socketio


def make_item(transfer_id=7):
    return TransferItem(
        id=transfer_id,
        direction=TransferDirection.DOWNLOAD,
        local_path='/tmp/a.bin',
        remote_path='/a.bin',
        session_id='s1',
        file_name='a.bin',
        size=100,
    )


class TestWebSocketProgressReporter(unittest.TestCase):

    def test_progress_emitted_to_transfer_room(self):
        socketio = MagicMock()
        reporter = WebSocketProgressReporter(socketio)
        event = ProgressEvent(transfer_id=7, percent=40, transferred=40, total=100, speed=10.0, applied_cap=1024)

        reporter.report_progress(event)

        socketio.emit.assert_called_once_with(
            'transfer_progress', event.to_dict(), namespace=NAMESPACE, room='transfer_7'
        )

    def test_status_broadcast(self):
        socketio = MagicMock()
        reporter = WebSocketProgressReporter(socketio)

        reporter.report_status(make_item())

        name, payload = socketio.emit.call_args[0]
        self.assertEqual(name, 'transfer_status')
        self.assertEqual(payload['status'], 'queued')
        self.assertNotIn('room', socketio.emit.call_args[1])

    def test_emit_failure_is_logged_not_raised(self):
        socketio = MagicMock()
        socketio.emit.side_effect = RuntimeError('socket gone')
        reporter = WebSocketProgressReporter(socketio)

        reporter.report_status(make_item())

    def test_attach_registers_callbacks(self):
        socketio = MagicMock()
        progress = ProgressManager()
        WebSocketProgressReporter(socketio).attach(progress)

        progress.publish(ProgressEvent(transfer_id=1, percent=10, transferred=1, total=10, speed=0.0))
        progress.notify_status(make_item(1))

        self.assertEqual([c[0][0] for c in socketio.emit.call_args_list], ['transfer_progress', 'transfer_status'])


class TestSocketIONamespace(unittest.TestCase):

    def setUp(self):
        self.app = Flask(__name__)
        self.app.config['TESTING'] = True
        self.socketio = init_socketio(self.app)
        self.client = self.socketio.test_client(self.app, namespace=NAMESPACE)

    def tearDown(self):
        if self.client.is_connected(NAMESPACE):
            self.client.disconnect(namespace=NAMESPACE)

    def test_connect_greeting(self):
        received = self.client.get_received(NAMESPACE)
        self.assertEqual(received[0]['name'], 'connected')

    def test_subscribed_client_receives_room_progress(self):
        self.client.get_received(NAMESPACE)
        self.client.emit('subscribe_progress', {'transfer_id': 3}, namespace=NAMESPACE)
        reporter = WebSocketProgressReporter(self.socketio)

        reporter.report_progress(ProgressEvent(transfer_id=3, percent=50, transferred=5, total=10, speed=1.0))
        reporter.report_progress(ProgressEvent(transfer_id=4, percent=50, transferred=5, total=10, speed=1.0))

        received = self.client.get_received(NAMESPACE)
        names = [r['name'] for r in received]
        self.assertEqual(names, ['subscribed', 'transfer_progress'])
        self.assertEqual(received[1]['args'][0]['transferId'], 3)

    def test_unsubscribe_stops_delivery(self):
        self.client.emit('subscribe_progress', {'transfer_id': 3}, namespace=NAMESPACE)
        self.client.emit('unsubscribe_progress', {'transfer_id': 3}, namespace=NAMESPACE)
        self.client.get_received(NAMESPACE)

        WebSocketProgressReporter(self.socketio).report_progress(
            ProgressEvent(transfer_id=3, percent=60, transferred=6, total=10, speed=1.0)
        )

        self.assertEqual(self.client.get_received(NAMESPACE), [])

    def test_subscribe_requires_transfer_id(self):
        self.client.get_received(NAMESPACE)
        self.client.emit('subscribe_progress', {}, namespace=NAMESPACE)

        received = self.client.get_received(NAMESPACE)
        self.assertEqual(received[0]['name'], 'error')


if __name__ == '__main__':
    unittest.main()
