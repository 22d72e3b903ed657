#!/usr/bin/env python3
"""
Tests for the FTP/FTPS session: listing parsers, capability gating,
mkdir, chunked transfers over a mocked ftplib client, and connect failures
"""

import asyncio
import ftplib
import os
import shutil
import sys
import tempfile
import unittest
from datetime import datetime
from unittest.mock import MagicMock, call, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ftpbridge.transfer.errors import ConnectError, NotFoundError, TransferError, UnsupportedOperation
from ftpbridge.transfer.models import ConnectionConfig
from ftpbridge.transfer.session_registry import SessionRegistry
from ftpbridge.transfer.transport.ftp import FTPSession, entry_from_facts, parse_list_line


class TestListParsing(unittest.TestCase):

    def test_directory_line(self):
        entry = parse_list_line(
            "drwxr-xr-x   2 owner group      4096 Jan 01 12:00 docs",
            now=datetime(2024, 6, 1)
        )
        self.assertEqual(entry.name, 'docs')
        self.assertEqual(entry.type, 'directory')
        self.assertEqual(entry.size, 4096)
        self.assertEqual(entry.modified_at, datetime(2024, 1, 1, 12, 0))
        self.assertEqual(entry.permissions, 'rwxr-xr-x')

    def test_recent_date_in_future_belongs_to_last_year(self):
        entry = parse_list_line(
            "-rw-r--r--   1 owner group       10 Dec 31 23:59 notes.txt",
            now=datetime(2024, 1, 15)
        )
        self.assertEqual(entry.modified_at, datetime(2023, 12, 31, 23, 59))

    def test_old_file_with_year_and_spaces_in_name(self):
        entry = parse_list_line("-rw-r--r-- 1 u g 1234 Mar 5 2019 annual report.pdf")
        self.assertEqual(entry.name, 'annual report.pdf')
        self.assertEqual(entry.type, 'file')
        self.assertEqual(entry.modified_at, datetime(2019, 3, 5))

    def test_symlink_name_strips_target(self):
        entry = parse_list_line("lrwxrwxrwx 1 u g 7 Jan 01 12:00 latest -> release-1.2")
        self.assertEqual(entry.name, 'latest')

    def test_non_entries_skipped(self):
        self.assertIsNone(parse_list_line("total 12"))
        self.assertIsNone(parse_list_line("drwxr-xr-x 2 u g 4096 Jan 01 12:00 ."))
        self.assertIsNone(parse_list_line("drwxr-xr-x 2 u g 4096 Jan 01 12:00 .."))

    def test_mlsd_facts(self):
        entry = entry_from_facts('file.txt', {
            'type': 'file', 'size': '10', 'modify': '20240101120000', 'unix.mode': '0644',
        })
        self.assertEqual(entry.size, 10)
        self.assertEqual(entry.permissions, 0o644)
        self.assertEqual(entry.modified_at, datetime(2024, 1, 1, 12, 0, 0))
        self.assertIsNone(entry_from_facts('.', {'type': 'cdir'}))
        self.assertEqual(entry_from_facts('sub', {'type': 'dir'}).type, 'directory')


class FTPSessionTestCase(unittest.TestCase):

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.client = MagicMock()
        self.session = FTPSession('s1', ConnectionConfig(protocol='ftp', host='ftp.example.com'), self.client)
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        self.loop.close()
        shutil.rmtree(self.temp_dir)

    def run_async(self, coro):
        return self.loop.run_until_complete(coro)


class TestFTPOperations(FTPSessionTestCase):

    def test_lists_with_mlsd(self):
        self.client.mlsd.return_value = iter([
            ('.', {'type': 'cdir'}),
            ('a.txt', {'type': 'file', 'size': '3'}),
            ('sub', {'type': 'dir'}),
        ])

        entries = self.run_async(self.session.list_directory('/pub'))

        self.assertEqual([(e.name, e.type) for e in entries], [('a.txt', 'file'), ('sub', 'directory')])
        self.client.retrlines.assert_not_called()

    def test_falls_back_to_list_when_mlsd_rejected(self):
        self.client.mlsd.side_effect = ftplib.error_perm('500 Unknown command MLSD')
        lines = [
            "total 2",
            "-rw-r--r-- 1 u g 12 Jan 01 12:00 readme.txt",
            "drwxr-xr-x 2 u g 4096 Jan 01 12:00 images",
        ]

        def fake_retrlines(cmd, callback):
            for line in lines:
                callback(line)

        self.client.retrlines.side_effect = fake_retrlines

        entries = self.run_async(self.session.list_directory('/pub'))

        self.client.retrlines.assert_called_once()
        self.assertEqual(self.client.retrlines.call_args[0][0], 'LIST /pub')
        self.assertEqual([e.name for e in entries], ['readme.txt', 'images'])

    def test_missing_directory_is_transfer_error(self):
        self.client.mlsd.side_effect = ftplib.error_perm('550 No such directory')

        with self.assertRaises(TransferError):
            self.run_async(self.session.list_directory('/nope'))

    def test_unsupported_capabilities_never_touch_the_wire(self):
        with self.assertRaises(UnsupportedOperation) as ctx:
            self.run_async(self.session.chmod('/a.txt', '755'))
        self.assertIn('chmod is not supported for FTP', str(ctx.exception))

        with self.assertRaises(UnsupportedOperation):
            self.run_async(self.session.rename('/a', '/b'))
        with self.assertRaises(UnsupportedOperation):
            self.run_async(self.session.stat('/a'))

        self.assertEqual(self.client.method_calls, [])

    def test_error_raised_after_disconnect_is_not_found(self):
        def dropped_mid_listing(path, facts=None):
            self.session.closing = True
            raise AttributeError("'NoneType' object has no attribute 'sendall'")

        self.client.mlsd.side_effect = dropped_mid_listing

        with self.assertRaises(NotFoundError) as ctx:
            self.run_async(self.session.list_directory('/'))
        self.assertEqual(str(ctx.exception), 'Connection not found: s1')

    def test_control_connection_loss_drops_session(self):
        failures = [EOFError(), ftplib.error_temp('421 Service not available, closing control connection')]
        for failure in failures:
            with self.subTest(failure=repr(failure)):
                client = MagicMock()
                session = FTPSession('s1', ConnectionConfig(protocol='ftp', host='ftp.example.com'), client)
                registry = SessionRegistry()
                registry.register(session)
                registry.limits.set_limit('s1', 'download', 4096)
                client.mlsd.side_effect = failure

                with self.assertRaises(TransferError):
                    self.run_async(session.list_directory('/'))

                with self.assertRaises(NotFoundError):
                    registry.get('s1')
                self.assertEqual(registry.list(), [])
                self.assertIsNone(registry.limits.get_limit('s1', 'download'))
                client.quit.assert_called_once()

    def test_ordinary_failure_keeps_session(self):
        registry = SessionRegistry()
        registry.register(self.session)
        self.client.delete.side_effect = ftplib.error_perm('550 No such file')

        with self.assertRaises(TransferError):
            self.run_async(self.session.delete('/gone.txt'))

        self.assertIs(registry.get('s1'), self.session)

    def test_mkdir_creates_missing_segments_and_restores_cwd(self):
        existing = {'/', '/home', '/a'}
        self.client.pwd.return_value = '/home'

        def fake_cwd(path):
            if path not in existing:
                raise ftplib.error_perm('550 Not a directory')

        def fake_mkd(path):
            existing.add(path)
            return path

        self.client.cwd.side_effect = fake_cwd
        self.client.mkd.side_effect = fake_mkd

        self.run_async(self.session.mkdir('/a/b/c'))

        self.assertEqual(self.client.mkd.call_args_list, [call('/a/b'), call('/a/b/c')])
        self.assertEqual(self.client.cwd.call_args_list[-1], call('/home'))

    def test_mkdir_failure_names_segment(self):
        self.client.pwd.return_value = '/'

        def fake_cwd(path):
            if path != '/':
                raise ftplib.error_perm('550 Not a directory')

        self.client.cwd.side_effect = fake_cwd
        self.client.mkd.side_effect = ftplib.error_perm('550 Permission denied')

        with self.assertRaises(TransferError) as ctx:
            self.run_async(self.session.mkdir('/locked/dir'))
        self.assertIn('Failed to create directory /locked', str(ctx.exception))


class TestFTPTransfers(FTPSessionTestCase):

    def test_download_in_chunks(self):
        conn = MagicMock()
        conn.recv.side_effect = [b'abc', b'def', b'']
        self.client.transfercmd.return_value = conn
        self.client.size.return_value = 6
        local_path = os.path.join(self.temp_dir, 'out.bin')
        seen = []

        async def on_chunk(transferred, total):
            seen.append((transferred, total))

        result = self.run_async(self.session.download('/f.bin', local_path, on_chunk=on_chunk, chunk_size=3))

        self.assertEqual(result, 6)
        self.assertEqual(seen, [(3, 6), (6, 6)])
        with open(local_path, 'rb') as f:
            self.assertEqual(f.read(), b'abcdef')
        self.client.transfercmd.assert_called_once_with('RETR /f.bin', rest=None)
        conn.close.assert_called_once()
        self.client.voidresp.assert_called_once()

    def test_download_resumes_with_rest(self):
        conn = MagicMock()
        conn.recv.side_effect = [b'def', b'']
        self.client.transfercmd.return_value = conn
        self.client.size.return_value = 6
        local_path = os.path.join(self.temp_dir, 'out.bin')
        with open(local_path, 'wb') as f:
            f.write(b'abc')

        self.run_async(self.session.download('/f.bin', local_path, offset=3))

        self.client.transfercmd.assert_called_once_with('RETR /f.bin', rest=3)
        with open(local_path, 'rb') as f:
            self.assertEqual(f.read(), b'abcdef')

    def test_upload_sends_chunks(self):
        conn = MagicMock()
        self.client.transfercmd.return_value = conn
        local_path = os.path.join(self.temp_dir, 'in.bin')
        with open(local_path, 'wb') as f:
            f.write(b'0123456789')

        result = self.run_async(self.session.upload(local_path, '/up/in.bin', chunk_size=4))

        self.assertEqual(result, 10)
        self.assertEqual([c.args[0] for c in conn.sendall.call_args_list], [b'0123', b'4567', b'89'])
        self.client.transfercmd.assert_called_once_with('STOR /up/in.bin', rest=None)

    def test_upload_permission_denied_message(self):
        self.client.transfercmd.side_effect = ftplib.error_perm('550 Permission denied')
        local_path = os.path.join(self.temp_dir, 'in.bin')
        with open(local_path, 'wb') as f:
            f.write(b'x')

        with self.assertRaises(TransferError) as ctx:
            self.run_async(self.session.upload(local_path, '/ro/in.bin'))
        self.assertEqual(str(ctx.exception), 'Permission denied: Cannot write to /ro/in.bin')

    def test_unknown_size_reports_zero_total(self):
        conn = MagicMock()
        conn.recv.side_effect = [b'abc', b'def', b'']
        self.client.transfercmd.return_value = conn
        self.client.size.side_effect = ftplib.error_perm('550 SIZE not allowed in ASCII mode')
        seen = []

        async def on_chunk(transferred, total):
            seen.append((transferred, total))

        result = self.run_async(self.session.download(
            '/f.bin', os.path.join(self.temp_dir, 'out.bin'), on_chunk=on_chunk, chunk_size=3
        ))

        self.assertEqual(result, 6)
        self.assertEqual(seen, [(3, 0), (6, 0)])

    def test_missing_remote_file_leaves_local_file_intact(self):
        local_path = os.path.join(self.temp_dir, 'keep.bin')
        with open(local_path, 'wb') as f:
            f.write(b'keep me')
        self.client.size.side_effect = ftplib.error_perm('550 No such file')
        self.client.transfercmd.side_effect = ftplib.error_perm('550 No such file or directory')

        with self.assertRaises(TransferError) as ctx:
            self.run_async(self.session.download('/gone.bin', local_path))

        self.assertEqual(str(ctx.exception), 'No such file or directory: /gone.bin')
        with open(local_path, 'rb') as f:
            self.assertEqual(f.read(), b'keep me')

    def test_disconnect_during_download_is_not_found(self):
        registry = SessionRegistry()
        registry.register(self.session)
        conn = MagicMock()
        conn.recv.side_effect = [b'abc', b'def', b'']
        self.client.transfercmd.return_value = conn
        self.client.size.return_value = 6

        def quit_and_close():
            # ftplib drops the reply file and socket once the control connection closes
            self.client.file = None
            self.client.sock = None

        self.client.quit.side_effect = quit_and_close
        self.client.voidresp.side_effect = lambda: self.client.file.readline()

        async def disconnect_after_first_chunk(transferred, total):
            await registry.disconnect('s1')

        with self.assertRaises(NotFoundError) as ctx:
            self.run_async(self.session.download(
                '/f.bin', os.path.join(self.temp_dir, 'out.bin'),
                on_chunk=disconnect_after_first_chunk, chunk_size=3,
            ))

        self.assertEqual(str(ctx.exception), 'Connection not found: s1')
        conn.close.assert_called_once()
        self.client.voidresp.assert_not_called()

    def test_closed_session_reports_not_found(self):
        self.run_async(self.session.close())

        self.client.quit.assert_called_once()
        with self.assertRaises(NotFoundError):
            self.run_async(self.session.list_directory('/'))


class TestFTPConnect(unittest.TestCase):

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

    def tearDown(self):
        self.loop.close()

    def test_refused_connection_is_connect_error_and_not_registered(self):
        registry = SessionRegistry(connect_timeout=2)
        config = ConnectionConfig(protocol='ftp', host='127.0.0.1', port=1)

        with self.assertRaises(ConnectError):
            self.loop.run_until_complete(registry.connect(config))
        self.assertEqual(registry.list(), [])

    @patch('ftpbridge.transfer.transport.ftp.ftplib.FTP_TLS')
    def test_ftps_protects_data_channel(self, mock_tls):
        client = mock_tls.return_value
        config = ConnectionConfig(protocol='ftps', host='secure.example.com', username='bob', password='pw')

        session = self.loop.run_until_complete(
            FTPSession.connect('s1', config, connect_timeout=5, stall_timeout=12)
        )

        client.connect.assert_called_once_with('secure.example.com', 21)
        client.login.assert_called_once_with('bob', 'pw')
        client.prot_p.assert_called_once()
        client.voidcmd.assert_called_with('TYPE I')
        client.sock.settimeout.assert_called_with(12)
        self.assertEqual(session.protocol.value, 'ftps')

    @patch('ftpbridge.transfer.transport.ftp.ftplib.FTP')
    def test_login_failure_is_connect_error(self, mock_ftp):
        client = mock_ftp.return_value
        client.login.side_effect = ftplib.error_perm('530 Login incorrect')
        config = ConnectionConfig(protocol='ftp', host='ftp.example.com', username='bob', password='bad')

        with self.assertRaises(ConnectError) as ctx:
            self.loop.run_until_complete(FTPSession.connect('s1', config))
        self.assertIn('530', str(ctx.exception))
        client.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
