#!/usr/bin/env python3
"""
Tests for the daily JSON activity log and log directory setup
"""

import json
import os
import shutil
import sys
import tempfile
import unittest
from datetime import datetime, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ftpbridge.utils.activity_log import ActivityLog
from ftpbridge.utils.log_init import ensure_all_log_directories, get_log_directory_info


class TestActivityLog(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.log = ActivityLog(self.temp_dir, max_entries=3)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_entries_written_to_daily_file(self):
        self.log.add('upload', 'Uploaded a.txt', {'file': 'a.txt', 'size': 10})

        path = os.path.join(self.temp_dir, 'activity', f"activity_log_{datetime.now():%Y%m%d}.json")
        with open(path) as f:
            entries = json.load(f)

        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]['event_type'], 'upload')
        self.assertEqual(entries[0]['details'], {'file': 'a.txt', 'size': 10})

    def test_oldest_entries_dropped_over_cap(self):
        for n in range(5):
            self.log.add('info', f'event {n}')

        messages = [e['message'] for e in self.log.get_entries()]
        self.assertEqual(messages, ['event 2', 'event 3', 'event 4'])

    def test_filter_by_type(self):
        self.log.add('upload', 'up')
        self.log.add('error', 'failed', {'error': 'boom'})

        self.assertEqual([e['message'] for e in self.log.get_entries('error')], ['failed'])
        self.assertEqual(len(self.log.get_entries('all')), 2)

    def test_unknown_type_rejected(self):
        with self.assertRaises(ValueError):
            self.log.add('warning', 'nope')

    def test_other_days_are_separate(self):
        self.log.add('info', 'today')

        self.assertEqual(self.log.get_entries(date=datetime.now() - timedelta(days=1)), [])

    def test_clear(self):
        self.log.add('info', 'x')
        self.log.clear()

        self.assertEqual(self.log.get_entries(), [])

    def test_corrupt_file_reads_as_empty(self):
        os.makedirs(self.log.log_dir, exist_ok=True)
        with open(self.log._log_path(), 'w') as f:
            f.write('{not json')

        self.assertEqual(self.log.get_entries(), [])
        self.log.add('info', 'recovered')
        self.assertEqual(len(self.log.get_entries()), 1)

    def test_export_text(self):
        self.log.add('download', 'Downloaded b.bin', {'size': 4})
        self.log.add('info', 'Server started')

        lines = self.log.export_text().splitlines()

        self.assertTrue(lines[0].endswith('DOWNLOAD: Downloaded b.bin (size: 4)'))
        self.assertTrue(lines[1].endswith('INFO: Server started'))


class TestLogInit(unittest.TestCase):

    def test_directories_created(self):
        temp_dir = tempfile.mkdtemp()
        try:
            log_base = os.path.join(temp_dir, 'logs')
            self.assertFalse(get_log_directory_info(log_base)['exists'])

            self.assertTrue(ensure_all_log_directories(log_base))

            info = get_log_directory_info(log_base)
            self.assertTrue(info['directories']['activity']['exists'])
            self.assertTrue(info['directories']['activity']['writable'])
        finally:
            shutil.rmtree(temp_dir)


if __name__ == '__main__':
    unittest.main()
