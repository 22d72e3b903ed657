"""
Tests for per-connection and global speed limits
"""

import itertools
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ftpbridge.transfer.models import TransferDirection
from ftpbridge.transfer.throttle import LimitRegistry


class TestLimitRegistry:

    @pytest.mark.parametrize(
        'connection_cap,global_cap',
        list(itertools.product([None, 500, 2000], [None, 1000, 3000]))
    )
    def test_effective_is_min_with_unset_as_unbounded(self, connection_cap, global_cap):
        registry = LimitRegistry()
        registry.set_limit('c1', 'upload', connection_cap)
        registry.set_global_limit('upload', global_cap)

        caps = [c for c in (connection_cap, global_cap) if c is not None]
        expected = min(caps) if caps else None
        assert registry.get_effective_limit('c1', 'upload') == expected

    def test_directions_are_independent(self):
        registry = LimitRegistry()
        registry.set_limit('c1', TransferDirection.UPLOAD, 100)

        assert registry.get_limit('c1', 'upload') == 100
        assert registry.get_limit('c1', 'download') is None
        assert registry.get_effective_limit('c1', 'download') is None

    def test_zero_clears_limit(self):
        registry = LimitRegistry()
        registry.set_limit('c1', 'download', 100)
        registry.set_limit('c1', 'download', 0)

        assert registry.get_limit('c1', 'download') is None

    def test_negative_cap_rejected(self):
        registry = LimitRegistry()
        with pytest.raises(ValueError):
            registry.set_limit('c1', 'upload', -1)
        with pytest.raises(ValueError):
            registry.set_global_limit('upload', -10)

    def test_invalid_direction_rejected(self):
        registry = LimitRegistry()
        with pytest.raises(ValueError):
            registry.set_limit('c1', 'sideways', 10)

    def test_remove_connection_keeps_global(self):
        registry = LimitRegistry()
        registry.set_limit('c1', 'upload', 100)
        registry.set_global_limit('upload', 1000)

        registry.remove_connection('c1')

        assert registry.get_limit('c1', 'upload') is None
        assert registry.get_effective_limit('c1', 'upload') == 1000

    def test_snapshot_round_trip(self):
        registry = LimitRegistry()
        registry.set_limit('c1', 'upload', 4096)
        registry.set_global_limit('download', 8192)

        assert registry.snapshot('c1') == {
            'upload': 4096,
            'download': None,
            'globalUpload': None,
            'globalDownload': 8192,
        }
