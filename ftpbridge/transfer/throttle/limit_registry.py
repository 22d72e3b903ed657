"""
Per-connection and global bandwidth caps
"""

import logging
from typing import Dict, Optional, Union

from ..models import TransferDirection

logger = logging.getLogger(__name__)

DirectionLike = Union[str, TransferDirection]


def _normalize_cap(cap: Optional[Union[int, float]]) -> Optional[int]:
    """None or 0 clears a limit; negative values are rejected."""
    if cap is None:
        return None
    if isinstance(cap, bool):
        raise ValueError(f"Invalid speed limit: {cap!r}")
    if cap < 0:
        raise ValueError(f"Speed limit must be >= 0 bytes/sec, got {cap}")
    if cap == 0:
        return None
    return int(cap)


class LimitRegistry:
    """Stores caps in bytes/sec; None means unbounded."""

    def __init__(self):
        self._limits: Dict[str, Dict[TransferDirection, Optional[int]]] = {}
        self._global: Dict[TransferDirection, Optional[int]] = {
            TransferDirection.UPLOAD: None,
            TransferDirection.DOWNLOAD: None,
        }

    def set_limit(self, connection_id: str, direction: DirectionLike, cap: Optional[int]):
        direction = TransferDirection.parse(direction)
        self._limits.setdefault(connection_id, {})[direction] = _normalize_cap(cap)
        logger.info(f"Speed limit for {connection_id} {direction.value}: {cap or 'unlimited'}")

    def set_global_limit(self, direction: DirectionLike, cap: Optional[int]):
        direction = TransferDirection.parse(direction)
        self._global[direction] = _normalize_cap(cap)
        logger.info(f"Global {direction.value} speed limit: {cap or 'unlimited'}")

    def get_limit(self, connection_id: str, direction: DirectionLike) -> Optional[int]:
        direction = TransferDirection.parse(direction)
        return self._limits.get(connection_id, {}).get(direction)

    def get_global_limit(self, direction: DirectionLike) -> Optional[int]:
        return self._global[TransferDirection.parse(direction)]

    def get_effective_limit(self, connection_id: str, direction: DirectionLike) -> Optional[int]:
        """min(connection cap, global cap), with an unset cap counting as unbounded."""
        caps = [
            cap for cap in (self.get_limit(connection_id, direction), self.get_global_limit(direction))
            if cap is not None
        ]
        return min(caps) if caps else None

    def remove_connection(self, connection_id: str):
        self._limits.pop(connection_id, None)

    def snapshot(self, connection_id: str) -> dict:
        """Limits for one connection plus the global ones, keyed as the command surface reports them."""
        return {
            'upload': self.get_limit(connection_id, TransferDirection.UPLOAD),
            'download': self.get_limit(connection_id, TransferDirection.DOWNLOAD),
            'globalUpload': self.get_global_limit(TransferDirection.UPLOAD),
            'globalDownload': self.get_global_limit(TransferDirection.DOWNLOAD),
        }
