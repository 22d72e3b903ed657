"""
Progress tracking manager
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, List, Set

from ..models import ProgressEvent, TransferItem

logger = logging.getLogger(__name__)

_END_OF_STREAM = None


class ProgressManager:
    """
    Fan out transfer progress.

    Each transfer has a lazy event stream (subscribe) that ends when the
    transfer reaches a terminal status. Broadcast callbacks see every event
    and every status change, for push transports such as Socket.IO.
    """

    def __init__(self):
        self._subscribers: Dict[int, List[asyncio.Queue]] = {}
        self._closed: Set[int] = set()
        self._callbacks: List[Callable[[ProgressEvent], None]] = []
        self._status_callbacks: List[Callable[[TransferItem], None]] = []

    def register_callback(self, callback: Callable[[ProgressEvent], None]):
        """Register a callback for progress updates."""
        self._callbacks.append(callback)

    def register_status_callback(self, callback: Callable[[TransferItem], None]):
        """Register a callback for transfer status changes."""
        self._status_callbacks.append(callback)

    def publish(self, event: ProgressEvent):
        """Deliver an event to stream subscribers and callbacks."""
        if event.transfer_id in self._closed:
            return
        for queue in self._subscribers.get(event.transfer_id, []):
            queue.put_nowait(event)
        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Progress callback failed: {e}")

    def notify_status(self, item: TransferItem):
        for callback in self._status_callbacks:
            try:
                callback(item)
            except Exception as e:
                logger.error(f"Status callback failed: {e}")

    def close_stream(self, transfer_id: int):
        """End the event stream of a transfer that reached a terminal status."""
        if transfer_id in self._closed:
            return
        self._closed.add(transfer_id)
        for queue in self._subscribers.pop(transfer_id, []):
            queue.put_nowait(_END_OF_STREAM)

    async def subscribe(self, transfer_id: int) -> AsyncIterator[ProgressEvent]:
        """Yield events for one transfer until its stream is closed."""
        if transfer_id in self._closed:
            return
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(transfer_id, []).append(queue)
        try:
            while True:
                event = await queue.get()
                if event is _END_OF_STREAM:
                    return
                yield event
        finally:
            queues = self._subscribers.get(transfer_id)
            if queues and queue in queues:
                queues.remove(queue)
                if not queues:
                    del self._subscribers[transfer_id]

    def forget(self, transfer_id: int):
        """Drop all state for a transfer removed from the queue."""
        self.close_stream(transfer_id)
        self._closed.discard(transfer_id)
