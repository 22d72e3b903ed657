"""
Engine runner

Owns a background thread running the engine's asyncio event loop so that
synchronous callers (Flask request threads, Socket.IO handlers) can submit
TransferManager coroutines and wait for their results.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Optional

from .manager import TransferManager
from ..utils.config_loader import EngineSettings

logger = logging.getLogger(__name__)


class EngineRunner:
    """Event loop thread hosting one TransferManager."""

    def __init__(self, settings: Optional[EngineSettings] = None, activity_log=None, session_classes=None):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop,
            daemon=True,
            name="transfer-engine-loop"
        )
        self._started = threading.Event()
        self.manager: Optional[TransferManager] = None
        self._settings = settings
        self._activity_log = activity_log
        self._session_classes = session_classes

    def _run_loop(self):
        asyncio.set_event_loop(self.loop)
        self._started.set()
        self.loop.run_forever()

    def start(self) -> "EngineRunner":
        if self._thread.is_alive():
            return self
        self._thread.start()
        self._started.wait()
        self.manager = self.call(self._build_manager())
        logger.info("Transfer engine loop started")
        return self

    async def _build_manager(self) -> TransferManager:
        # Constructed on the loop so asyncio primitives bind to it
        return TransferManager(self._settings, self._activity_log, self._session_classes)

    def call(self, coro: Awaitable, timeout: Optional[float] = None) -> Any:
        """
        Run a coroutine on the engine loop and block for its result.

        Exceptions raised by the coroutine propagate to the caller unchanged.
        """
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)

    def stop(self, timeout: float = 30.0):
        if not self._thread.is_alive():
            return
        if self.manager is not None:
            try:
                self.call(self.manager.shutdown(), timeout)
            except Exception as e:
                logger.error(f"Error during engine shutdown: {e}")
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self.loop.close()
        logger.info("Transfer engine loop stopped")
