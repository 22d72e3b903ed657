"""
Session registry: owns the lifetime of every connected ProtocolSession
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Type

from .errors import NotFoundError
from .models import ConnectionConfig, Protocol
from .throttle import LimitRegistry
from .transport import ProtocolSession
from .transport.ftp import FTPSession
from .transport.sftp import SFTPSession

logger = logging.getLogger(__name__)

SESSION_CLASSES: Dict[Protocol, Type[ProtocolSession]] = {
    Protocol.FTP: FTPSession,
    Protocol.FTPS: FTPSession,
    Protocol.SFTP: SFTPSession,
}


class SessionRegistry:
    """Maps opaque session ids to live sessions. The single "not found" point for sessions."""

    def __init__(
        self,
        limits: Optional[LimitRegistry] = None,
        connect_timeout: float = 30.0,
        stall_timeout: Optional[float] = 30.0,
        transfer_timeout: Optional[float] = None,
        session_classes: Optional[Dict[Protocol, Type[ProtocolSession]]] = None,
    ):
        self.limits = limits if limits is not None else LimitRegistry()
        self.connect_timeout = connect_timeout
        self.stall_timeout = stall_timeout
        self.transfer_timeout = transfer_timeout
        self.session_classes = dict(session_classes or SESSION_CLASSES)
        self._sessions: Dict[str, ProtocolSession] = {}

    async def connect(self, config: ConnectionConfig) -> ProtocolSession:
        """
        Open a session for config and register it.

        Raises:
            ConnectError: The session is not registered
        """
        session_class = self.session_classes[config.protocol]
        session_id = uuid.uuid4().hex
        session = await session_class.connect(
            session_id,
            config,
            connect_timeout=self.connect_timeout,
            stall_timeout=self.stall_timeout,
            transfer_timeout=self.transfer_timeout,
        )
        self.register(session)
        return session

    def register(self, session: ProtocolSession):
        """Track an open session and evict it if its transport fails."""
        session.on_transport_failure = self._forget
        self._sessions[session.id] = session
        logger.info(f"Session {session.id} registered ({session.config.protocol.value}://{session.config.host}:{session.config.port})")

    def get(self, session_id: str) -> ProtocolSession:
        session = self._sessions.get(session_id)
        if session is not None and not session.closing and not session.is_alive():
            self._forget(session)
        if session is None or session.closing:
            raise NotFoundError(f"Connection not found: {session_id}")
        return session

    def _forget(self, session: ProtocolSession):
        """Drop a session whose transport is gone, along with its speed limits."""
        session.closing = True
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
            self.limits.remove_connection(session.id)
            logger.warning(f"Session {session.id} dropped after transport failure")

    def list(self) -> List[ProtocolSession]:
        return list(self._sessions.values())

    async def disconnect(self, session_id: str):
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Connection not found: {session_id}")
        # In-flight transfers see closing at their next chunk boundary
        session.closing = True
        del self._sessions[session_id]
        self.limits.remove_connection(session_id)
        try:
            await session.close()
        except Exception as e:
            logger.warning(f"Error closing session {session_id}: {e}")
        logger.info(f"Session {session_id} disconnected")

    async def close_all(self):
        session_ids = list(self._sessions)
        if session_ids:
            await asyncio.gather(*(self.disconnect(sid) for sid in session_ids))
