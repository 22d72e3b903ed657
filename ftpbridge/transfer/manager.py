"""
Transfer manager - command facade over sessions, limits and the transfer queue
"""

import asyncio
import base64
import logging
import mimetypes
import os
import posixpath
import tempfile
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .collaborators import BookmarkStore, KeyStore, ProfileStore, load_profile_config, resolve_bookmark_path
from .errors import translate_local_errors
from .models import (
    ConnectionConfig, FileEntry, ProgressEvent, TransferDirection, TransferItem, TransferRequest,
)
from .progress import ProgressManager
from .scheduler import TransferQueue
from .session_registry import SessionRegistry
from .throttle import LimitRegistry
from ..utils.compression import compress_path
from ..utils.config_loader import EngineSettings

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = 'application/octet-stream'


class TransferManager:
    """Single entry point for callers. Every method runs on the engine's event loop."""

    def __init__(self, settings: Optional[EngineSettings] = None, activity_log=None, session_classes=None):
        self.settings = settings or EngineSettings()
        self.limits = LimitRegistry()
        self.limits.set_global_limit(TransferDirection.UPLOAD, self.settings.global_upload_limit)
        self.limits.set_global_limit(TransferDirection.DOWNLOAD, self.settings.global_download_limit)
        self.sessions = SessionRegistry(
            self.limits,
            connect_timeout=self.settings.connect_timeout,
            stall_timeout=self.settings.stall_timeout,
            transfer_timeout=self.settings.transfer_timeout,
            session_classes=session_classes,
        )
        self.progress_manager = ProgressManager()
        self.activity_log = activity_log
        self.queue = TransferQueue(
            self.sessions,
            self.limits,
            self.progress_manager,
            max_concurrent=self.settings.max_concurrent,
            activity_log=activity_log,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def connect(self, config: Union[ConnectionConfig, Dict[str, Any]]) -> str:
        if isinstance(config, dict):
            config = ConnectionConfig.from_dict(config)
        session = await self.sessions.connect(config)
        return session.id

    async def connect_profile(self, profile_id: str, profiles: ProfileStore, keys: Optional[KeyStore] = None) -> str:
        """Connect using a stored profile resolved through the collaborator stores."""
        return await self.connect(load_profile_config(profile_id, profiles, keys))

    async def disconnect(self, session_id: str):
        await self.sessions.disconnect(session_id)

    async def list_sessions(self) -> List[Dict[str, Any]]:
        return [{'id': s.id, **s.config.to_dict()} for s in self.sessions.list()]

    # ------------------------------------------------------------------
    # Remote file operations
    # ------------------------------------------------------------------

    async def list_directory(self, session_id: str, path: str = '/') -> List[FileEntry]:
        return await self.sessions.get(session_id).list_directory(path)

    async def list_bookmark(self, session_id: str, bookmark_id: str, bookmarks: BookmarkStore) -> List[FileEntry]:
        """List the remote directory a saved bookmark points at."""
        return await self.list_directory(session_id, resolve_bookmark_path(bookmark_id, bookmarks))

    async def stat(self, session_id: str, path: str) -> FileEntry:
        return await self.sessions.get(session_id).stat(path)

    async def rename(self, session_id: str, old_path: str, new_path: str):
        await self.sessions.get(session_id).rename(old_path, new_path)

    async def delete(self, session_id: str, path: str):
        await self.sessions.get(session_id).delete(path)

    async def chmod(self, session_id: str, path: str, mode: Union[int, str]):
        await self.sessions.get(session_id).chmod(path, mode)

    async def mkdir(self, session_id: str, path: str):
        await self.sessions.get(session_id).mkdir(path)

    async def preview_file(self, session_id: str, remote_path: str) -> Dict[str, Any]:
        """Download a remote file to a temporary file and return it base64 encoded."""
        session = self.sessions.get(session_id)
        _, ext = posixpath.splitext(remote_path)
        fd, temp_path = tempfile.mkstemp(prefix='ftp-preview-', suffix=ext)
        os.close(fd)
        try:
            await session.download(remote_path, temp_path)
            with translate_local_errors(temp_path):
                with open(temp_path, 'rb') as f:
                    data = f.read()
        finally:
            try:
                os.remove(temp_path)
            except OSError as e:
                logger.warning(f"Failed to remove preview file {temp_path}: {e}")
        mime_type, _ = mimetypes.guess_type(remote_path)
        return {
            'data': base64.b64encode(data).decode('ascii'),
            'mime_type': mime_type or DEFAULT_MIME_TYPE,
            'size': len(data),
        }

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def upload(self, session_id: str, local_path: str, remote_path: str,
                     delete_after_upload: bool = False, size: int = 0) -> int:
        self.sessions.get(session_id)
        return self.queue.enqueue(TransferRequest(
            session_id=session_id,
            direction=TransferDirection.UPLOAD,
            local_path=local_path,
            remote_path=remote_path,
            size=size,
            delete_after_upload=delete_after_upload,
        ))

    async def download(self, session_id: str, remote_path: str, local_path: str, size: int = 0) -> int:
        self.sessions.get(session_id)
        return self.queue.enqueue(TransferRequest(
            session_id=session_id,
            direction=TransferDirection.DOWNLOAD,
            local_path=local_path,
            remote_path=remote_path,
            size=size,
        ))

    async def upload_compressed(self, session_id: str, local_path: str, remote_dir: str) -> Dict[str, Any]:
        """
        Compress a file (gzip) or folder (tar.gz) and queue the archive for upload.

        The temporary archive is removed once its upload completes.
        """
        self.sessions.get(session_id)
        with translate_local_errors(local_path):
            result = await asyncio.to_thread(compress_path, local_path)
        transfer_id = await self.upload(
            session_id,
            result.compressed_path,
            posixpath.join(remote_dir or '/', result.compressed_name),
            delete_after_upload=True,
            size=result.compressed_size,
        )
        return {'transfer_id': transfer_id, 'compression': result.to_dict()}

    async def pause_transfer(self, transfer_id: int) -> bool:
        return self.queue.pause(transfer_id)

    async def resume_transfer(self, transfer_id: int) -> bool:
        return self.queue.resume(transfer_id)

    async def cancel_transfer(self, transfer_id: int) -> bool:
        return self.queue.cancel(transfer_id)

    async def pause_all(self) -> int:
        return self.queue.pause_all()

    async def resume_all(self) -> int:
        return self.queue.resume_all()

    async def clear_completed(self) -> int:
        return self.queue.clear_completed()

    async def get_transfer(self, transfer_id: int) -> TransferItem:
        return self.queue.get(transfer_id)

    async def list_transfers(self) -> List[TransferItem]:
        return self.queue.list_items()

    async def wait_transfer(self, transfer_id: int, timeout: Optional[float] = None) -> TransferItem:
        return await self.queue.wait(transfer_id, timeout)

    def progress(self, transfer_id: int) -> AsyncIterator[ProgressEvent]:
        """Async iterator of progress events, ending when the transfer finishes."""
        return self.queue.progress_stream(transfer_id)

    # ------------------------------------------------------------------
    # Speed limits
    # ------------------------------------------------------------------

    async def set_speed_limit(self, session_id: str, direction: Union[str, TransferDirection], cap: Optional[int]):
        self.sessions.get(session_id)
        self.limits.set_limit(session_id, direction, cap)

    async def set_global_speed_limit(self, direction: Union[str, TransferDirection], cap: Optional[int]):
        self.limits.set_global_limit(direction, cap)

    async def get_speed_limits(self, session_id: str) -> Dict[str, Optional[int]]:
        self.sessions.get(session_id)
        return self.limits.snapshot(session_id)

    async def shutdown(self):
        """Cancel live transfers and close every session."""
        logger.info("Shutting down transfer manager")
        await self.queue.shutdown()
        await self.sessions.close_all()
