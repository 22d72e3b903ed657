"""
Protocol session abstraction over FTP-family and SFTP clients.

A session exposes one fixed capability set. Variants implement the
primitives they support; the base class rejects everything else with
UnsupportedOperation before touching the wire, and drives every transfer
through one explicit chunked copy loop so pause, cancel and throttling are
observed at chunk boundaries.
"""

import asyncio
import contextlib
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, FrozenSet, List, Optional, Union

from ..errors import (
    LocalIOError, NotFoundError, TransferError, TransferInterrupted, UnsupportedOperation,
    translate_errors, translate_local_errors,
)
from ..models import ConnectionConfig, FileEntry, Protocol
from ..throttle import RateLimiter
from ..throttle.rate_limiter import UNLIMITED_CHUNK_SIZE

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[int, int], Awaitable[None]]
Checkpoint = Callable[[], None]
FailureCallback = Callable[["ProtocolSession"], None]

ALL_CAPABILITIES = frozenset({
    'list_directory', 'upload', 'download', 'rename', 'delete', 'stat', 'chmod', 'mkdir',
})


class RemoteStream(ABC):
    """Blocking handle on one remote file transfer; driven through asyncio.to_thread."""

    def read(self, size: int) -> bytes:
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self, completed: bool) -> None:
        """Release the data channel. completed=False means the loop stopped early."""


def _guard_local(func: Callable, path: str) -> Callable:
    """Local I/O failing after the transfer started is a transfer failure, not a setup failure."""
    def wrapper(*args):
        try:
            return func(*args)
        except OSError as e:
            raise TransferError(f"Local file {path} became unavailable during transfer: {e}") from e
    return wrapper


class ProtocolSession(ABC):
    """A connected handle to one remote server."""

    protocol: Protocol
    capabilities: FrozenSet[str] = frozenset()

    def __init__(
        self,
        session_id: str,
        config: ConnectionConfig,
        stall_timeout: Optional[float] = 30.0,
        transfer_timeout: Optional[float] = None,
    ):
        self.id = session_id
        self.config = config
        self.stall_timeout = stall_timeout
        self.transfer_timeout = transfer_timeout
        self.closing = False
        # Set by the registry; called once the transport is known to be dead
        self.on_transport_failure: Optional[FailureCallback] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    @abstractmethod
    async def connect(
        cls,
        session_id: str,
        config: ConnectionConfig,
        connect_timeout: float = 30.0,
        stall_timeout: Optional[float] = 30.0,
        transfer_timeout: Optional[float] = None,
    ) -> "ProtocolSession":
        """Open and authenticate. Raises ConnectError on any failure."""

    async def close(self):
        self.closing = True
        await asyncio.to_thread(self._close_transport)

    @abstractmethod
    def _close_transport(self) -> None:
        pass

    def ensure_open(self):
        if self.closing:
            raise NotFoundError(f"Connection not found: {self.id}")

    def is_alive(self) -> bool:
        """False once the underlying transport has dropped."""
        return True

    def _is_fatal(self, exc: BaseException) -> bool:
        """Whether exc means the connection itself is gone, not just this operation."""
        return isinstance(exc, (EOFError, ConnectionError)) or not self.is_alive()

    async def _transport_failed(self, exc: BaseException):
        logger.warning(f"Session {self.id} lost its connection: {exc}")
        if self.on_transport_failure is not None:
            self.on_transport_failure(self)
        try:
            await self.close()
        except Exception as e:
            logger.debug(f"Closing failed session {self.id}: {e}")

    def _require(self, capability: str):
        if capability not in self.capabilities:
            raise UnsupportedOperation(
                f"{capability} is not supported for {self.protocol.value.upper()} connections"
            )
        self.ensure_open()

    def _operation_lock(self):
        """Serialises operations when the transport carries one at a time."""
        return contextlib.nullcontext()

    @contextlib.asynccontextmanager
    async def _operation(self, name: str, path: str):
        """
        Lock, liveness check and error translation for one remote operation.

        Anything raised after the session started closing surfaces as
        NotFoundError. A fatal transport error fails this operation and
        closes the session, so later calls see NotFoundError too.
        """
        async with self._operation_lock():
            self.ensure_open()
            try:
                with translate_errors(name, path):
                    yield
            except TransferInterrupted:
                raise
            except Exception as e:
                if self.closing:
                    if isinstance(e, NotFoundError):
                        raise
                    raise NotFoundError(f"Connection not found: {self.id}") from e
                if self._is_fatal(e.__cause__ or e):
                    await self._transport_failed(e.__cause__ or e)
                raise

    # ------------------------------------------------------------------
    # Capability surface
    # ------------------------------------------------------------------

    async def list_directory(self, path: str = '/') -> List[FileEntry]:
        self._require('list_directory')
        async with self._operation('list', path):
            return await asyncio.to_thread(self._list_directory, path)

    async def rename(self, old_path: str, new_path: str):
        self._require('rename')
        async with self._operation('rename', old_path):
            await asyncio.to_thread(self._rename, old_path, new_path)

    async def delete(self, path: str):
        self._require('delete')
        async with self._operation('delete', path):
            await asyncio.to_thread(self._delete, path)

    async def stat(self, path: str) -> FileEntry:
        self._require('stat')
        async with self._operation('stat', path):
            return await asyncio.to_thread(self._stat, path)

    async def chmod(self, path: str, mode: Union[int, str]):
        self._require('chmod')
        if isinstance(mode, str):
            try:
                mode = int(mode, 8)
            except ValueError:
                raise ValueError(f"Invalid permission mode: {mode!r}")
        async with self._operation('chmod', path):
            await asyncio.to_thread(self._chmod, path, mode)

    async def mkdir(self, path: str):
        """Create path and any missing parents. Existing directories are not an error."""
        self._require('mkdir')
        async with self._operation('mkdir', path):
            await asyncio.to_thread(self._mkdir, path)

    async def upload(
        self,
        local_path: str,
        remote_path: str,
        on_chunk: Optional[ChunkCallback] = None,
        checkpoint: Optional[Checkpoint] = None,
        limiter: Optional[RateLimiter] = None,
        chunk_size: int = UNLIMITED_CHUNK_SIZE,
        offset: int = 0,
    ) -> int:
        """
        Upload a local file through the chunked copy loop.

        Args:
            on_chunk: Awaited after each chunk with (transferred, total)
            checkpoint: Called at every chunk boundary; raises TransferInterrupted to stop
            limiter: Applied before each chunk is written
            offset: Byte position to continue from after a pause

        Returns:
            Total bytes present at the destination
        """
        self._require('upload')
        with translate_local_errors(local_path):
            total = await asyncio.to_thread(os.path.getsize, local_path)
            local_file = await asyncio.to_thread(open, local_path, 'rb')
        try:
            async with self._operation('upload', remote_path):
                if checkpoint:
                    checkpoint()
                if offset:
                    local_file.seek(offset)
                writer = await asyncio.to_thread(self._open_writer, remote_path, offset)
                transferred = await self._drive(
                    _guard_local(local_file.read, local_path), writer, writer.write,
                    total, offset, on_chunk, checkpoint, limiter, chunk_size,
                )
            if self.config.preserve_timestamps:
                await self._preserve_upload_times(local_path, remote_path)
            return transferred
        finally:
            local_file.close()

    async def download(
        self,
        remote_path: str,
        local_path: str,
        on_chunk: Optional[ChunkCallback] = None,
        checkpoint: Optional[Checkpoint] = None,
        limiter: Optional[RateLimiter] = None,
        chunk_size: int = UNLIMITED_CHUNK_SIZE,
        offset: int = 0,
    ) -> int:
        """
        Download a remote file through the chunked copy loop. Same contract as upload.

        The remote file is opened before the local one, so a missing remote
        path leaves an existing local file untouched.
        """
        self._require('download')
        if offset and not await asyncio.to_thread(os.path.exists, local_path):
            offset = 0
        async with self._operation('download', remote_path):
            if checkpoint:
                checkpoint()
            total = await asyncio.to_thread(self._remote_size, remote_path)
            reader = await asyncio.to_thread(self._open_reader, remote_path, offset)
            try:
                with translate_local_errors(local_path):
                    local_file = await asyncio.to_thread(open, local_path, 'r+b' if offset else 'wb')
            except LocalIOError:
                await asyncio.to_thread(reader.close, False)
                raise
            try:
                await asyncio.to_thread(local_file.truncate, offset)
                local_file.seek(offset)
                transferred = await self._drive(
                    reader.read, reader, _guard_local(local_file.write, local_path),
                    total, offset, on_chunk, checkpoint, limiter, chunk_size,
                )
            finally:
                await asyncio.to_thread(local_file.close)
        if self.config.preserve_timestamps:
            await self._preserve_download_times(remote_path, local_path)
        return transferred

    async def _drive(self, read, stream: RemoteStream, write, total, offset,
                     on_chunk, checkpoint, limiter, chunk_size) -> int:
        completed = False
        try:
            transferred = await self._copy(read, write, total, offset, on_chunk, checkpoint, limiter, chunk_size)
            completed = True
            return transferred
        finally:
            await asyncio.to_thread(stream.close, completed)

    async def _copy(self, read, write, total, offset, on_chunk, checkpoint, limiter, chunk_size) -> int:
        transferred = offset
        started = time.monotonic()
        while True:
            self.ensure_open()
            if checkpoint:
                checkpoint()
            if self.transfer_timeout and time.monotonic() - started > self.transfer_timeout:
                raise TransferError("Transfer timeout - operation took too long")
            chunk = await asyncio.to_thread(read, chunk_size)
            if not chunk:
                break
            if limiter is not None:
                await limiter.throttle(len(chunk))
            await asyncio.to_thread(write, chunk)
            transferred += len(chunk)
            if on_chunk is not None:
                # total stays 0 when the server would not report a size
                await on_chunk(transferred, total)
        return transferred

    # ------------------------------------------------------------------
    # Primitives implemented by variants (blocking, run in worker threads)
    # ------------------------------------------------------------------

    def _list_directory(self, path: str) -> List[FileEntry]:
        raise NotImplementedError

    def _rename(self, old_path: str, new_path: str):
        raise NotImplementedError

    def _delete(self, path: str):
        raise NotImplementedError

    def _stat(self, path: str) -> FileEntry:
        raise NotImplementedError

    def _chmod(self, path: str, mode: int):
        raise NotImplementedError

    def _mkdir(self, path: str):
        raise NotImplementedError

    @abstractmethod
    def _remote_size(self, remote_path: str) -> int:
        pass

    @abstractmethod
    def _open_reader(self, remote_path: str, offset: int) -> RemoteStream:
        pass

    @abstractmethod
    def _open_writer(self, remote_path: str, offset: int) -> RemoteStream:
        pass

    async def _preserve_upload_times(self, local_path: str, remote_path: str):
        pass

    async def _preserve_download_times(self, remote_path: str, local_path: str):
        pass

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.id} {self.config.username}@{self.config.host}:{self.config.port}>"
