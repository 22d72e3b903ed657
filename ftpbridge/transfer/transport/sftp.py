"""
SFTP protocol session built on paramiko
"""

import asyncio
import logging
import os
import posixpath
import socket
import stat
from datetime import datetime
from typing import List, Optional, Tuple

import paramiko

from . import ProtocolSession, RemoteStream
from ..errors import ConnectError, TransferError
from ..models import ConnectionConfig, FileEntry, Protocol

logger = logging.getLogger(__name__)

KEY_TYPES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


def load_private_key(path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Load a private key file, trying each supported key type in turn."""
    last_error = None
    for key_class in KEY_TYPES:
        try:
            return key_class.from_private_key_file(path, password=passphrase)
        except paramiko.PasswordRequiredException as e:
            raise ConnectError(f"Private key {path} is encrypted and no passphrase was given") from e
        except paramiko.SSHException as e:
            last_error = e
        except OSError as e:
            raise ConnectError(f"Failed to read private key: {e}") from e
    raise ConnectError(f"Unsupported or invalid private key {path}: {last_error}")


def interactive_handler(password: Optional[str]):
    """Keyboard-interactive responder: answer every prompt with the password, or nothing."""
    def handler(title, instructions, prompts):
        if password and prompts:
            return [password for _ in prompts]
        return []
    return handler


def entry_from_attrs(name: str, attrs: paramiko.SFTPAttributes) -> FileEntry:
    mode = attrs.st_mode or 0
    return FileEntry(
        name=name,
        type='directory' if stat.S_ISDIR(mode) else 'file',
        size=attrs.st_size or 0,
        modified_at=datetime.fromtimestamp(attrs.st_mtime) if attrs.st_mtime else None,
        permissions=attrs.st_mode,
    )


class SFTPFileStream(RemoteStream):
    """Remote file handle opened over the SFTP channel."""

    def __init__(self, handle: paramiko.SFTPFile):
        self.handle = handle

    def read(self, size: int) -> bytes:
        return self.handle.read(size)

    def write(self, data: bytes) -> None:
        self.handle.write(data)

    def close(self, completed: bool) -> None:
        if completed:
            # Pipelined write errors surface here
            self.handle.close()
            return
        try:
            self.handle.close()
        except (OSError, paramiko.SSHException) as e:
            logger.warning(f"Error closing interrupted remote file: {e}")


class SFTPSession(ProtocolSession):
    """SFTP session: full capability set over one authenticated SSH channel."""

    protocol = Protocol.SFTP
    capabilities = frozenset({
        'list_directory', 'upload', 'download', 'rename', 'delete', 'stat', 'chmod', 'mkdir',
    })

    def __init__(self, session_id: str, config: ConnectionConfig,
                 transport: paramiko.Transport, sftp: paramiko.SFTPClient,
                 stall_timeout: Optional[float] = 30.0, transfer_timeout: Optional[float] = None):
        super().__init__(session_id, config, stall_timeout, transfer_timeout)
        self.transport = transport
        self.sftp = sftp

    @classmethod
    async def connect(cls, session_id, config, connect_timeout=30.0, stall_timeout=30.0, transfer_timeout=None):
        logger.info(f"Connecting to sftp://{config.username}@{config.host}:{config.port} (timeout={connect_timeout}s)")
        try:
            transport, sftp = await asyncio.to_thread(cls._open_client, config, connect_timeout, stall_timeout)
        except paramiko.AuthenticationException as e:
            logger.error(f"✗ SSH authentication failed for {config.username}@{config.host}: {e}")
            raise ConnectError(f"SSH authentication failed: {e}") from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            logger.error(f"✗ SSH connection to {config.host}:{config.port} failed - {e}")
            raise ConnectError(f"SSH connection failed: {e}") from e
        logger.info(f"✓ SSH connection established to {config.host}:{config.port}")
        return cls(session_id, config, transport, sftp, stall_timeout, transfer_timeout)

    @classmethod
    def _open_client(cls, config: ConnectionConfig, connect_timeout: float,
                     stall_timeout: Optional[float]) -> Tuple[paramiko.Transport, paramiko.SFTPClient]:
        sock = socket.create_connection((config.host, config.port), timeout=connect_timeout)
        try:
            transport = paramiko.Transport(sock)
        except BaseException:
            sock.close()
            raise
        try:
            transport.banner_timeout = connect_timeout
            transport.auth_timeout = connect_timeout
            transport.start_client(timeout=connect_timeout)
            cls._authenticate(transport, config)
            if not transport.is_authenticated():
                raise ConnectError("SSH connection closed before authentication")
            sftp = paramiko.SFTPClient.from_transport(transport)
            sftp.get_channel().settimeout(stall_timeout)
        except BaseException:
            transport.close()
            raise
        return transport, sftp

    @staticmethod
    def _authenticate(transport: paramiko.Transport, config: ConnectionConfig):
        username = config.username
        if config.password:
            logger.info("Using password authentication")
            try:
                transport.auth_password(username, config.password, fallback=False)
            except paramiko.BadAuthenticationType as e:
                if 'keyboard-interactive' not in e.allowed_types:
                    raise
                logger.info("Password auth refused, answering keyboard-interactive challenge")
                transport.auth_interactive(username, interactive_handler(config.password))
        elif config.private_key_path:
            logger.info(f"Using key authentication ({config.private_key_path})")
            pkey = load_private_key(config.private_key_path, config.passphrase)
            transport.auth_publickey(username, pkey)
        else:
            transport.auth_interactive(username, interactive_handler(None))

    def is_alive(self) -> bool:
        return self.transport.is_active()

    def _close_transport(self):
        try:
            self.sftp.close()
        finally:
            self.transport.close()

    def _list_directory(self, path: str) -> List[FileEntry]:
        return [entry_from_attrs(attrs.filename, attrs) for attrs in self.sftp.listdir_attr(path)]

    def _rename(self, old_path: str, new_path: str):
        self.sftp.rename(old_path, new_path)

    def _delete(self, path: str):
        self.sftp.remove(path)

    def _stat(self, path: str) -> FileEntry:
        name = posixpath.basename(path.rstrip('/')) or '/'
        return entry_from_attrs(name, self.sftp.stat(path))

    def _chmod(self, path: str, mode: int):
        self.sftp.chmod(path, mode)

    def _is_directory(self, path: str) -> bool:
        try:
            return stat.S_ISDIR(self.sftp.stat(path).st_mode or 0)
        except FileNotFoundError:
            return False

    def _mkdir(self, path: str):
        current = '/' if path.startswith('/') else ''
        for segment in [part for part in path.split('/') if part]:
            current = posixpath.join(current, segment) if current else segment
            if self._is_directory(current):
                continue
            try:
                self.sftp.mkdir(current)
            except OSError as e:
                # SFTP reports "already exists" as a generic failure; re-check before giving up
                if self._is_directory(current):
                    continue
                raise TransferError(f"Failed to create directory {current}: {e}") from e

    def _remote_size(self, remote_path: str) -> int:
        return self.sftp.stat(remote_path).st_size or 0

    def _open_reader(self, remote_path: str, offset: int) -> SFTPFileStream:
        handle = self.sftp.open(remote_path, 'rb')
        if offset:
            handle.seek(offset)
        return SFTPFileStream(handle)

    def _open_writer(self, remote_path: str, offset: int) -> SFTPFileStream:
        handle = self.sftp.open(remote_path, 'r+b' if offset else 'wb')
        handle.set_pipelined(True)
        if offset:
            handle.seek(offset)
        return SFTPFileStream(handle)

    async def _preserve_download_times(self, remote_path: str, local_path: str):
        try:
            attrs = await asyncio.to_thread(self.sftp.stat, remote_path)
            os.utime(local_path, (attrs.st_atime, attrs.st_mtime))
            logger.debug(f"Timestamps preserved on {local_path}")
        except (OSError, paramiko.SSHException) as e:
            logger.error(f"Failed to preserve timestamps on {local_path}: {e}")

    async def _preserve_upload_times(self, local_path: str, remote_path: str):
        try:
            local_stat = os.stat(local_path)
            await asyncio.to_thread(self.sftp.utime, remote_path, (local_stat.st_atime, local_stat.st_mtime))
            logger.debug(f"Timestamps preserved on remote file {remote_path}")
        except (OSError, paramiko.SSHException) as e:
            logger.error(f"Failed to preserve timestamps on {remote_path}: {e}")
