"""
Error taxonomy for transfer engine operations.

Every command either returns a payload or raises one of these. Protocol
sessions translate raw ftplib/paramiko/socket exceptions into this set at
the session boundary, keeping the original message for diagnostics.
"""

import errno
import ftplib
import logging
import os
import socket
from contextlib import contextmanager
from typing import Optional

import paramiko

logger = logging.getLogger(__name__)


class BridgeError(Exception):
    """Base class for all engine errors."""

    error_type = 'BridgeError'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {'error': self.message, 'error_type': self.error_type}


class ConnectError(BridgeError):
    """Authentication rejected, handshake timeout, or unsupported protocol."""

    error_type = 'ConnectionError'


class NotFoundError(BridgeError):
    """Unknown session or transfer id."""

    error_type = 'NotFound'


class UnsupportedOperation(BridgeError):
    """Capability absent for the active protocol variant."""

    error_type = 'UnsupportedOperation'


class TransferError(BridgeError):
    """Remote operation or data transfer failed."""

    error_type = 'TransferError'


class LocalIOError(BridgeError):
    """Local filesystem failure unrelated to the remote protocol."""

    error_type = 'IOError'


class TransferInterrupted(Exception):
    """Raised inside the copy loop when a pause or cancel flag is observed."""


def _errno_of(exc: BaseException) -> Optional[int]:
    return getattr(exc, 'errno', None)


def describe_remote_failure(exc: BaseException, path: str, operation: str) -> str:
    """Build the human-readable message for a failed remote operation."""
    code = _errno_of(exc)
    text = str(exc) or exc.__class__.__name__
    if isinstance(exc, PermissionError) or code == errno.EACCES or 'Permission denied' in text:
        if operation == 'upload':
            return f"Permission denied: Cannot write to {path}"
        return f"Permission denied: {path}"
    if isinstance(exc, FileNotFoundError) or code == errno.ENOENT or 'No such file' in text:
        if operation == 'upload':
            return f"Remote directory does not exist: {os.path.dirname(path) or '/'}"
        return f"No such file or directory: {path}"
    if isinstance(exc, socket.timeout):
        return f"{operation.capitalize()} stalled: no data for the configured timeout ({path})"
    return f"{operation.capitalize()} failed: {text}"


@contextmanager
def translate_errors(operation: str, path: str = ''):
    """
    Map transport exceptions raised inside the block to the engine taxonomy.

    Args:
        operation: Short verb used in messages ('upload', 'list', 'mkdir', ...)
        path: Remote path the operation targets
    """
    try:
        yield
    except (BridgeError, TransferInterrupted):
        raise
    except ftplib.all_errors as e:
        # ftplib.all_errors includes OSError and EOFError, so SFTP IOErrors land here too
        logger.debug(f"{operation} on {path!r} failed: {e!r}")
        raise TransferError(describe_remote_failure(e, path, operation)) from e
    except paramiko.SSHException as e:
        logger.debug(f"{operation} on {path!r} failed: {e!r}")
        raise TransferError(f"{operation.capitalize()} failed: {e}") from e


@contextmanager
def translate_local_errors(path: str):
    """Map local filesystem errors to LocalIOError."""
    try:
        yield
    except OSError as e:
        raise LocalIOError(f"Local file error for {path}: {e.strerror or e}") from e
