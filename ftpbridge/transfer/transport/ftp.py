"""
FTP/FTPS protocol session built on ftplib
"""

import asyncio
import ftplib
import logging
import posixpath
import re
import ssl
from datetime import datetime
from typing import List, Optional

from . import ProtocolSession, RemoteStream
from ..errors import ConnectError, TransferError
from ..models import ConnectionConfig, FileEntry, Protocol

logger = logging.getLogger(__name__)

# drwxr-xr-x   2 owner group      4096 Jan 01 12:00 name
LIST_LINE_PATTERN = re.compile(
    r'^(?P<kind>[-dlbcps])(?P<perms>[-rwxsStT]{9})\S*\s+\d+\s+\S+\s+\S+\s+'
    r'(?P<size>\d+)\s+(?P<month>\w{3})\s+(?P<day>\d{1,2})\s+(?P<when>\d{1,2}:\d{2}|\d{4})\s+'
    r'(?P<name>.+)$'
)

# Reply codes meaning "MLSD not implemented / not understood"
MLSD_UNSUPPORTED = ('500', '501', '502', '504')


def parse_list_line(line: str, now: Optional[datetime] = None) -> Optional[FileEntry]:
    """Parse one Unix-style LIST line. Returns None for lines that are not entries."""
    match = LIST_LINE_PATTERN.match(line.strip())
    if not match:
        return None
    name = match.group('name')
    if match.group('kind') == 'l' and ' -> ' in name:
        name = name.split(' -> ', 1)[0]
    if name in ('.', '..'):
        return None

    now = now or datetime.now()
    when = match.group('when')
    stamp = f"{match.group('month')} {match.group('day')} "
    try:
        if ':' in when:
            modified = datetime.strptime(f"{stamp}{now.year} {when}", '%b %d %Y %H:%M')
            # LIST omits the year for recent files; a date in the future belongs to last year
            if modified > now:
                modified = modified.replace(year=now.year - 1)
        else:
            modified = datetime.strptime(f"{stamp}{when}", '%b %d %Y')
    except ValueError:
        modified = None

    return FileEntry(
        name=name,
        type='directory' if match.group('kind') == 'd' else 'file',
        size=int(match.group('size')),
        modified_at=modified,
        permissions=match.group('perms'),
    )


def entry_from_facts(name: str, facts: dict) -> Optional[FileEntry]:
    """Map MLSD facts to a FileEntry. Returns None for the '.' and '..' pseudo entries."""
    kind = facts.get('type', 'file').lower()
    if kind in ('cdir', 'pdir') or name in ('.', '..'):
        return None

    modified = None
    if 'modify' in facts:
        try:
            modified = datetime.strptime(facts['modify'][:14], '%Y%m%d%H%M%S')
        except ValueError:
            modified = None

    permissions = facts.get('perm')
    if 'unix.mode' in facts:
        try:
            permissions = int(facts['unix.mode'], 8)
        except ValueError:
            pass

    return FileEntry(
        name=name,
        type='directory' if kind == 'dir' else 'file',
        size=int(facts.get('size', facts.get('sizd', 0)) or 0),
        modified_at=modified,
        permissions=permissions,
    )


class FTPDataStream(RemoteStream):
    """One RETR/STOR data connection."""

    def __init__(self, client: ftplib.FTP, conn):
        self.client = client
        self.conn = conn

    def read(self, size: int) -> bytes:
        return self.conn.recv(size)

    def write(self, data: bytes) -> None:
        self.conn.sendall(data)

    def close(self, completed: bool) -> None:
        try:
            if completed and isinstance(self.conn, ssl.SSLSocket):
                self.conn.unwrap()
        finally:
            self.conn.close()
        if self.client.file is None:
            # Control connection already closed by disconnect; nothing will answer
            return
        if completed:
            self.client.voidresp()
            return
        # Stopped early: the server answers 426/451 (or 226 if it already finished)
        try:
            self.client.voidresp()
        except (ftplib.error_temp, ftplib.error_perm, ftplib.error_reply) as e:
            logger.debug(f"Server acknowledged interrupted transfer: {e}")
        except OSError as e:
            logger.warning(f"No reply after interrupting transfer: {e}")


class FTPSession(ProtocolSession):
    """FTP or FTPS session. One control connection carries one operation at a time."""

    protocol = Protocol.FTP
    capabilities = frozenset({'list_directory', 'upload', 'download', 'delete', 'mkdir'})

    def __init__(self, session_id: str, config: ConnectionConfig, client: ftplib.FTP,
                 stall_timeout: Optional[float] = 30.0, transfer_timeout: Optional[float] = None):
        super().__init__(session_id, config, stall_timeout, transfer_timeout)
        self.protocol = config.protocol
        self.client = client
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(cls, session_id, config, connect_timeout=30.0, stall_timeout=30.0, transfer_timeout=None):
        logger.info(f"Connecting to {config.protocol.value}://{config.host}:{config.port} (timeout={connect_timeout}s)")
        try:
            client = await asyncio.to_thread(cls._open_client, config, connect_timeout, stall_timeout)
        except ftplib.all_errors as e:
            logger.error(f"✗ FTP connection to {config.host}:{config.port} failed - {e}")
            raise ConnectError(f"FTP connection failed: {e}") from e
        logger.info(f"✓ Connected to {config.host}:{config.port}")
        return cls(session_id, config, client, stall_timeout, transfer_timeout)

    @staticmethod
    def _open_client(config: ConnectionConfig, connect_timeout: float, stall_timeout: Optional[float]) -> ftplib.FTP:
        secure = config.protocol is Protocol.FTPS
        client = ftplib.FTP_TLS(timeout=connect_timeout) if secure else ftplib.FTP(timeout=connect_timeout)
        try:
            client.connect(config.host, config.port)
            client.login(config.username or 'anonymous', config.password or '')
            if secure:
                client.prot_p()
            client.voidcmd('TYPE I')
        except BaseException:
            client.close()
            raise
        # Data connections pick up client.timeout; control socket gets the same stall bound
        client.timeout = stall_timeout
        if client.sock is not None:
            client.sock.settimeout(stall_timeout)
        return client

    def _operation_lock(self):
        return self._lock

    def is_alive(self) -> bool:
        return self.client.sock is not None

    def _is_fatal(self, exc: BaseException) -> bool:
        # 421: the server is closing the control connection
        if isinstance(exc, ftplib.error_temp) and str(exc).startswith('421'):
            return True
        return super()._is_fatal(exc)

    def _close_transport(self):
        try:
            self.client.quit()
        except ftplib.all_errors as e:
            logger.debug(f"QUIT failed, closing socket: {e}")
            self.client.close()

    def _list_directory(self, path: str) -> List[FileEntry]:
        try:
            facts = list(self.client.mlsd(path, facts=['type', 'size', 'modify', 'unix.mode', 'perm']))
        except ftplib.error_perm as e:
            if not str(e).startswith(MLSD_UNSUPPORTED):
                raise
            logger.debug(f"MLSD unsupported ({e}), falling back to LIST")
            lines: List[str] = []
            self.client.retrlines(f"LIST {path}", lines.append)
            return [entry for entry in map(parse_list_line, lines) if entry]
        return [entry for entry in (entry_from_facts(name, f) for name, f in facts) if entry]

    def _delete(self, path: str):
        self.client.delete(path)

    def _mkdir(self, path: str):
        original = self.client.pwd()
        target = path if path.startswith('/') else posixpath.join(original, path)
        current = '/'
        try:
            for segment in [part for part in target.split('/') if part]:
                current = posixpath.join(current, segment)
                try:
                    self.client.cwd(current)
                    continue
                except ftplib.error_perm:
                    pass
                try:
                    self.client.mkd(current)
                except ftplib.error_perm as e:
                    raise TransferError(f"Failed to create directory {current}: {e}") from e
        finally:
            self.client.cwd(original)

    def _remote_size(self, remote_path: str) -> int:
        try:
            return self.client.size(remote_path) or 0
        except ftplib.error_perm:
            return 0

    def _open_reader(self, remote_path: str, offset: int) -> FTPDataStream:
        conn = self.client.transfercmd(f"RETR {remote_path}", rest=offset or None)
        return FTPDataStream(self.client, conn)

    def _open_writer(self, remote_path: str, offset: int) -> FTPDataStream:
        conn = self.client.transfercmd(f"STOR {remote_path}", rest=offset or None)
        return FTPDataStream(self.client, conn)
