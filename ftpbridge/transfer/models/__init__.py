"""
Data models for sessions and transfers
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Union
from datetime import datetime
from enum import Enum

from ..errors import ConnectError


class Protocol(Enum):
    """Remote protocol variants."""
    FTP = "ftp"
    FTPS = "ftps"
    SFTP = "sftp"

    @classmethod
    def parse(cls, value: Union[str, "Protocol"]) -> "Protocol":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConnectError(f"Unsupported protocol: {value}")

    @property
    def default_port(self) -> int:
        return 22 if self is Protocol.SFTP else 21


class TransferDirection(Enum):
    """Direction of a transfer, also the key space of the limit registry."""
    UPLOAD = "upload"
    DOWNLOAD = "download"

    @classmethod
    def parse(cls, value: Union[str, "TransferDirection"]) -> "TransferDirection":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Invalid direction: {value} (expected 'upload' or 'download')")


class TransferStatus(Enum):
    """Lifecycle state of a TransferItem."""
    QUEUED = "queued"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_live(self) -> bool:
        return self in (TransferStatus.QUEUED, TransferStatus.ACTIVE, TransferStatus.PAUSED)

    @property
    def is_finished(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.ERROR, TransferStatus.CANCELLED)


@dataclass(frozen=True)
class ConnectionConfig:
    """Connection parameters. Immutable once a session is created from it."""

    protocol: Protocol
    host: str
    port: Optional[int] = None
    username: str = ""
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = None
    preserve_timestamps: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'protocol', Protocol.parse(self.protocol))
        if not self.host:
            raise ConnectError("Host is required")
        if self.port is None:
            object.__setattr__(self, 'port', self.protocol.default_port)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        """Build a config from request JSON, accepting camelCase or snake_case keys."""
        def pick(*keys, default=None):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return default

        port = pick('port')
        return cls(
            protocol=pick('protocol', default='ftp'),
            host=pick('host', default=''),
            port=int(port) if port is not None else None,
            username=pick('username', 'user', default=''),
            password=pick('password'),
            private_key_path=pick('private_key_path', 'privateKeyPath'),
            passphrase=pick('passphrase'),
            preserve_timestamps=bool(pick('preserve_timestamps', 'preserveTimestamps', default=False)),
        )

    def to_dict(self) -> dict:
        """Serializable view without secrets."""
        return {
            'protocol': self.protocol.value,
            'host': self.host,
            'port': self.port,
            'username': self.username,
            'auth': 'password' if self.password else ('key' if self.private_key_path else 'none'),
            'preserve_timestamps': self.preserve_timestamps,
        }


@dataclass
class FileEntry:
    """A remote directory entry or stat result."""
    name: str
    type: str  # 'file' | 'directory'
    size: int = 0
    modified_at: Optional[datetime] = None
    permissions: Optional[Union[int, str]] = None

    @property
    def is_directory(self) -> bool:
        return self.type == 'directory'

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'type': self.type,
            'size': self.size,
            'modifiedAt': self.modified_at.isoformat() if self.modified_at else None,
            'permissions': self.permissions,
        }


@dataclass
class TransferRequest:
    """Descriptor handed to TransferQueue.enqueue."""
    session_id: str
    direction: TransferDirection
    local_path: str
    remote_path: str
    size: int = 0
    delete_after_upload: bool = False


@dataclass
class TransferItem:
    """One queued upload or download."""

    id: int
    direction: TransferDirection
    local_path: str
    remote_path: str
    session_id: str
    file_name: str
    size: int = 0
    status: TransferStatus = TransferStatus.QUEUED
    progress: int = 0
    transferred: int = 0
    speed: float = 0.0
    applied_cap: Optional[int] = None
    error: Optional[str] = None
    delete_after_upload: bool = False
    enqueued_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'type': self.direction.value,
            'local_path': self.local_path,
            'remote_path': self.remote_path,
            'file_name': self.file_name,
            'session_id': self.session_id,
            'size': self.size,
            'status': self.status.value,
            'progress': self.progress,
            'transferred': self.transferred,
            'speed': self.speed,
            'applied_cap': self.applied_cap,
            'error': self.error,
            'enqueued_at': self.enqueued_at.isoformat() if self.enqueued_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ProgressEvent:
    """Per-chunk progress report for one running transfer."""
    transfer_id: int
    percent: int
    transferred: int
    total: int
    speed: float
    applied_cap: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'transferId': self.transfer_id,
            'percent': self.percent,
            'transferred': self.transferred,
            'total': self.total,
            'speed': self.speed,
            'appliedCap': self.applied_cap,
        }
