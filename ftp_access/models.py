# ftp_access/models.py
"""
Records exchanged between the FTP client and its callers.

These are plain dataclasses: listing entries produced by the listing parser,
progress snapshots handed to progress observers, and health check results.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class FileType(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    UNKNOWN = "unknown"


@dataclass
class FileEntry:
    """A single entry of a remote directory listing."""
    name: str
    type: FileType = FileType.FILE
    size: int = 0
    modified_at: Optional[datetime] = None
    raw_modified: str = ""
    permissions: Optional[str] = None
    link_target: Optional[str] = None
    facts: Dict[str, str] = field(default_factory=dict)

    @property
    def is_file(self) -> bool:
        return self.type is FileType.FILE

    @property
    def is_directory(self) -> bool:
        return self.type is FileType.DIRECTORY

    @property
    def is_symlink(self) -> bool:
        return self.type is FileType.SYMLINK


@dataclass
class TransferProgress:
    """Snapshot of an ongoing transfer, passed to progress observers."""
    name: str
    kind: str
    bytes: int = 0
    bytes_overall: int = 0
    total_size: Optional[int] = None

    @property
    def percent(self) -> Optional[float]:
        if not self.total_size:
            return None
        return min(100.0, self.bytes * 100.0 / self.total_size)


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    healthy: bool
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    protocol: Optional[str] = None
    latency_ms: Optional[float] = None
