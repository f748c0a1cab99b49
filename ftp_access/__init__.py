# ftp_access/__init__.py

"""
Asynchronous FTP/FTPS client.

    from ftp_access import Client
    entries = await Client(host="ftp.example.com", secure=True).list("/")

`__version__` comes from the top-level `VERSION` file when it ships next to
the package, so a release bump touches one file only.
"""

from pathlib import Path

from ftp_access.client import Client
from ftp_access.config import ConnectionConfig, SecureMode, TLSOptions
from ftp_access.errors import (
	AuthError,
	CommandError,
	ConnectError,
	DataChannelError,
	FTPError,
	ListingParseError,
	ProtocolError,
	SecurityError,
	TransferError,
)
from ftp_access.models import FileEntry, FileType, HealthCheckResult, TransferProgress

_root = Path(__file__).resolve().parents[1]
_version_file = _root / "VERSION"
if _version_file.exists():
	__version__ = _version_file.read_text(encoding="utf-8").strip()
else:
	__version__ = "0.1.0"

__all__ = [
	"Client",
	"ConnectionConfig",
	"SecureMode",
	"TLSOptions",
	"FTPError",
	"ConnectError",
	"AuthError",
	"SecurityError",
	"ProtocolError",
	"DataChannelError",
	"CommandError",
	"TransferError",
	"ListingParseError",
	"FileEntry",
	"FileType",
	"TransferProgress",
	"HealthCheckResult",
]
