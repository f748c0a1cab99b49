# ftp_access/errors.py
"""
Exception hierarchy for the FTP client core.

Every error raised by a Client operation derives from FTPError so callers
can catch the whole family at once. Errors caused by a server reply carry
that reply for inspection.
"""
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ftp_access.protocol.reply import ControlReply


class FTPError(Exception):
    """Base class for all FTP client errors."""

    def __init__(self, message: str, reply: Optional["ControlReply"] = None):
        super().__init__(message)
        self.reply = reply

    @property
    def code(self) -> Optional[int]:
        return self.reply.code if self.reply is not None else None


class ConnectError(FTPError):
    """Host unreachable, connection refused, timeout or negative greeting."""


class AuthError(FTPError):
    """Credentials rejected by the server."""


class SecurityError(FTPError):
    """TLS negotiation failed on the control or data channel."""


class ProtocolError(FTPError):
    """Malformed or unexpected reply, or the control connection broke mid-reply."""


class ListingParseError(ProtocolError):
    """A listing line could not be parsed while strict parsing was requested."""


class DataChannelError(FTPError):
    """Passive-mode negotiation or data connection failure."""


class CommandError(FTPError):
    """The server rejected a command with a 4xx/5xx reply."""

    def __init__(self, command: str, reply: "ControlReply"):
        super().__init__(f"{command.split(' ', 1)[0]} failed: {reply.code} {reply.message}", reply)
        self.command = command


class TransferError(FTPError):
    """Data channel I/O failed while streaming."""
