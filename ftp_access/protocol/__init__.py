# ftp_access/protocol/__init__.py
"""
FTP protocol layer.

Reply and listing parsers, the control session, passive data channels and
the transfer engine that ties them together.
"""

from ftp_access.protocol.reply import ControlReply, ReplyParser, parse_replies
from ftp_access.protocol.listing import ListingStyle, parse_listing
from ftp_access.protocol.session import ControlSession, SessionState
from ftp_access.protocol.data_channel import DataChannel, open_passive
from ftp_access.protocol.transfer import ProgressTracker, TransferEngine

__all__ = [
    "ControlReply",
    "ReplyParser",
    "parse_replies",
    "ListingStyle",
    "parse_listing",
    "ControlSession",
    "SessionState",
    "DataChannel",
    "open_passive",
    "ProgressTracker",
    "TransferEngine",
]
