# ftp_access/protocol/reply.py
"""
FTP control reply parsing.

Replies are one or more text lines sharing a three digit code. A multi-line
reply opens with ``<code>-text`` and closes with ``<code> text``; lines in
between may or may not repeat the code. The parser is incremental: feed it
whatever the socket returns and it hands back the replies completed so far.
"""
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple

from ftp_access.errors import ProtocolError

_CODE_LINE = re.compile(r"^([1-5]\d{2})([ -])(.*)$", re.DOTALL)


class ReplyKind(IntEnum):
    """Classification by the first digit of the reply code."""
    PRELIMINARY = 1
    COMPLETION = 2
    INTERMEDIATE = 3
    TRANSIENT_FAILURE = 4
    PERMANENT_FAILURE = 5


@dataclass(frozen=True)
class ControlReply:
    """A complete reply read from the control connection."""
    code: int
    lines: Tuple[str, ...] = field(default_factory=tuple)
    raw: str = ""

    @property
    def kind(self) -> ReplyKind:
        return ReplyKind(self.code // 100)

    @property
    def message(self) -> str:
        return "\n".join(self.lines)

    @property
    def is_preliminary(self) -> bool:
        return self.kind is ReplyKind.PRELIMINARY

    @property
    def is_completion(self) -> bool:
        return self.kind is ReplyKind.COMPLETION

    @property
    def is_intermediate(self) -> bool:
        return self.kind is ReplyKind.INTERMEDIATE

    @property
    def is_failure(self) -> bool:
        return self.kind in (ReplyKind.TRANSIENT_FAILURE, ReplyKind.PERMANENT_FAILURE)

    def __str__(self) -> str:
        return f"{self.code} {self.message}"


class ReplyParser:
    """
    Incremental reply parser.

    Partial lines are buffered until their terminator arrives, and a
    multi-line reply is only emitted once its closing line is seen.
    ``\\r\\n`` is the protocol line ending; a bare ``\\n`` is tolerated.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._buffer = b""
        self._code: Optional[str] = None
        self._lines: List[str] = []
        self._raw: List[str] = []

    @property
    def pending(self) -> bool:
        """True when part of a reply has been received but not completed."""
        return bool(self._buffer) or self._code is not None

    def reset(self) -> None:
        self._buffer = b""
        self._code = None
        self._lines = []
        self._raw = []

    def feed(self, data: bytes) -> List[ControlReply]:
        """Consume bytes and return every reply completed by them, in order."""
        self._buffer += data
        replies = []
        while True:
            end = self._buffer.find(b"\n")
            if end < 0:
                break
            raw_line = self._buffer[:end + 1]
            self._buffer = self._buffer[end + 1:]
            line = raw_line.decode(self.encoding, errors="replace").rstrip("\r\n")
            reply = self._consume_line(line)
            if reply is not None:
                replies.append(reply)
        return replies

    def _consume_line(self, line: str) -> Optional[ControlReply]:
        match = _CODE_LINE.match(line)
        if self._code is None:
            if match is None:
                raise ProtocolError(f"Invalid reply line, no status code: {line!r}")
            code, separator, text = match.groups()
            if separator == " ":
                return ControlReply(int(code), (text,), line)
            self._code = code
            self._lines = [text]
            self._raw = [line]
            return None

        self._raw.append(line)
        if match is not None and match.group(2) == " ":
            code, _, text = match.groups()
            if code != self._code:
                opening = self._code
                self.reset()
                raise ProtocolError(
                    f"Multi-line reply opened with {opening} but closed with {code}"
                )
            self._lines.append(text)
            reply = ControlReply(int(code), tuple(self._lines), "\n".join(self._raw))
            self._code = None
            self._lines = []
            self._raw = []
            return reply

        if match is not None and match.group(1) == self._code:
            self._lines.append(match.group(3))
        else:
            self._lines.append(line)
        return None


def parse_replies(text: str, encoding: str = "utf-8") -> List[ControlReply]:
    """Parse a complete block of reply text. Trailing incomplete input is an error."""
    parser = ReplyParser(encoding)
    data = text.encode(encoding)
    if data and not data.endswith(b"\n"):
        data += b"\r\n"
    replies = parser.feed(data)
    if parser.pending:
        raise ProtocolError("Reply text ended inside a multi-line reply")
    return replies
