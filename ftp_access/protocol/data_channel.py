# ftp_access/protocol/data_channel.py
"""
Passive mode data channel negotiation.

The client asks the server for a listening address (EPSV or PASV), connects
to it, and, on secured sessions, wraps the data connection in TLS while
resuming the control connection's TLS session. Servers that enforce
"same TLS session" on data connections reject fresh sessions.
"""
import asyncio
import re
import ssl
from typing import Optional, Tuple

import structlog

from ftp_access.errors import DataChannelError, SecurityError
from ftp_access.protocol.reply import ControlReply
from ftp_access.protocol.session import ControlSession

logger = structlog.get_logger()

_PASV_ADDRESS = re.compile(r"(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3})")
_EPSV_ADDRESS = re.compile(r"\((.)\1\1(\d+)\1\)")


def parse_pasv_reply(message: str) -> Tuple[str, int]:
    """Extract ``(host, port)`` from a 227 reply text ``(h1,h2,h3,h4,p1,p2)``."""
    match = _PASV_ADDRESS.search(message)
    if match is None:
        raise DataChannelError(f"Cannot parse PASV address from reply: {message!r}")
    numbers = [int(part) for part in match.groups()]
    if any(number > 255 for number in numbers):
        raise DataChannelError(f"Invalid PASV address in reply: {message!r}")
    host = ".".join(str(number) for number in numbers[:4])
    port = (numbers[4] << 8) | numbers[5]
    if port == 0:
        raise DataChannelError(f"Invalid PASV port in reply: {message!r}")
    return host, port


def parse_epsv_reply(message: str) -> int:
    """Extract the port from a 229 reply text ``(|||port|)``."""
    match = _EPSV_ADDRESS.search(message)
    if match is None:
        raise DataChannelError(f"Cannot parse EPSV port from reply: {message!r}")
    port = int(match.group(2))
    if not 0 < port < 65536:
        raise DataChannelError(f"Invalid EPSV port in reply: {message!r}")
    return port


class SessionBoundContext(ssl.SSLContext):
    """SSLContext that resumes a given TLS session on every connection it wraps."""

    def __new__(cls, protocol, *args, context: ssl.SSLContext, session: Optional[ssl.SSLSession], **kwargs):
        self = super().__new__(cls, protocol, *args, **kwargs)
        self.context = context
        self.session = session
        return self

    def wrap_socket(self, sock, server_side=False, do_handshake_on_connect=True,
                    suppress_ragged_eofs=True, server_hostname=None, session=None):
        return self.context.wrap_socket(
            sock,
            server_side=server_side,
            do_handshake_on_connect=do_handshake_on_connect,
            suppress_ragged_eofs=suppress_ragged_eofs,
            server_hostname=server_hostname,
            session=session or self.session,
        )

    def wrap_bio(self, incoming, outgoing, server_side=False, server_hostname=None, session=None):
        return self.context.wrap_bio(
            incoming,
            outgoing,
            server_side=server_side,
            server_hostname=server_hostname,
            session=session or self.session,
        )


class DataChannel:
    """A connected passive data connection owned by one transfer."""

    def __init__(self, host: str, port: int, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter, timeout: Optional[float] = None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader = reader
        self._writer = writer
        self.secured = False
        self.closed = False

    async def secure(self, session: ControlSession) -> None:
        """
        Upgrade to TLS reusing the control connection's TLS session.

        Raises:
            SecurityError: If the handshake fails
        """
        control_tls = session.ssl_object
        if control_tls is None:
            raise SecurityError("Control connection is not secured")
        context = SessionBoundContext(
            ssl.PROTOCOL_TLS_CLIENT,
            context=control_tls.context,
            session=control_tls.session,
        )
        try:
            await asyncio.wait_for(
                self._writer.start_tls(context, server_hostname=session.server_hostname),
                self.timeout,
            )
        except (ssl.SSLError, OSError, asyncio.TimeoutError) as e:
            logger.error("ftp_data_tls_failed", host=self.host, port=self.port, error=str(e))
            raise SecurityError(f"TLS upgrade of data connection failed: {e}") from e
        self.secured = True
        tls = self._writer.get_extra_info("ssl_object")
        logger.debug("ftp_data_secured", host=self.host, port=self.port,
                     session_reused=bool(tls is not None and tls.session_reused))

    async def read(self, size: int) -> bytes:
        """Read up to size bytes; b"" means the server finished sending."""
        return await asyncio.wait_for(self._reader.read(size), self.timeout)

    async def write(self, data: bytes) -> None:
        self._writer.write(data)
        await asyncio.wait_for(self._writer.drain(), self.timeout)

    async def close(self) -> None:
        """Close gracefully; the peer sees end of data. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self._writer.close()
        try:
            await asyncio.wait_for(self._writer.wait_closed(), self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("ftp_data_close_failed", host=self.host, port=self.port, error=str(e))

    def abort(self) -> None:
        """Drop the connection immediately without flushing."""
        if self.closed:
            return
        self.closed = True
        self._writer.transport.abort()


async def _request_address(session: ControlSession, command: str) -> Tuple[ControlReply, str, int]:
    reply = await session.send_command(command)
    if reply.is_failure:
        return reply, "", 0
    if command == "EPSV":
        if reply.code != 229:
            raise DataChannelError(f"Unexpected reply to EPSV: {reply}", reply)
        return reply, session.host, parse_epsv_reply(reply.message)
    if reply.code != 227:
        raise DataChannelError(f"Unexpected reply to PASV: {reply}", reply)
    host, port = parse_pasv_reply(reply.message)
    if host == "0.0.0.0":
        host = session.host
    return reply, host, port


async def open_passive(session: ControlSession) -> DataChannel:
    """
    Negotiate and open a passive data connection.

    Passive commands from the session config are tried in order; a
    negative reply moves on to the next one. A reply whose address cannot
    be parsed fails immediately, before any connection attempt.

    Raises:
        DataChannelError: If negotiation or the connection fails
    """
    commands = [command.upper() for command in session.config.passive_commands]
    if not commands:
        raise DataChannelError("No passive mode commands configured")

    last_reply = None
    for command in commands:
        reply, host, port = await _request_address(session, command)
        if not reply.is_failure:
            break
        logger.debug("ftp_passive_refused", command=command, code=reply.code)
        last_reply = reply
    else:
        raise DataChannelError(f"Server refused passive mode: {last_reply}", last_reply)

    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), session.timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.error("ftp_passive_connect_failed", host=host, port=port, error=str(e) or type(e).__name__)
        raise DataChannelError(f"Cannot open data connection to {host}:{port} - {e or 'timed out'}") from e

    logger.debug("ftp_passive_opened", command=command, host=host, port=port)
    return DataChannel(host, port, reader, writer, session.timeout)
