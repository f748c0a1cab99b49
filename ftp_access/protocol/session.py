# ftp_access/protocol/session.py
"""
FTP control session.

Owns the control connection: connects, optionally secures it with TLS,
logs in, and exchanges strictly sequential command/reply pairs. The
session never goes back to an earlier state; reconnecting means creating
a new session.
"""
import asyncio
import ssl
from collections import deque
from enum import Enum
from typing import Deque, Optional

import structlog

from ftp_access.config import ConnectionConfig, SecureMode
from ftp_access.errors import AuthError, ConnectError, ProtocolError, SecurityError
from ftp_access.monitoring.logger import DefaultLogSink, LogSink
from ftp_access.protocol.reply import ControlReply, ReplyParser

logger = structlog.get_logger()

READ_CHUNK = 4096
QUIT_TIMEOUT = 5.0


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    TRANSFERRING = "transferring"
    CLOSED = "closed"


class ControlSession:
    """
    One control connection to an FTP server.

    Usage:
        session = ControlSession(config)
        await session.connect()
        await session.secure_if_requested()
        await session.authenticate(config.user, config.password)
        reply = await session.send_command("SIZE file.txt")
        await session.close()
    """

    def __init__(self, config: ConnectionConfig, log_sink: Optional[LogSink] = None):
        self.config = config
        self.state = SessionState.DISCONNECTED
        self._sink = log_sink if log_sink is not None else DefaultLogSink()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._parser = ReplyParser(config.encoding)
        self._replies: Deque[ControlReply] = deque()
        self._awaiting_reply = False
        self._ssl_context: Optional[ssl.SSLContext] = None
        self.greeting: Optional[ControlReply] = None

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def timeout(self) -> Optional[float]:
        return self.config.timeout_seconds

    @property
    def is_secure(self) -> bool:
        return self._ssl_context is not None

    @property
    def ssl_object(self) -> Optional[ssl.SSLObject]:
        """TLS object of the control connection, used to resume the TLS session on data channels."""
        if self._writer is None:
            return None
        return self._writer.get_extra_info("ssl_object")

    @property
    def server_hostname(self) -> str:
        return self.config.tls_options.server_hostname or self.config.host

    def _trace(self, message: str) -> None:
        if self.config.verbose:
            self._sink.write("DEBUG", message)

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise ProtocolError(f"Operation not allowed in session state {self.state.value}")

    async def connect(self) -> ControlReply:
        """
        Open the control connection and read the server greeting.

        Implicit FTPS wraps the connection in TLS from the first byte.

        Raises:
            ConnectError: If the host is unreachable, times out or refuses service
        """
        self._require(SessionState.DISCONNECTED)
        context = None
        if self.config.secure is SecureMode.IMPLICIT:
            context = self.config.tls_options.build_context()
        try:
            logger.info("ftp_connecting", host=self.config.host, port=self.config.port,
                        secure=self.config.secure.value)
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(
                    self.config.host,
                    self.config.port,
                    ssl=context,
                    server_hostname=self.server_hostname if context else None,
                ),
                self.timeout,
            )
        except ssl.SSLError as e:
            logger.error("ftp_connection_failed", host=self.config.host, error=str(e))
            raise SecurityError(f"Implicit TLS handshake with {self.config.host} failed: {e}") from e
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("ftp_connection_failed", host=self.config.host, error=str(e) or type(e).__name__)
            raise ConnectError(
                f"Failed to connect to {self.config.host}:{self.config.port} - {e or 'timed out'}"
            ) from e

        self._ssl_context = context
        self.state = SessionState.CONNECTED
        try:
            reply = await self.read_reply()
            while reply.is_preliminary:
                reply = await self.read_reply()
        except ProtocolError as e:
            raise ConnectError(f"No valid greeting from {self.config.host}: {e}") from e
        if reply.code != 220:
            raise ConnectError(f"Server refused connection: {reply}", reply)
        self.greeting = reply
        logger.info("ftp_connected", host=self.config.host, greeting=reply.message)
        return reply

    async def secure_if_requested(self) -> Optional[ControlReply]:
        """
        Upgrade the control connection for explicit FTPS.

        Nothing to do for plain FTP or for implicit FTPS, which is secured
        by connect().

        Raises:
            SecurityError: If AUTH TLS is refused or the handshake fails
        """
        if self.config.secure is not SecureMode.EXPLICIT:
            return None
        self._require(SessionState.CONNECTED)
        reply = await self.send_command("AUTH TLS")
        if reply.code != 234:
            raise SecurityError(f"Server refused AUTH TLS: {reply}", reply)
        context = self.config.tls_options.build_context()
        try:
            await asyncio.wait_for(
                self._writer.start_tls(context, server_hostname=self.server_hostname),
                self.timeout,
            )
        except (ssl.SSLError, OSError, asyncio.TimeoutError) as e:
            logger.error("ftp_tls_upgrade_failed", host=self.config.host, error=str(e))
            raise SecurityError(f"TLS upgrade of control connection failed: {e}") from e
        self._ssl_context = context
        logger.info("ftp_control_secured", host=self.config.host)
        return reply

    async def authenticate(self, user: str, password: str) -> ControlReply:
        """
        Log in with USER/PASS.

        Raises:
            AuthError: If the server rejects the credentials or asks for an account
        """
        self._require(SessionState.CONNECTED)
        reply = await self.send_command(f"USER {user}")
        if reply.code == 331:
            reply = await self.send_command(f"PASS {password}")
        if reply.code not in (230, 202):
            logger.warning("ftp_login_rejected", host=self.config.host, user=user, code=reply.code)
            raise AuthError(f"Login as {user} rejected: {reply}", reply)
        self.state = SessionState.AUTHENTICATED
        logger.info("ftp_authenticated", host=self.config.host, user=user)
        return reply

    async def prepare_transfers(self) -> None:
        """Switch to binary mode and, on secured sessions, protect data channels."""
        self._require(SessionState.AUTHENTICATED)
        reply = await self.send_command("TYPE I")
        if reply.is_failure:
            raise ProtocolError(f"Server refused binary mode: {reply}", reply)
        # Optional; older servers answer 500/502
        await self.send_command("OPTS UTF8 ON")
        if self.is_secure:
            for command in ("PBSZ 0", "PROT P"):
                reply = await self.send_command(command)
                if reply.is_failure:
                    raise SecurityError(f"{command} refused: {reply}", reply)

    async def write_line(self, text: str) -> None:
        """Send one command line without waiting for its reply."""
        if self._writer is None or self.state in (SessionState.DISCONNECTED, SessionState.CLOSED):
            raise ProtocolError("Control connection is not open")
        if self._awaiting_reply:
            raise ProtocolError(f"Cannot send {text.split(' ', 1)[0]} before the previous reply completed")
        if text.upper().startswith("PASS "):
            self._trace("> PASS ###")
        else:
            self._trace(f"> {text}")
        self._writer.write((text + "\r\n").encode(self.config.encoding))
        self._awaiting_reply = True
        try:
            await asyncio.wait_for(self._writer.drain(), self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise ProtocolError(f"Failed to send command: {e or 'timed out'}") from e

    async def read_reply(self) -> ControlReply:
        """
        Wait for the next complete reply.

        Raises:
            ProtocolError: On malformed replies, timeout or a closed connection
        """
        if self._reader is None:
            raise ProtocolError("Control connection is not open")
        while not self._replies:
            try:
                data = await asyncio.wait_for(self._reader.read(READ_CHUNK), self.timeout)
            except asyncio.TimeoutError as e:
                raise ProtocolError(f"Timed out waiting for reply from {self.config.host}") from e
            except OSError as e:
                raise ProtocolError(f"Control connection failed: {e}") from e
            if not data:
                raise ProtocolError("Control connection closed by server")
            self._replies.extend(self._parser.feed(data))
        reply = self._replies.popleft()
        for line in reply.raw.split("\n"):
            self._trace(f"< {line}")
        if not reply.is_preliminary:
            self._awaiting_reply = False
        return reply

    async def send_command(self, text: str) -> ControlReply:
        """Send a command and return its final (non-preliminary) reply."""
        await self.write_line(text)
        reply = await self.read_reply()
        while reply.is_preliminary:
            reply = await self.read_reply()
        return reply

    async def close(self) -> None:
        """
        Send QUIT and tear down the connection.

        Idempotent and never raises: cleanup must not mask the outcome of the
        operation that used the session.
        """
        if self.state is SessionState.CLOSED:
            return
        writer = self._writer
        try:
            if writer is not None and not writer.is_closing() and not self._awaiting_reply:
                writer.write(b"QUIT\r\n")
                self._trace("> QUIT")
                await asyncio.wait_for(writer.drain(), QUIT_TIMEOUT)
        except Exception as e:
            logger.debug("ftp_quit_failed", host=self.config.host, error=str(e))
        finally:
            self.state = SessionState.CLOSED
            self._reader = None
            self._writer = None
            self._replies.clear()
            self._parser.reset()
            if writer is not None:
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), QUIT_TIMEOUT)
                except Exception as e:
                    logger.debug("ftp_teardown_failed", host=self.config.host, error=str(e))
            logger.info("ftp_closed", host=self.config.host)
