# ftp_access/client.py
"""
FTP client facade.

Every public operation runs in its own session: connect, secure (when
configured), log in, operate, and close. The session is closed on every exit
path, including errors and cancellation, before the result or the error
reaches the caller.

Example:
    client = Client(host="ftp.example.com", user="app", password="secret", secure=True)
    entries = await client.list("/incoming")
    await client.download_to("report.csv", "/incoming/report.csv")
"""
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union
from uuid import uuid4

import structlog

from ftp_access.config import ConnectionConfig, Settings, settings as default_settings
from ftp_access.errors import FTPError
from ftp_access.models import FileEntry, HealthCheckResult, TransferProgress
from ftp_access.monitoring.context import reset_session_context, set_session_context
from ftp_access.monitoring.errors import record_error
from ftp_access.monitoring.logger import LogSink, log
from ftp_access.protocol.reply import ControlReply
from ftp_access.protocol.session import ControlSession
from ftp_access.protocol.transfer import ProgressObserver, ProgressTracker, Sink, Source, TransferEngine

logger = structlog.get_logger()

_LOG_PROGRESS = object()


def log_progress(info: TransferProgress) -> None:
    """Default progress observer: log the running byte count."""
    logger.info("ftp_progress", name=info.name, kind=info.kind, bytes=info.bytes,
                bytes_overall=info.bytes_overall, percent=info.percent)


class Client:
    """
    FTP/FTPS client with one session per call.

    Args:
        config: Connection parameters; defaults to localhost:21 as anonymous
        log_sink: Receives raw protocol lines when config.verbose is set
        **overrides: Individual ConnectionConfig fields, applied on top of config
    """

    def __init__(self, config: Optional[ConnectionConfig] = None,
                 log_sink: Optional[LogSink] = None, **overrides: Any):
        if config is None:
            config = ConnectionConfig(**overrides)
        elif overrides:
            config = ConnectionConfig(**{**config.model_dump(), **overrides})
        self.config = config
        self._log_sink = log_sink
        self._progress: Optional[ProgressTracker] = None
        self.last_session: Optional[ControlSession] = None
        log("INFO", f"FTP client initialized for {config.host}:{config.port}", component="client")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      log_sink: Optional[LogSink] = None, **overrides: Any) -> "Client":
        """Build a client from environment settings (FTP_HOST, FTP_PORT, ...)."""
        settings = settings or default_settings
        return cls(settings.connection_config(**overrides), log_sink=log_sink)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[TransferEngine]:
        """
        Open an authenticated session for several operations in a row.

        The session is closed when the block exits, however it exits.
        """
        session = ControlSession(self.config, self._log_sink)
        self.last_session = session
        try:
            await session.connect()
            await session.secure_if_requested()
            await session.authenticate(self.config.user, self.config.password)
            await session.prepare_transfers()
            yield TransferEngine(session, self._progress or ProgressTracker())
        finally:
            await session.close()

    async def _run(self, operation: str, remote_path: Optional[str],
                   action: Callable[[TransferEngine], Awaitable[Any]]) -> Any:
        tokens = set_session_context(session_id=uuid4().hex, operation=operation, remote_path=remote_path)
        try:
            async with self.session() as engine:
                return await action(engine)
        except FTPError as e:
            record_error("client", operation, f"FTP {operation} failed: {e}",
                         details={"host": self.config.host, "path": remote_path}, exc=e)
            raise
        finally:
            reset_session_context(tokens)

    async def list(self, path: str = "") -> List[FileEntry]:
        """
        List files and directories in the working directory, or at path.
        MLSD, Unix and DOS listings are understood.
        """
        return await self._run("list", path, lambda engine: engine.list(path))

    async def download_to(self, destination: Sink, from_remote_path: str,
                          start_at: int = 0) -> ControlReply:
        """
        Download a remote file into a writable object or a local file.

        start_at resumes from a byte offset; for a local file the offset is
        applied to it as well, so resuming a failed download means passing
        the size of the partial local file.
        """
        return await self._run(
            "download_to", from_remote_path,
            lambda engine: engine.download(from_remote_path, destination, start_at),
        )

    async def download_to_dir(self, local_dir: Union[str, os.PathLike],
                              remote_dir: Optional[str] = None) -> List[Path]:
        """Download all files of a remote directory (one level) into local_dir."""
        return await self._run(
            "download_to_dir", remote_dir,
            lambda engine: engine.download_to_dir(local_dir, remote_dir),
        )

    async def upload_from(self, source: Source, to_remote_path: str, local_start: int = 0,
                          local_end_inclusive: Optional[int] = None) -> ControlReply:
        """
        Upload a readable object, bytes or a local file. An existing remote
        file is overwritten. For a local file, local_start and
        local_end_inclusive upload only that byte range.
        """
        return await self._run(
            "upload_from", to_remote_path,
            lambda engine: engine.upload(source, to_remote_path, local_start, local_end_inclusive),
        )

    async def remove(self, path: str, ignore_error_codes: bool = False) -> ControlReply:
        """Remove a file; with ignore_error_codes a refusal is not an error."""
        return await self._run("remove", path, lambda engine: engine.remove(path, ignore_error_codes))

    async def size(self, path: str) -> int:
        """Get the size of a file in bytes."""
        return await self._run("size", path, lambda engine: engine.size(path))

    def track_progress(self, observer: Optional[ProgressObserver] = _LOG_PROGRESS,
                       known_sizes: Optional[Dict[str, int]] = None) -> None:
        """
        Report progress of later transfers to observer.

        Without arguments progress is logged. Passing None stops tracking.
        known_sizes maps file names to sizes (e.g. from a listing) so
        progress can include a percentage.
        """
        if observer is None:
            self._progress = None
            return
        if observer is _LOG_PROGRESS:
            observer = log_progress
        self._progress = ProgressTracker(observer, known_sizes)

    async def health_check(self) -> HealthCheckResult:
        """Connect, log in and NOOP. Never raises."""
        start = time.monotonic()
        protocol = "ftps" if self.config.is_secure else "ftp"
        try:
            async with self.session() as engine:
                reply = await engine.session.send_command("NOOP")
                greeting = engine.session.greeting.message if engine.session.greeting else ""
            latency_ms = (time.monotonic() - start) * 1000
            return HealthCheckResult(
                healthy=not reply.is_failure,
                message=str(reply),
                protocol=protocol,
                latency_ms=latency_ms,
                details={"host": self.config.host, "port": self.config.port, "greeting": greeting},
            )
        except FTPError as e:
            logger.warning("ftp_health_check_failed", host=self.config.host, error=str(e))
            return HealthCheckResult(
                healthy=False,
                message=str(e),
                protocol=protocol,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"host": self.config.host, "port": self.config.port,
                         "error_type": type(e).__name__},
            )
