# ftp_access/protocol/transfer.py
"""
Transfer engine: command + data channel transactions.

Every data transfer follows the same shape:

1. open a passive data channel
2. optionally send REST for resumed downloads
3. send the transfer command and wait for its preliminary reply
4. secure the data channel when the session is secured
5. stream bytes while the final control reply is awaited concurrently
6. confirm the final reply

The engine borrows a ControlSession for one operation and owns the data
channel it opens, closing it before returning.
"""
import asyncio
import inspect
import os
import posixpath
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiofiles
import aiofiles.os
import structlog

from ftp_access.errors import CommandError, FTPError, ProtocolError, TransferError
from ftp_access.models import FileEntry, TransferProgress
from ftp_access.protocol.data_channel import DataChannel, open_passive
from ftp_access.protocol.listing import parse_listing
from ftp_access.protocol.reply import ControlReply
from ftp_access.protocol.session import ControlSession, SessionState

logger = structlog.get_logger()

CHUNK_SIZE = 64 * 1024

ProgressObserver = Callable[[TransferProgress], Any]
Sink = Union[str, os.PathLike, Any]
Source = Union[str, os.PathLike, bytes, Any]

_PWD_PATH = re.compile(r'"((?:[^"]|"")*)"')


class ProgressTracker:
    """
    Reports transfer progress to an observer, chunk by chunk.

    The observer is called synchronously from the task streaming the data.
    Sizes known in advance (from a listing) turn byte counts into percentages.
    """

    def __init__(self, observer: Optional[ProgressObserver] = None,
                 known_sizes: Optional[Dict[str, int]] = None):
        self.observer = observer
        self.known_sizes: Dict[str, int] = dict(known_sizes or {})
        self.bytes_overall = 0
        self._current: Optional[TransferProgress] = None

    @property
    def active(self) -> bool:
        return self.observer is not None

    def start(self, name: str, kind: str, total_size: Optional[int] = None) -> None:
        if total_size is None:
            total_size = self.known_sizes.get(name, self.known_sizes.get(posixpath.basename(name)))
        self._current = TransferProgress(
            name=name,
            kind=kind,
            bytes_overall=self.bytes_overall,
            total_size=total_size,
        )

    def update(self, count: int) -> None:
        self.bytes_overall += count
        if self._current is None or self.observer is None:
            return
        self._current.bytes += count
        self._current.bytes_overall = self.bytes_overall
        self.observer(TransferProgress(**vars(self._current)))

    def stop(self) -> None:
        self._current = None


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


async def _discard(task: Optional[asyncio.Future]) -> None:
    """Cancel a helper task if still running and collect its outcome."""
    if task is None:
        return
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class TransferEngine:
    """Runs listing, download, upload and file commands over one session."""

    def __init__(self, session: ControlSession, progress: Optional[ProgressTracker] = None):
        self.session = session
        self.progress = progress or ProgressTracker()
        self._list_command: Optional[str] = None

    # --- simple commands ------------------------------------------------------

    async def _command(self, command: str, *expected: int) -> ControlReply:
        reply = await self.session.send_command(command)
        if reply.is_failure or (expected and reply.code not in expected):
            raise CommandError(command, reply)
        return reply

    async def size(self, remote_path: str) -> int:
        """
        Size of a remote file in bytes.

        Raises:
            CommandError: If SIZE is unsupported or the file does not exist
        """
        reply = await self._command(f"SIZE {remote_path}", 213)
        try:
            return int(reply.lines[-1].strip())
        except ValueError as e:
            raise ProtocolError(f"Invalid SIZE reply: {reply}", reply) from e

    async def remove(self, remote_path: str, ignore_error_codes: bool = False) -> ControlReply:
        """
        Delete a remote file.

        With ignore_error_codes a negative reply is returned instead of raised.
        """
        reply = await self.session.send_command(f"DELE {remote_path}")
        if reply.is_failure:
            if ignore_error_codes:
                logger.info("ftp_remove_ignored", path=remote_path, code=reply.code)
                return reply
            raise CommandError(f"DELE {remote_path}", reply)
        logger.info("ftp_removed", path=remote_path)
        return reply

    async def pwd(self) -> str:
        reply = await self._command("PWD", 257)
        match = _PWD_PATH.search(reply.message)
        if match is None:
            raise ProtocolError(f"Cannot parse working directory from reply: {reply}", reply)
        return match.group(1).replace('""', '"')

    async def cd(self, remote_path: str) -> ControlReply:
        return await self._command(f"CWD {remote_path}")

    # --- data transactions ----------------------------------------------------

    async def _transaction(
        self,
        command: str,
        stream: Callable[[DataChannel], Awaitable[None]],
        start_at: int = 0,
    ) -> ControlReply:
        session = self.session
        verb = command.split(" ", 1)[0]
        channel = await open_passive(session)
        completion: Optional[asyncio.Future] = None
        streaming: Optional[asyncio.Future] = None
        try:
            if start_at > 0:
                await self._command(f"REST {start_at}", 350)
            await session.write_line(command)
            reply = await session.read_reply()
            if reply.is_failure:
                raise CommandError(command, reply)
            if session.is_secure:
                await channel.secure(session)

            session.state = SessionState.TRANSFERRING
            streaming = asyncio.ensure_future(stream(channel))
            if reply.is_preliminary:
                # The final reply may arrive while data is still streaming
                completion = asyncio.ensure_future(self._final_reply())
                await asyncio.wait({streaming, completion}, return_when=asyncio.FIRST_COMPLETED)
                if not streaming.done():
                    early = completion.result()
                    if early.is_failure:
                        logger.warning("ftp_transfer_aborted_by_server", command=verb, code=early.code)
                        raise TransferError(f"{verb} aborted by server: {early}", early)
            try:
                await streaming
            except FTPError:
                raise
            except Exception as e:
                raise TransferError(f"{verb} data transfer failed: {e or type(e).__name__}") from e
            await channel.close()

            if completion is not None:
                reply = await completion
                completion = None
            if reply.is_failure:
                raise TransferError(f"{verb} did not complete: {reply}", reply)
            return reply
        finally:
            if not channel.closed:
                channel.abort()
            await _discard(streaming)
            await _discard(completion)
            if session.state is SessionState.TRANSFERRING:
                session.state = SessionState.AUTHENTICATED

    async def _final_reply(self) -> ControlReply:
        reply = await self.session.read_reply()
        while reply.is_preliminary:
            reply = await self.session.read_reply()
        return reply

    async def _receive(self, channel: DataChannel, write: Callable[[bytes], Any]) -> int:
        received = 0
        while True:
            chunk = await channel.read(CHUNK_SIZE)
            if not chunk:
                return received
            await _maybe_await(write(chunk))
            received += len(chunk)
            self.progress.update(len(chunk))

    async def list(self, path: str = "") -> List[FileEntry]:
        """
        List a remote directory.

        Listing commands are tried in order until the server accepts one;
        the accepted command is reused for the rest of the session.
        """
        config = self.session.config
        commands = [self._list_command] if self._list_command else list(config.effective_list_commands)
        last_error: Optional[CommandError] = None
        for command in commands:
            body = bytearray()

            async def collect(channel: DataChannel) -> None:
                await self._receive(channel, body.extend)

            full_command = f"{command} {path}".strip()
            self.progress.start(path or ".", "list")
            try:
                await self._transaction(full_command, collect)
            except CommandError as e:
                if e.code is None or e.code < 500 or command == commands[-1]:
                    raise
                logger.debug("ftp_list_command_refused", command=command, code=e.code)
                last_error = e
                continue
            finally:
                self.progress.stop()
            self._list_command = command
            entries = parse_listing(
                body.decode(config.encoding, errors="replace"),
                strict=config.strict_listing,
            )
            logger.debug("ftp_list", path=path, command=command, count=len(entries))
            return entries
        raise last_error or ProtocolError("No listing command available")

    async def download(self, remote_path: str, sink: Sink, start_at: int = 0,
                       total_size: Optional[int] = None) -> ControlReply:
        """
        Download a remote file into a writable object or a local file.

        For a local path the start offset is applied to the local file too,
        so resuming means passing the size of the partial local file. The
        local file is only touched once the server has accepted RETR.
        Partial output is left in place when the stream fails.

        Raises:
            CommandError: If REST or RETR is refused
            TransferError: If the data stream fails
        """
        if start_at < 0:
            raise ValueError("start_at must not be negative")
        self.progress.start(remote_path, "download", total_size)
        try:
            if isinstance(sink, (str, os.PathLike)):
                local_path = Path(sink)

                async def to_file(channel: DataChannel) -> None:
                    mode = "r+b" if start_at > 0 and local_path.exists() else "wb"
                    async with aiofiles.open(local_path, mode) as local_file:
                        if mode == "r+b":
                            await local_file.seek(start_at)
                            await local_file.truncate()
                        await self._receive(channel, local_file.write)

                reply = await self._transaction(f"RETR {remote_path}", to_file, start_at)
            else:
                async def to_sink(channel: DataChannel) -> None:
                    await self._receive(channel, sink.write)

                reply = await self._transaction(f"RETR {remote_path}", to_sink, start_at)
        finally:
            self.progress.stop()
        logger.info("ftp_transfer_complete", kind="download", path=remote_path, start_at=start_at)
        return reply

    async def download_to_dir(self, local_dir: Union[str, os.PathLike],
                              remote_dir: Optional[str] = None) -> List[Path]:
        """
        Download every file of a remote directory into local_dir.

        One level only: sub-directories are skipped, and so are entries
        whose name would land outside local_dir. When remote_dir is given
        the remote working directory is restored afterwards.
        """
        local_root = Path(local_dir)
        await aiofiles.os.makedirs(local_root, exist_ok=True)
        original_dir = None
        if remote_dir:
            original_dir = await self.pwd()
            await self.cd(remote_dir)
        downloaded = []
        try:
            for entry in await self.list():
                if not entry.is_file:
                    continue
                target = _local_target(local_root, entry.name)
                if target is None:
                    logger.warning("ftp_unsafe_name_skipped", name=entry.name, local_dir=str(local_root))
                    continue
                await self.download(entry.name, target, total_size=entry.size or None)
                downloaded.append(target)
        except BaseException:
            if original_dir is not None:
                await self._restore_dir(original_dir)
            raise
        if original_dir is not None:
            await self.cd(original_dir)
        return downloaded

    async def _restore_dir(self, original_dir: str) -> None:
        try:
            await self.cd(original_dir)
        except FTPError as e:
            logger.warning("ftp_restore_dir_failed", path=original_dir, error=str(e))

    async def upload(self, source: Source, remote_path: str, local_start: int = 0,
                     local_end_inclusive: Optional[int] = None) -> ControlReply:
        """
        Upload a readable object, bytes or a local file. Existing remote
        files are overwritten.

        For a local file, local_start and local_end_inclusive select the
        byte range to send; the range runs to the end of the file when
        local_end_inclusive is None.

        Raises:
            CommandError: If STOR is refused
            TransferError: If the data stream fails
        """
        is_path = isinstance(source, (str, os.PathLike))
        if not is_path and (local_start or local_end_inclusive is not None):
            raise ValueError("A byte range can only be uploaded from a local file")
        if local_start < 0 or (local_end_inclusive is not None and local_end_inclusive < local_start):
            raise ValueError("Invalid local byte range")

        total_size = None
        if isinstance(source, (bytes, bytearray, memoryview)):
            total_size = len(source)
        elif is_path:
            file_size = (await aiofiles.os.stat(source)).st_size
            end = file_size if local_end_inclusive is None else min(file_size, local_end_inclusive + 1)
            total_size = max(0, end - local_start)
        self.progress.start(remote_path, "upload", total_size)
        try:
            if is_path:
                async with aiofiles.open(source, "rb") as local_file:
                    if local_start:
                        await local_file.seek(local_start)
                    remaining = total_size

                    async def read_range(size: int) -> bytes:
                        nonlocal remaining
                        if remaining <= 0:
                            return b""
                        chunk = await local_file.read(min(size, remaining))
                        remaining -= len(chunk)
                        return chunk

                    reply = await self._transaction(
                        f"STOR {remote_path}", lambda channel: self._send(channel, read_range)
                    )
            elif isinstance(source, (bytes, bytearray, memoryview)):
                data = bytes(source)

                async def from_bytes(channel: DataChannel) -> None:
                    for offset in range(0, len(data), CHUNK_SIZE):
                        chunk = data[offset:offset + CHUNK_SIZE]
                        await channel.write(chunk)
                        self.progress.update(len(chunk))

                reply = await self._transaction(f"STOR {remote_path}", from_bytes)
            else:
                reply = await self._transaction(
                    f"STOR {remote_path}", lambda channel: self._send(channel, source.read)
                )
        finally:
            self.progress.stop()
        logger.info("ftp_transfer_complete", kind="upload", path=remote_path)
        return reply

    async def _send(self, channel: DataChannel, read: Callable[[int], Any]) -> None:
        while True:
            chunk = await _maybe_await(read(CHUNK_SIZE))
            if not chunk:
                return
            if isinstance(chunk, str):
                chunk = chunk.encode(self.session.config.encoding)
            await channel.write(chunk)
            self.progress.update(len(chunk))


def _local_target(local_root: Path, name: str) -> Optional[Path]:
    """Local path for a listed name, or None if it would escape local_root."""
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        return None
    target = local_root / name
    if not target.resolve().is_relative_to(local_root.resolve()):
        return None
    return target
