"""Secure copy over a Channel.

This speaks the scp "protocol" with a remote ``scp`` process started on an
exec channel: ``scp -t`` (sink) when uploading, ``scp -f`` (source) when
downloading. The protocol is not formally documented; it is inferred from the
BSD and OpenSSH sources.

Messages, each terminated by a newline:

    T<mtime> 0 <atime> 0     timestamps of the next file or directory (-p only)
    C<mode> <size> <name>    a file; <size> bytes of data follow, then a \\0
    D<mode> 0 <name>         enter a directory
    E                        leave the current directory

Every message is answered with a single status byte: ``\\0`` for success,
``\\1`` for a soft error or ``\\2`` for a hard error, the latter two followed
by an error text up to a newline.
"""

from __future__ import annotations

import os
import shlex
import stat
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from sshfleet.channel import Channel
from sshfleet.errors import TransferError
from sshfleet.logger import get_logger
from sshfleet.models import ClosedEvent, DataEvent, EofEvent, ExitStatusEvent, Stream

__all__ = [
    "ScpReceiver",
    "ScpSender",
    "sink_command",
    "source_command",
]

logger = get_logger("sshfleet.scp")

CHUNK_SIZE = 32 * 1024

OK = b"\0"
SOFT_ERROR = b"\1"
HARD_ERROR = b"\2"


def sink_command(remote: str, recursive: bool = False, preserve: bool = False) -> str:
    """Command that starts a remote scp receiving into ``remote``."""
    return " ".join([*_flags(recursive, preserve), "-t", "--", shlex.quote(remote)])


def source_command(remote: str, recursive: bool = False, preserve: bool = False) -> str:
    """Command that starts a remote scp sending ``remote``."""
    return " ".join([*_flags(recursive, preserve), "-f", "--", shlex.quote(remote)])


def _flags(recursive: bool, preserve: bool) -> list[str]:
    flags = ["scp"]
    if recursive:
        flags.append("-r")
    if preserve:
        flags.append("-p")
    return flags


class _ScpStream:
    """Buffered reader over the stdout events of a running scp channel."""

    def __init__(self, channel: Channel) -> None:
        self._channel = channel
        self._buffer = bytearray()
        self._eof = False
        self.closed = False
        self.exit_code: int | None = None
        self.stderr = bytearray()

    def _take(self, event: object) -> bool:
        """Account for one event; True if it added stdout data to the buffer."""
        if isinstance(event, DataEvent):
            if event.stream is Stream.STDERR:
                self.stderr.extend(event.data)
                return False
            self._buffer.extend(event.data)
            return True
        if isinstance(event, ExitStatusEvent):
            self.exit_code = event.code
        elif isinstance(event, EofEvent):
            self._eof = True
        elif isinstance(event, ClosedEvent):
            self._eof = True
            self.closed = True
        return False

    async def _fill(self) -> bool:
        """Wait for more stdout data; False once the peer has nothing more to send."""
        while not self._eof:
            if self._take(await self._channel.recv()):
                return True
        return False

    def _ended(self) -> TransferError:
        detail = self.stderr.decode(errors="replace").strip() or "remote scp ended unexpectedly"
        return TransferError(detail)

    async def read(self, size: int) -> bytes:
        while len(self._buffer) < size:
            if not await self._fill():
                raise self._ended()
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    async def readline(self) -> bytes | None:
        """Read one newline-terminated line; None if the peer ended cleanly between lines."""
        while b"\n" not in self._buffer:
            if not await self._fill():
                if not self._buffer:
                    return None
                raise self._ended()
        end = self._buffer.index(b"\n") + 1
        line = bytes(self._buffer[:end])
        del self._buffer[:end]
        return line

    async def copy_to(self, target: BinaryIO, size: int) -> None:
        remaining = size
        while remaining:
            if not self._buffer and not await self._fill():
                raise self._ended()
            chunk = self._buffer[:remaining]
            target.write(chunk)
            del self._buffer[: len(chunk)]
            remaining -= len(chunk)

    async def finish(self) -> int | None:
        """Drain the channel to closed; return the remote exit status."""
        while not self.closed:
            self._take(await self._channel.recv())
        return self.exit_code


class _ScpPeer:
    def __init__(self, channel: Channel, preserve: bool = False) -> None:
        self._channel = channel
        self._stream = _ScpStream(channel)
        self.preserve = preserve
        self.transferred: list[str] = []

    @property
    def host(self) -> str:
        return self._channel.connection.host

    async def _check_exit(self) -> None:
        exit_code = await self._stream.finish()
        if exit_code not in (0, None):
            detail = self._stream.stderr.decode(errors="replace").strip()
            raise TransferError(f"scp exited with status {exit_code}: {detail}", self.transferred)

    def _fail(self, message: str) -> TransferError:
        return TransferError(message, self.transferred)


class ScpSender(_ScpPeer):
    """Client side of an upload: sends files to a remote ``scp -t``."""

    async def start(self) -> None:
        """Wait for the sink to signal it is ready."""
        await self._ack()

    async def _ack(self) -> None:
        status = await self._stream.read(1)
        if status == OK:
            return
        if status in (SOFT_ERROR, HARD_ERROR):
            line = await self._stream.readline()
            message = (line or b"").decode(errors="replace").strip()
            raise self._fail(message or "remote scp reported an error")
        raise self._fail(f"Unexpected scp response {status!r}")

    async def _message(self, text: str) -> None:
        await self._channel.send(text.encode())
        await self._ack()

    async def _send_times(self, st: os.stat_result) -> None:
        await self._message(f"T{int(st.st_mtime)} 0 {int(st.st_atime)} 0\n")

    async def send_file(self, path: Path, name: str | None = None, relative: str | None = None) -> None:
        """Send one regular file, named ``name`` on the remote side."""
        name = name or path.name
        _check_name(name)
        st = path.stat()
        if self.preserve:
            await self._send_times(st)
        await self._message(f"C{stat.S_IMODE(st.st_mode):04o} {st.st_size} {name}\n")
        with path.open("rb") as f:
            while chunk := f.read(CHUNK_SIZE):
                await self._channel.send(chunk)
        await self._channel.send(OK)
        await self._ack()
        self.transferred.append(relative or name)
        logger.debug("Sent file", host=self.host, file=relative or name, size=st.st_size)

    async def send_directory(self, path: Path, name: str | None = None, relative: str | None = None) -> None:
        """Send a directory tree, entries in sorted order."""
        name = name or path.name
        _check_name(name)
        relative = relative or name
        st = path.stat()
        if self.preserve:
            await self._send_times(st)
        await self._message(f"D{stat.S_IMODE(st.st_mode):04o} 0 {name}\n")
        for entry in sorted(path.iterdir()):
            entry_relative = f"{relative}/{entry.name}"
            if entry.is_dir():
                await self.send_directory(entry, entry.name, entry_relative)
            elif entry.is_file():
                await self.send_file(entry, entry.name, entry_relative)
            else:
                logger.warning("Skipping special file", host=self.host, file=str(entry))
        await self._message("E\n")

    async def finish(self) -> list[str]:
        """Signal end of input and wait for the remote scp to exit."""
        await self._channel.send_eof()
        await self._check_exit()
        return self.transferred


class ScpReceiver(_ScpPeer):
    """Client side of a download: receives from a remote ``scp -f``."""

    async def _reply(self, status: bytes = OK) -> None:
        await self._channel.send(status)

    async def receive(self, target: Path) -> list[str]:
        """Receive everything the source sends into ``target``.

        If ``target`` is an existing directory, entries are created inside it;
        otherwise the first entry is created as ``target`` itself.

        Raises:
            TransferError: On a hard error, a malformed message, or if the
                source reported soft errors for some entries
        """
        directories: list[tuple[Path, str, tuple[int, int] | None]] = []
        times: tuple[int, int] | None = None
        soft_errors: list[str] = []

        await self._reply()
        while True:
            line = await self._stream.readline()
            if line is None:
                break
            kind, body = line[:1], line[1:].rstrip(b"\n").decode(errors="replace")

            if kind == SOFT_ERROR:
                logger.warning("Remote scp error", host=self.host, error=body)
                soft_errors.append(body)
            elif kind == HARD_ERROR:
                raise self._fail(body or "remote scp reported a fatal error")
            elif kind == b"T":
                times = _parse_times(body)
                await self._reply()
            elif kind == b"C":
                mode, size, name = _parse_entry(body)
                parent, parent_relative = (directories[-1][0], directories[-1][1]) if directories else (None, "")
                dest = self._destination(target, parent, name)
                await self._reply()
                with dest.open("wb") as f:
                    await self._stream.copy_to(f, size)
                status = await self._stream.read(1)
                if status != OK:
                    raise self._fail(f"Transfer of {name} was not completed by the remote side")
                if self.preserve:
                    os.chmod(dest, mode)
                    if times is not None:
                        os.utime(dest, (times[1], times[0]))
                times = None
                relative = f"{parent_relative}/{name}" if parent_relative else name
                self.transferred.append(relative)
                logger.debug("Received file", host=self.host, file=relative, size=size)
                await self._reply()
            elif kind == b"D":
                mode, _size, name = _parse_entry(body)
                parent, parent_relative = (directories[-1][0], directories[-1][1]) if directories else (None, "")
                dest = self._destination(target, parent, name)
                dest.mkdir(exist_ok=True)
                if self.preserve:
                    os.chmod(dest, mode)
                relative = f"{parent_relative}/{name}" if parent_relative else name
                directories.append((dest, relative, times))
                times = None
                await self._reply()
            elif kind == b"E":
                if not directories:
                    raise self._fail("Unbalanced end-of-directory from remote scp")
                dest, _relative, dir_times = directories.pop()
                if self.preserve and dir_times is not None:
                    os.utime(dest, (dir_times[1], dir_times[0]))
                await self._reply()
            else:
                raise self._fail(f"Unexpected scp message {line!r}")

        await self._check_exit()
        if soft_errors:
            raise self._fail("; ".join(soft_errors))
        return self.transferred

    def _destination(self, target: Path, parent: Path | None, name: str) -> Path:
        try:
            _check_name(name)
        except TransferError as e:
            raise self._fail(str(e)) from None
        if parent is not None:
            return parent / name
        if target.is_dir():
            return target / name
        return target


def _check_name(name: str) -> None:
    if not name or "\n" in name or name in (".", "..") or PurePosixPath(name).name != name:
        raise TransferError(f"Invalid file name for scp: {name!r}")


def _parse_entry(body: str) -> tuple[int, int, str]:
    try:
        mode, size, name = body.split(" ", 2)
        return int(mode, 8), int(size), name
    except ValueError:
        raise TransferError(f"Malformed scp entry: {body!r}") from None


def _parse_times(body: str) -> tuple[int, int]:
    """Parse "mtime 0 atime 0" into (mtime, atime)."""
    try:
        mtime, _mtime_usec, atime, _atime_usec = body.split(" ")
        return int(mtime), int(atime)
    except ValueError:
        raise TransferError(f"Malformed scp timestamps: {body!r}") from None
