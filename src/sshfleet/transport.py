"""Secure transport implementations.

A Transport owns the actual SSH machinery. Connections and channels above it
only ever see an opaque handle, integer channel ids, and the channel events
from ``sshfleet.models``. Two variants exist:

- AsyncSSHTransport: real network I/O via asyncssh
- RecordingTransport: no network; records every call and fabricates the same
  success responses, used for dry runs and tests

The variant is chosen per Connection.open call, never through global state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import asyncssh

from sshfleet.errors import ChannelProtocolError, ConnectionError
from sshfleet.logger import get_logger
from sshfleet.models import (
    ChannelEvent,
    ClosedEvent,
    DataEvent,
    EofEvent,
    ExitSignalEvent,
    ExitStatusEvent,
    Stream,
)

__all__ = [
    "AsyncSSHTransport",
    "RecordedCall",
    "RecordingTransport",
    "Transport",
]

logger = get_logger("sshfleet.transport")


class Transport(Protocol):
    """Capability interface for the secure-shell transport.

    ``recv`` is the only call that waits for the peer; it suspends the calling
    task until the next event for that channel id arrives.
    """

    async def connect(self, host: str, port: int, options: Mapping[str, Any], timeout: float | None) -> Any:
        """Open a connection and return an opaque handle."""
        ...

    async def close(self, handle: Any) -> None:
        """Close the connection behind the handle."""
        ...

    async def open_channel(self, handle: Any) -> int:
        """Allocate a new session channel and return its id."""
        ...

    async def exec(self, handle: Any, channel_id: int, command: str) -> bool:
        """Request command execution; return True if the peer accepted it."""
        ...

    async def subsystem(self, handle: Any, channel_id: int, name: str) -> bool:
        """Request a subsystem; return True if the peer accepted it."""
        ...

    async def send(self, handle: Any, channel_id: int, data: bytes) -> None:
        """Write to the channel's input stream."""
        ...

    async def send_eof(self, handle: Any, channel_id: int) -> None:
        """Signal that no more input will be written."""
        ...

    async def recv(self, handle: Any, channel_id: int) -> ChannelEvent:
        """Wait for the next event on the channel."""
        ...

    async def close_channel(self, handle: Any, channel_id: int) -> None:
        """Request the channel be closed; a ClosedEvent confirms it."""
        ...


@dataclass
class _ChannelFailure:
    """Queue marker for a channel lost with an error."""

    exc: BaseException


class _QueueSession(asyncssh.SSHClientSession):
    """asyncssh session that turns channel callbacks into queued events."""

    def __init__(self, queue: asyncio.Queue[ChannelEvent | _ChannelFailure]) -> None:
        self._queue = queue

    def data_received(self, data: bytes, datatype: int | None) -> None:
        stream = Stream.STDERR if datatype == asyncssh.EXTENDED_DATA_STDERR else Stream.STDOUT
        self._queue.put_nowait(DataEvent(stream=stream, data=data))

    def eof_received(self) -> bool:
        self._queue.put_nowait(EofEvent())
        return False

    def exit_status_received(self, status: int) -> None:
        self._queue.put_nowait(ExitStatusEvent(code=status))

    def exit_signal_received(self, signal: str, core_dumped: bool, msg: str, lang: str) -> None:
        self._queue.put_nowait(ExitSignalEvent(signal=signal, message=msg))

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is None:
            self._queue.put_nowait(ClosedEvent())
        else:
            self._queue.put_nowait(_ChannelFailure(exc))


@dataclass
class _AsyncSSHChannel:
    queue: asyncio.Queue[ChannelEvent | _ChannelFailure] = field(default_factory=asyncio.Queue)
    chan: asyncssh.SSHClientChannel[bytes] | None = None


@dataclass
class _AsyncSSHHandle:
    host: str
    conn: asyncssh.SSHClientConnection
    channels: dict[int, _AsyncSSHChannel] = field(default_factory=dict)
    next_id: int = 0


# Option names that differ between sshfleet and asyncssh.connect()
_OPTION_ALIASES = {
    "user": "username",
    "identity": "client_keys",
}

# Accepted for compatibility; asyncssh never prompts on the terminal.
_IGNORED_OPTIONS = frozenset({"user_interaction"})


def asyncssh_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """Translate sshfleet transport options to asyncssh.connect() keywords."""
    translated: dict[str, Any] = {}
    for key, value in options.items():
        if key in _IGNORED_OPTIONS:
            continue
        name = _OPTION_ALIASES.get(key, key)
        if name == "client_keys" and isinstance(value, str):
            value = [value]
        translated[name] = value
    return translated


class AsyncSSHTransport:
    """Transport backed by asyncssh.

    Respects ~/.ssh/config automatically via asyncssh.
    """

    async def connect(
        self,
        host: str,
        port: int,
        options: Mapping[str, Any],
        timeout: float | None,
    ) -> _AsyncSSHHandle:
        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(host, port=port, **asyncssh_options(options)),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise ConnectionError(host, f"Connection timed out after {timeout}s") from e
        except asyncssh.PermissionDenied as e:
            raise ConnectionError(host, f"Authentication failed: {e}") from e
        except asyncssh.HostKeyNotVerifiable as e:
            raise ConnectionError(host, f"Host key verification failed: {e}") from e
        except (asyncssh.Error, OSError) as e:
            raise ConnectionError(host, f"Connection failed: {e}") from e
        except (TypeError, ValueError) as e:
            # Unknown option names, unreadable keys (KeyImportError is a ValueError)
            raise ConnectionError(host, f"Invalid connection options: {e}") from e
        return _AsyncSSHHandle(host=host, conn=conn)

    async def close(self, handle: _AsyncSSHHandle) -> None:
        handle.conn.close()
        await handle.conn.wait_closed()

    async def open_channel(self, handle: _AsyncSSHHandle) -> int:
        channel_id = handle.next_id
        handle.next_id += 1
        handle.channels[channel_id] = _AsyncSSHChannel()
        return channel_id

    async def _start(self, handle: _AsyncSSHHandle, channel_id: int, **request: Any) -> bool:
        slot = self._slot(handle, channel_id)
        try:
            chan, _session = await handle.conn.create_session(
                lambda: _QueueSession(slot.queue),
                encoding=None,
                **request,
            )
        except asyncssh.ChannelOpenError as e:
            logger.debug("Session request rejected", host=handle.host, channel=channel_id, reason=str(e))
            return False
        except (asyncssh.Error, OSError) as e:
            raise ConnectionError(handle.host, f"Session request failed: {e}") from e
        slot.chan = chan
        return True

    async def exec(self, handle: _AsyncSSHHandle, channel_id: int, command: str) -> bool:
        return await self._start(handle, channel_id, command=command)

    async def subsystem(self, handle: _AsyncSSHHandle, channel_id: int, name: str) -> bool:
        return await self._start(handle, channel_id, subsystem=name)

    async def send(self, handle: _AsyncSSHHandle, channel_id: int, data: bytes) -> None:
        chan = self._running(handle, channel_id)
        chan.write(data)

    async def send_eof(self, handle: _AsyncSSHHandle, channel_id: int) -> None:
        chan = self._running(handle, channel_id)
        chan.write_eof()

    async def recv(self, handle: _AsyncSSHHandle, channel_id: int) -> ChannelEvent:
        item = await self._slot(handle, channel_id).queue.get()
        if isinstance(item, _ChannelFailure):
            raise ConnectionError(handle.host, f"Channel lost: {item.exc}") from item.exc
        if isinstance(item, ClosedEvent):
            handle.channels.pop(channel_id, None)
        return item

    async def close_channel(self, handle: _AsyncSSHHandle, channel_id: int) -> None:
        slot = self._slot(handle, channel_id)
        if slot.chan is None:
            # Never started: there is nothing on the wire to close
            slot.queue.put_nowait(ClosedEvent())
        else:
            slot.chan.close()

    def _slot(self, handle: _AsyncSSHHandle, channel_id: int) -> _AsyncSSHChannel:
        try:
            return handle.channels[channel_id]
        except KeyError:
            raise ChannelProtocolError(f"Unknown channel id {channel_id} on {handle.host}") from None

    def _running(self, handle: _AsyncSSHHandle, channel_id: int) -> asyncssh.SSHClientChannel[bytes]:
        chan = self._slot(handle, channel_id).chan
        if chan is None:
            raise ChannelProtocolError(f"Channel {channel_id} on {handle.host} has no session")
        return chan


@dataclass(frozen=True)
class RecordedCall:
    """One call made against a RecordingTransport."""

    operation: str
    host: str
    args: tuple[Any, ...] = ()


@dataclass
class _RecordingHandle:
    host: str
    port: int
    channels: dict[int, asyncio.Queue[ChannelEvent]] = field(default_factory=dict)
    next_id: int = 0


def _default_response(command: str) -> Sequence[ChannelEvent]:
    return (EofEvent(), ExitStatusEvent(code=0), ClosedEvent())


class RecordingTransport:
    """No-network transport that records invocations instead of connecting.

    Every exec request is answered with the events returned by ``responder``
    (by default: EOF, exit status 0, closed), so callers see exactly the shape
    of a successful remote run.

    Args:
        responder: Maps a command string to the events the fake peer emits
    """

    def __init__(self, responder: Callable[[str], Iterable[ChannelEvent]] | None = None) -> None:
        self._responder = responder or _default_response
        self.calls: list[RecordedCall] = []

    def _record(self, operation: str, host: str, *args: Any) -> None:
        self.calls.append(RecordedCall(operation=operation, host=host, args=args))

    def commands(self, host: str | None = None) -> list[str]:
        """Commands requested via exec, optionally for one host only."""
        return [
            call.args[1]
            for call in self.calls
            if call.operation == "exec" and (host is None or call.host == host)
        ]

    async def connect(
        self,
        host: str,
        port: int,
        options: Mapping[str, Any],
        timeout: float | None,
    ) -> _RecordingHandle:
        self._record("connect", host, port, dict(options), timeout)
        return _RecordingHandle(host=host, port=port)

    async def close(self, handle: _RecordingHandle) -> None:
        self._record("close", handle.host)

    async def open_channel(self, handle: _RecordingHandle) -> int:
        channel_id = handle.next_id
        handle.next_id += 1
        handle.channels[channel_id] = asyncio.Queue()
        self._record("open_channel", handle.host, channel_id)
        return channel_id

    async def exec(self, handle: _RecordingHandle, channel_id: int, command: str) -> bool:
        self._record("exec", handle.host, channel_id, command)
        queue = handle.channels[channel_id]
        for event in self._responder(command):
            queue.put_nowait(event)
        return True

    async def subsystem(self, handle: _RecordingHandle, channel_id: int, name: str) -> bool:
        self._record("subsystem", handle.host, channel_id, name)
        return True

    async def send(self, handle: _RecordingHandle, channel_id: int, data: bytes) -> None:
        self._record("send", handle.host, channel_id, data)

    async def send_eof(self, handle: _RecordingHandle, channel_id: int) -> None:
        self._record("send_eof", handle.host, channel_id)

    async def recv(self, handle: _RecordingHandle, channel_id: int) -> ChannelEvent:
        return await handle.channels[channel_id].get()

    async def close_channel(self, handle: _RecordingHandle, channel_id: int) -> None:
        self._record("close_channel", handle.host, channel_id)
        handle.channels[channel_id].put_nowait(ClosedEvent())
