"""Channel state machine driving one remote program over a Connection.

States::

    INIT -> OPENED -> REQUESTED -> RUNNING -> CLOSING -> CLOSED
                                     \\________________/
    ERRORED is reachable from any non-terminal state.

``recv`` is the only call that waits on the peer. Draining loops on ``recv``
until the channel reports it is closed; an exit status alone does not end the
loop.
"""

from __future__ import annotations

from enum import StrEnum
from types import TracebackType

from sshfleet.connection import Connection
from sshfleet.errors import ChannelProtocolError, ChannelStateError, SSHFleetError
from sshfleet.logger import get_logger
from sshfleet.models import (
    ChannelEvent,
    ClosedEvent,
    DataEvent,
    EofEvent,
    ExecutionResult,
    ExitSignalEvent,
    ExitStatusEvent,
    OutputChunk,
)

__all__ = ["Channel", "ChannelState"]

logger = get_logger("sshfleet.channel")

_EVENT_TYPES = (DataEvent, EofEvent, ExitStatusEvent, ExitSignalEvent, ClosedEvent)


class ChannelState(StrEnum):
    """Lifecycle state of a Channel."""

    INIT = "init"
    OPENED = "opened"
    REQUESTED = "requested"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


_TERMINAL = frozenset({ChannelState.CLOSED, ChannelState.ERRORED})


class Channel:
    """A single command or subsystem session multiplexed over a Connection.

    The channel borrows its connection; closing the channel never closes the
    connection.
    """

    def __init__(self, connection: Connection) -> None:
        self.connection = connection
        self.channel_id: int | None = None
        self.state = ChannelState.INIT
        self._eof = False

    @classmethod
    async def open(cls, connection: Connection) -> Channel:
        """Allocate a channel on the connection.

        Raises:
            ConnectionError: If the transport fails to allocate the channel
        """
        channel = cls(connection)
        try:
            channel.channel_id = await connection.transport.open_channel(connection.handle)
        except SSHFleetError:
            channel.state = ChannelState.ERRORED
            raise
        channel.state = ChannelState.OPENED
        logger.debug("Channel opened", host=connection.host, channel=channel.channel_id)
        return channel

    def _require(self, operation: str, *states: ChannelState) -> None:
        if self.state not in states:
            raise ChannelStateError(operation, self.state.value)

    async def exec(self, command: str) -> None:
        """Request execution of a shell command on the channel.

        Raises:
            ChannelStateError: If the channel is not freshly opened
            ChannelProtocolError: If the peer rejects the request
        """
        self._require("exec", ChannelState.OPENED)
        self.state = ChannelState.REQUESTED
        logger.debug("Exec requested", host=self.connection.host, channel=self.channel_id, command=command)
        try:
            accepted = await self.connection.transport.exec(self.connection.handle, self.channel_id, command)
        except SSHFleetError:
            self.state = ChannelState.ERRORED
            raise
        if not accepted:
            self.state = ChannelState.ERRORED
            raise ChannelProtocolError(f"{self.connection.host}: exec request rejected")
        self.state = ChannelState.RUNNING

    async def subsystem(self, name: str) -> bool:
        """Request a subsystem (e.g. "sftp") on the channel.

        Returns:
            True if the peer accepted the subsystem, False otherwise. A rejected
            channel ends up ERRORED.
        """
        self._require("request subsystem on", ChannelState.OPENED)
        self.state = ChannelState.REQUESTED
        try:
            accepted = await self.connection.transport.subsystem(self.connection.handle, self.channel_id, name)
        except SSHFleetError:
            self.state = ChannelState.ERRORED
            raise
        self.state = ChannelState.RUNNING if accepted else ChannelState.ERRORED
        logger.debug("Subsystem requested", host=self.connection.host, subsystem=name, accepted=accepted)
        return accepted

    async def send(self, data: bytes | str) -> None:
        """Write to the remote program's standard input.

        Raises:
            ChannelStateError: If the channel is not RUNNING
        """
        self._require("send on", ChannelState.RUNNING)
        if isinstance(data, str):
            data = data.encode()
        await self.connection.transport.send(self.connection.handle, self.channel_id, data)

    async def send_eof(self) -> None:
        """Tell the remote program no more input will follow."""
        self._require("send EOF on", ChannelState.RUNNING)
        await self.connection.transport.send_eof(self.connection.handle, self.channel_id)

    async def recv(self) -> ChannelEvent:
        """Wait for the next event on this channel.

        Raises:
            ChannelStateError: If the channel is not RUNNING or CLOSING
            ChannelProtocolError: On an event outside the channel event union,
                or data arriving after EOF
            ConnectionError: If the transport fails while waiting
        """
        self._require("receive on", ChannelState.RUNNING, ChannelState.CLOSING)
        try:
            event = await self.connection.transport.recv(self.connection.handle, self.channel_id)
        except SSHFleetError:
            self.state = ChannelState.ERRORED
            raise

        if not isinstance(event, _EVENT_TYPES):
            self.state = ChannelState.ERRORED
            raise ChannelProtocolError(f"{self.connection.host}: unexpected channel event {event!r}")
        if isinstance(event, DataEvent) and self._eof:
            self.state = ChannelState.ERRORED
            raise ChannelProtocolError(f"{self.connection.host}: data received after EOF")
        if isinstance(event, EofEvent):
            self._eof = True
        elif isinstance(event, ClosedEvent):
            self.state = ChannelState.CLOSED
            logger.debug("Channel closed", host=self.connection.host, channel=self.channel_id)
        return event

    async def close(self) -> None:
        """Request the channel be closed and wait for the peer to confirm.

        Events still in flight are discarded. Closing a CLOSED or ERRORED
        channel does nothing.
        """
        if self.state in _TERMINAL:
            return
        if self.state is ChannelState.INIT:
            self.state = ChannelState.CLOSED
            return
        self.state = ChannelState.CLOSING
        await self.connection.transport.close_channel(self.connection.handle, self.channel_id)
        while self.state is ChannelState.CLOSING:
            await self.recv()

    async def drain(self) -> ExecutionResult:
        """Receive events until the channel is closed and collect the result.

        Output chunks are kept in arrival order across stdout and stderr. If the
        channel closes without an exit status the result is still successful,
        with ``exit_code=None``.
        """
        output: list[OutputChunk] = []
        exit_code: int | None = None
        exit_signal: str | None = None

        while True:
            event = await self.recv()
            if isinstance(event, DataEvent):
                output.append(OutputChunk(stream=event.stream, data=event.data))
            elif isinstance(event, ExitStatusEvent):
                exit_code = event.code
            elif isinstance(event, ExitSignalEvent):
                exit_signal = event.signal
            elif isinstance(event, ClosedEvent):
                break

        if exit_code is None:
            logger.warning(
                "Channel closed without exit status",
                host=self.connection.host,
                exit_signal=exit_signal,
            )
        return ExecutionResult.success(
            host=self.connection.host,
            output=output,
            exit_code=exit_code,
            exit_signal=exit_signal,
        )

    async def run(self, command: str) -> ExecutionResult:
        """Exec a command and drain the channel to completion."""
        await self.exec(command)
        return await self.drain()

    async def __aenter__(self) -> Channel:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"Channel(host={self.connection.host!r}, id={self.channel_id}, state={self.state.value})"
