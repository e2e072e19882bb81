"""Tests for the Channel state machine and draining."""

from __future__ import annotations

from collections.abc import Iterable

import pytest

from sshfleet.channel import Channel, ChannelState
from sshfleet.connection import Connection
from sshfleet.errors import ChannelProtocolError, ChannelStateError, ConnectionError
from sshfleet.models import (
    ChannelEvent,
    ClosedEvent,
    EofEvent,
    ExitSignalEvent,
    ExitStatusEvent,
    OutputChunk,
    Stream,
)
from sshfleet.transport import RecordingTransport
from tests.fakes import completed, stderr, stdout


async def _open(responder: Iterable[ChannelEvent] | None = None) -> tuple[Channel, RecordingTransport]:
    events = list(responder) if responder is not None else None
    transport = RecordingTransport((lambda _command: events) if events is not None else None)
    connection = await Connection.open("web1", {"transport": transport})
    return await Channel.open(connection), transport


class TestLifecycle:
    """Tests for state transitions."""

    async def test_open(self) -> None:
        channel, transport = await _open()
        assert channel.state is ChannelState.OPENED
        assert channel.channel_id == 0
        assert transport.calls[-1].operation == "open_channel"

    async def test_exec_moves_to_running(self) -> None:
        channel, transport = await _open()
        await channel.exec("ls")
        assert channel.state is ChannelState.RUNNING
        assert transport.commands() == ["ls"]

    async def test_exec_twice_is_a_state_error(self) -> None:
        channel, _ = await _open()
        await channel.exec("ls")
        with pytest.raises(ChannelStateError, match="Cannot exec a channel in state 'running'"):
            await channel.exec("ls")

    async def test_exec_rejected(self) -> None:
        channel, transport = await _open()

        async def reject(*args: object) -> bool:
            return False

        transport.exec = reject  # type: ignore[method-assign]
        with pytest.raises(ChannelProtocolError, match="exec request rejected"):
            await channel.exec("ls")
        assert channel.state is ChannelState.ERRORED

    async def test_send_before_exec(self) -> None:
        channel, _ = await _open()
        with pytest.raises(ChannelStateError):
            await channel.send(b"data")

    async def test_recv_before_exec(self) -> None:
        channel, _ = await _open()
        with pytest.raises(ChannelStateError):
            await channel.recv()

    async def test_send_str_is_encoded(self) -> None:
        channel, transport = await _open()
        await channel.exec("cat")
        await channel.send("héllo")
        await channel.send_eof()
        sent = [c for c in transport.calls if c.operation in ("send", "send_eof")]
        assert sent[0].args == (0, "héllo".encode())
        assert sent[1].operation == "send_eof"

    async def test_recv_after_closed(self) -> None:
        channel, _ = await _open()
        await channel.run("true")
        assert channel.state is ChannelState.CLOSED
        with pytest.raises(ChannelStateError, match="state 'closed'"):
            await channel.recv()

    async def test_close_running_channel(self) -> None:
        channel, transport = await _open([stdout("never read")])
        await channel.exec("sleep 100")
        await channel.close()
        assert channel.state is ChannelState.CLOSED
        assert transport.calls[-1].operation == "close_channel"

    async def test_close_is_idempotent(self) -> None:
        channel, transport = await _open()
        await channel.run("true")
        calls = len(transport.calls)
        await channel.close()
        assert len(transport.calls) == calls

    async def test_close_unopened(self) -> None:
        channel, _ = await _open()
        channel.state = ChannelState.INIT
        await channel.close()
        assert channel.state is ChannelState.CLOSED

    async def test_context_manager(self) -> None:
        channel, _ = await _open([stdout("x")])
        async with channel:
            await channel.exec("cat")
        assert channel.state is ChannelState.CLOSED


class TestSubsystem:
    async def test_accepted(self) -> None:
        channel, transport = await _open()
        assert await channel.subsystem("sftp") is True
        assert channel.state is ChannelState.RUNNING
        await channel.send(b"greeting")
        assert transport.calls[-1].args == (0, b"greeting")

    async def test_rejected(self) -> None:
        channel, transport = await _open()

        async def reject(*args: object) -> bool:
            return False

        transport.subsystem = reject  # type: ignore[method-assign]
        assert await channel.subsystem("nope") is False
        assert channel.state is ChannelState.ERRORED


class TestDrain:
    """Tests for collecting a result from the event stream."""

    async def test_exit_zero(self) -> None:
        channel, _ = await _open(completed(code=0))
        result = await channel.run("true")
        assert result.ok
        assert result.exit_code == 0
        assert result.output == ()

    async def test_closed_without_exit_status(self) -> None:
        channel, _ = await _open([ClosedEvent()])
        result = await channel.run("true")
        assert result.ok
        assert result.exit_code is None

    async def test_exit_signal_is_recorded(self) -> None:
        channel, _ = await _open([EofEvent(), ExitSignalEvent(signal="KILL"), ClosedEvent()])
        result = await channel.run("sleep 100")
        assert result.exit_code is None
        assert result.exit_signal == "KILL"

    async def test_interleaved_output_keeps_order(self) -> None:
        channel, _ = await _open(completed(stdout("a"), stderr("b"), stdout("c"), code=1))
        result = await channel.run("mixed")
        assert result.output == (
            OutputChunk(Stream.STDOUT, b"a"),
            OutputChunk(Stream.STDERR, b"b"),
            OutputChunk(Stream.STDOUT, b"c"),
        )
        assert result.exit_code == 1

    async def test_exit_status_does_not_end_drain(self) -> None:
        channel, _ = await _open([ExitStatusEvent(code=0), stdout("late"), EofEvent(), ClosedEvent()])
        result = await channel.run("true")
        assert result.stdout == b"late"

    async def test_data_after_eof(self) -> None:
        channel, _ = await _open([EofEvent(), stdout("bad"), ClosedEvent()])
        with pytest.raises(ChannelProtocolError, match="data received after EOF"):
            await channel.run("true")
        assert channel.state is ChannelState.ERRORED

    async def test_unknown_event(self) -> None:
        channel, _ = await _open(["not an event"])  # type: ignore[list-item]
        with pytest.raises(ChannelProtocolError, match="unexpected channel event"):
            await channel.run("true")

    async def test_transport_failure_while_receiving(self) -> None:
        channel, transport = await _open()
        await channel.exec("true")

        async def lost(*args: object) -> None:
            raise ConnectionError("web1", "Channel lost: reset by peer")

        transport.recv = lost  # type: ignore[method-assign]
        with pytest.raises(ConnectionError):
            await channel.drain()
        assert channel.state is ChannelState.ERRORED
