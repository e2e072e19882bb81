"""Core types and dataclasses for sshfleet."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from sshfleet.errors import CommandExecutionError

__all__ = [
    "ChannelEvent",
    "ClosedEvent",
    "DataEvent",
    "EofEvent",
    "ExecutionResult",
    "ExitSignalEvent",
    "ExitStatusEvent",
    "Host",
    "OutputChunk",
    "ResultStatus",
    "Stream",
    "TransferResult",
    "host",
]


@dataclass(frozen=True)
class Host:
    """Identity and connection options for one remote endpoint."""

    name: str
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Copy so later changes to the caller's dict cannot leak in
        object.__setattr__(self, "options", dict(self.options))


def host(spec: Any, shared_options: Mapping[str, Any] | None = None) -> Host:
    """Produce a Host from any supported host specification.

    Accepted forms:
    - "name.io"
    - ("name.io", {"port": 2222})
    - {"name": "name.io", "options": {"port": 2222}}
    - an existing Host

    Shared options are merged underneath the host's own options, so a key set
    on the host wins over the same key in ``shared_options``.

    Raises:
        TypeError: If the specification has none of the forms above
    """
    shared = dict(shared_options or {})

    if isinstance(spec, Host):
        name, options = spec.name, spec.options
    elif isinstance(spec, str):
        name, options = spec, {}
    elif isinstance(spec, tuple) and len(spec) == 2:
        name, options = spec
    elif isinstance(spec, Mapping) and "name" in spec:
        name, options = spec["name"], spec.get("options", {})
    else:
        raise TypeError(f"Unsupported host specification: {spec!r}")

    return Host(name=name, options={**shared, **dict(options or {})})


class Stream(StrEnum):
    """Output stream a chunk of data arrived on."""

    STDOUT = "stdout"
    STDERR = "stderr"


class ResultStatus(StrEnum):
    """Outcome of a per-host operation."""

    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class OutputChunk:
    """One piece of output, tagged with the stream it arrived on."""

    stream: Stream
    data: bytes


@dataclass(frozen=True)
class ExecutionResult:
    """Result of running one command on one host.

    ``output`` keeps every chunk in arrival order across both streams. A
    successful result with ``exit_code=None`` means the peer closed the channel
    without reporting an exit status (e.g. the process was killed by a signal).
    """

    host: str
    status: ResultStatus
    output: tuple[OutputChunk, ...] = ()
    exit_code: int | None = None
    error: str | None = None
    exit_signal: str | None = None

    @classmethod
    def success(
        cls,
        host: str,
        output: tuple[OutputChunk, ...] | list[OutputChunk],
        exit_code: int | None,
        exit_signal: str | None = None,
    ) -> ExecutionResult:
        return cls(
            host=host,
            status=ResultStatus.OK,
            output=tuple(output),
            exit_code=exit_code,
            exit_signal=exit_signal,
        )

    @classmethod
    def failure(cls, host: str, reason: str) -> ExecutionResult:
        return cls(host=host, status=ResultStatus.ERROR, error=reason)

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.OK

    @property
    def stdout(self) -> bytes:
        return b"".join(chunk.data for chunk in self.output if chunk.stream is Stream.STDOUT)

    @property
    def stderr(self) -> bytes:
        return b"".join(chunk.data for chunk in self.output if chunk.stream is Stream.STDERR)

    @property
    def merged(self) -> bytes:
        """Both streams concatenated in arrival order."""
        return b"".join(chunk.data for chunk in self.output)

    def text(self, stream: Stream | None = None, encoding: str = "utf-8") -> str:
        """Decode one stream (or the merged output when stream is None)."""
        if stream is Stream.STDOUT:
            data = self.stdout
        elif stream is Stream.STDERR:
            data = self.stderr
        else:
            data = self.merged
        return data.decode(encoding, errors="replace")

    def check(self) -> ExecutionResult:
        """Return self, or raise if the command failed or exited non-zero.

        Raises:
            CommandExecutionError: On an error result or a non-zero exit code
        """
        if not self.ok:
            raise CommandExecutionError(self.host, None, self.error or "execution failed")
        if self.exit_code not in (0, None):
            raise CommandExecutionError(self.host, self.exit_code, self.text(Stream.STDERR).strip())
        return self


@dataclass(frozen=True)
class TransferResult:
    """Result of an upload or download on one host."""

    host: str
    status: ResultStatus
    files: tuple[str, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.OK


@dataclass(frozen=True)
class DataEvent:
    """Output data received on a channel."""

    stream: Stream
    data: bytes


@dataclass(frozen=True)
class EofEvent:
    """The peer will send no more data on this channel."""


@dataclass(frozen=True)
class ExitStatusEvent:
    """The remote program exited with a status code."""

    code: int


@dataclass(frozen=True)
class ExitSignalEvent:
    """The remote program was terminated by a signal."""

    signal: str
    message: str = ""


@dataclass(frozen=True)
class ClosedEvent:
    """The channel has been closed by both sides."""


type ChannelEvent = DataEvent | EofEvent | ExitStatusEvent | ExitSignalEvent | ClosedEvent
