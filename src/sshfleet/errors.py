"""Exception hierarchy for sshfleet.

Per-host failures never escape ``run``/``upload``/``download``; they are caught
at the fan-out layer and reported as that host's result entry. The exceptions
below are raised by the lower-level components (Connection, Channel, scp).
"""

from __future__ import annotations

from collections.abc import Sequence

__all__ = [
    "ChannelProtocolError",
    "ChannelStateError",
    "CommandExecutionError",
    "ConnectionError",
    "NoHostError",
    "SSHFleetError",
    "TransferError",
]


class SSHFleetError(Exception):
    """Base class for all sshfleet errors."""


class NoHostError(SSHFleetError):
    """Raised when a host is empty or missing, or a context has no hosts."""

    def __init__(self, message: str = "No host given.") -> None:
        super().__init__(message)


class ConnectionError(SSHFleetError):  # noqa: A001
    """Raised when the transport cannot establish or keep a connection.

    The transport's own exception is chained as ``__cause__``.
    """

    def __init__(self, host: str, reason: str) -> None:
        self.host = host
        self.reason = reason
        super().__init__(f"{host}: {reason}")


class ChannelStateError(SSHFleetError):
    """Raised when a channel operation is invalid for the channel's current state."""

    def __init__(self, operation: str, state: str) -> None:
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} a channel in state {state!r}")


class ChannelProtocolError(SSHFleetError):
    """Raised on an unexpected or malformed channel event, or a rejected request."""


class CommandExecutionError(SSHFleetError):
    """Raised by ``ExecutionResult.check()`` for failed commands.

    The core never raises this on its own: a non-zero exit code is a normal result.
    """

    def __init__(self, host: str, exit_code: int | None, message: str) -> None:
        self.host = host
        self.exit_code = exit_code
        detail = f"exit code {exit_code}" if exit_code is not None else "no exit code"
        super().__init__(f"{host}: command failed ({detail}): {message}")


class TransferError(SSHFleetError):
    """Raised when a file transfer fails, possibly after some files were copied."""

    def __init__(self, message: str, transferred: Sequence[str] = ()) -> None:
        self.transferred = tuple(transferred)
        super().__init__(message)
