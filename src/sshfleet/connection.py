"""SSH connection management for one remote host."""

from __future__ import annotations

from collections.abc import Mapping
from types import TracebackType
from typing import Any

from sshfleet.errors import ConnectionError, NoHostError
from sshfleet.logger import get_logger
from sshfleet.transport import AsyncSSHTransport, RecordingTransport, Transport

__all__ = ["Connection", "split_options"]

DEFAULT_PORT = 22

# Options consumed by sshfleet itself; everything else goes to the transport.
TOOLKIT_OPTIONS = frozenset({"port", "timeout", "dry_run", "transport"})

_TRANSPORT_DEFAULTS: dict[str, Any] = {"user_interaction": False}

logger = get_logger("sshfleet.connection")


def split_options(options: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split options into (toolkit-level, transport-level) dicts.

    Transport-level options get their defaults applied.
    """
    toolkit = {key: value for key, value in options.items() if key in TOOLKIT_OPTIONS}
    transport = {**_TRANSPORT_DEFAULTS}
    transport.update({key: value for key, value in options.items() if key not in TOOLKIT_OPTIONS})
    return toolkit, transport


class Connection:
    """An open connection to one host, owning its transport handle.

    A connection is owned by whoever opened it and must be closed exactly
    once. It carries one channel at a time; use ``reopen`` to get a fresh
    connection with the same parameters.
    """

    def __init__(
        self,
        host: str,
        port: int,
        options: dict[str, Any],
        transport: Transport,
        handle: Any,
        dry_run: bool = False,
    ) -> None:
        self.host = host
        self.port = port
        self.options = options
        self.transport = transport
        self.handle = handle
        self.dry_run = dry_run

    @classmethod
    async def open(cls, host: str | None, options: Mapping[str, Any] | None = None) -> Connection:
        """Open a connection to an SSH server.

        Toolkit-level options:
            port: Port to connect to (default 22)
            timeout: Seconds allowed for connection establishment (default None = wait forever).
                Does not bound command execution.
            dry_run: Substitute a RecordingTransport that never touches the network
            transport: Explicit Transport instance (overrides dry_run)

        All other options (user, password, identity, known_hosts, ...) are passed to
        the transport. ``user_interaction`` defaults to False.

        Raises:
            NoHostError: If host is empty or None
            ConnectionError: If the port is invalid or the transport cannot connect
        """
        if host is None or not host.strip():
            raise NoHostError()
        name = host.strip()

        toolkit, transport_options = split_options(options or {})
        try:
            port = int(toolkit.get("port", DEFAULT_PORT))
        except (TypeError, ValueError) as e:
            raise ConnectionError(name, f"Invalid port: {toolkit['port']!r}") from e
        timeout = toolkit.get("timeout")
        dry_run = bool(toolkit.get("dry_run", False))

        transport: Transport | None = toolkit.get("transport")
        if transport is None:
            transport = RecordingTransport() if dry_run else AsyncSSHTransport()

        logger.debug("Opening connection", host=name, port=port, dry_run=dry_run)
        handle = await transport.connect(name, port, transport_options, timeout)
        logger.debug("Connected", host=name, port=port)

        return cls(
            host=name,
            port=port,
            options=transport_options,
            transport=transport,
            handle=handle,
            dry_run=dry_run,
        )

    async def close(self) -> None:
        """Close the connection. Calling this twice is not supported."""
        await self.transport.close(self.handle)
        logger.debug("Disconnected", host=self.host)

    async def reopen(self, **overrides: Any) -> Connection:
        """Open a new connection based on the parameters of this one.

        The original timeout is discarded; port, transport options and the
        transport itself are reused. ``overrides`` win over reused values.
        """
        options: dict[str, Any] = {
            **self.options,
            "port": self.port,
            "transport": self.transport,
            "dry_run": self.dry_run,
        }
        options.update(overrides)
        return await Connection.open(self.host, options)

    async def __aenter__(self) -> Connection:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"Connection(host={self.host!r}, port={self.port}, dry_run={self.dry_run})"
