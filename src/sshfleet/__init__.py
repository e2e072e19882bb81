"""sshfleet: run shell commands and copy files on one or more hosts over SSH.

    import asyncio
    import sshfleet

    ctx = sshfleet.context(["web1.example.com", ("web2.example.com", {"port": 2222})])
    ctx = sshfleet.env(sshfleet.path(ctx, "/var/www/app"), {"NODE_ENV": "production"})

    results = asyncio.run(sshfleet.run(ctx, "npm ci", mode="parallel"))
"""

from __future__ import annotations

from collections.abc import Mapping
from importlib.metadata import PackageNotFoundError, version

from sshfleet.context import Context, context
from sshfleet.errors import (
    ChannelProtocolError,
    ChannelStateError,
    CommandExecutionError,
    ConnectionError,
    NoHostError,
    SSHFleetError,
    TransferError,
)
from sshfleet.executor import Mode, run
from sshfleet.models import ExecutionResult, Host, ResultStatus, Stream, TransferResult, host
from sshfleet.transfer import download, upload

try:
    __version__ = version("sshfleet")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

__all__ = [
    "ChannelProtocolError",
    "ChannelStateError",
    "CommandExecutionError",
    "ConnectionError",
    "Context",
    "ExecutionResult",
    "Host",
    "Mode",
    "NoHostError",
    "ResultStatus",
    "SSHFleetError",
    "Stream",
    "TransferError",
    "TransferResult",
    "__version__",
    "context",
    "download",
    "env",
    "group",
    "host",
    "path",
    "run",
    "umask",
    "upload",
    "user",
]


def path(ctx: Context, value: str) -> Context:
    """Derive a context whose commands run in ``value``."""
    return ctx.with_path(value)


def user(ctx: Context, value: str) -> Context:
    """Derive a context whose commands run as ``value`` (via sudo)."""
    return ctx.with_user(value)


def group(ctx: Context, value: str) -> Context:
    """Derive a context whose commands run with group ``value`` (via sudo)."""
    return ctx.with_group(value)


def umask(ctx: Context, value: str) -> Context:
    """Derive a context with file creation mask ``value``."""
    return ctx.with_umask(value)


def env(ctx: Context, values: Mapping[str, str]) -> Context:
    """Derive a context exporting exactly ``values`` as environment variables."""
    return ctx.with_env(values)
