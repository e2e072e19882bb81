"""Execution context: hosts plus shared settings, compiled into one shell command."""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

from sshfleet.models import Host, host

__all__ = ["Context", "context", "quote"]

_ENV_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def quote(value: str) -> str:
    """Single-quote a value for POSIX sh, even when it needs no quoting."""
    return "'" + value.replace("'", "'\\''") + "'"


@dataclass(frozen=True)
class Context:
    """Immutable bundle of hosts and the settings commands run with.

    Every ``with_*`` method returns a new Context; the receiver is never
    modified, so contexts can be derived from each other freely.
    """

    hosts: tuple[Host, ...] = ()
    path: str | None = None
    user: str | None = None
    group: str | None = None
    umask: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "hosts", tuple(self.hosts))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def __hash__(self) -> int:
        # Host options may hold unhashable values, so hosts are left out
        return hash((self.path, self.user, self.group, self.umask, frozenset(self.env.items())))

    def with_path(self, path: str | None) -> Context:
        """Run commands in ``path`` (``cd`` before the command)."""
        return replace(self, path=path)

    def with_user(self, user: str | None) -> Context:
        """Run commands as ``user`` via sudo; the login user may differ."""
        return replace(self, user=user)

    def with_group(self, group: str | None) -> Context:
        """Run commands with ``group`` as the primary group via sudo."""
        return replace(self, group=group)

    def with_umask(self, umask: str | None) -> Context:
        """Set the file creation mask, e.g. "077"."""
        return replace(self, umask=umask)

    def with_env(self, env: Mapping[str, str]) -> Context:
        """Replace the environment variables exported before each command.

        The previous mapping is discarded; merge explicitly to keep it::

            ctx.with_env({**ctx.env, "NODE_ENV": "production"})

        Raises:
            ValueError: If a name is not a valid shell variable name
        """
        for name in env:
            if not _ENV_NAME.fullmatch(name):
                raise ValueError(f"Invalid environment variable name: {name!r}")
        return replace(self, env={k: str(v) for k, v in env.items()})

    def build(self, command: str) -> str:
        """Compile ``command`` into a single POSIX shell command line.

        Steps, in order: export env, set umask, cd to path, wrap for group,
        wrap for user. Each wrap puts everything built so far inside
        ``sh -c '...'``, so user impersonation is outermost.
        """
        compiled = command

        if self.env:
            exports = " ".join(f"{name}={quote(self.env[name])}" for name in sorted(self.env))
            compiled = f"export {exports} && {compiled}"

        if self.umask:
            compiled = f"umask {shlex.quote(self.umask)} && {compiled}"

        if self.path:
            compiled = f"cd {shlex.quote(self.path)} && {compiled}"

        if self.group:
            compiled = f"sudo -g {shlex.quote(self.group)} sh -c {quote(compiled)}"

        if self.user:
            compiled = f"sudo -u {shlex.quote(self.user)} sh -c {quote(compiled)}"

        return compiled


def context(hosts: Any, shared_options: Mapping[str, Any] | None = None) -> Context:
    """Create a Context for one or more host specifications.

    ``hosts`` may be a single specification (anything ``host()`` accepts) or
    an iterable of them. ``shared_options`` apply to every host; options set
    on an individual host win.
    """
    single = isinstance(hosts, (str, Host, Mapping)) or (
        isinstance(hosts, tuple) and len(hosts) == 2 and isinstance(hosts[1], Mapping)
    )
    if single:
        specs: Iterable[Any] = [hosts]
    else:
        specs = hosts
    return Context(hosts=tuple(host(spec, shared_options) for spec in specs))
