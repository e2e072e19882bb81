"""Fan-out execution of one command across every host in a Context."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextlib import nullcontext
from enum import StrEnum
from typing import Any

from sshfleet.channel import Channel
from sshfleet.connection import Connection
from sshfleet.context import Context
from sshfleet.errors import NoHostError, SSHFleetError
from sshfleet.logger import get_logger
from sshfleet.models import ExecutionResult, Host

__all__ = ["Mode", "fan_out", "run", "run_on_host", "summarize"]

logger = get_logger("sshfleet.executor")


class Mode(StrEnum):
    """How per-host work is scheduled."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


async def fan_out[T](
    context: Context,
    per_host: Callable[[Host], Awaitable[T]],
    mode: Mode | str = Mode.SEQUENTIAL,
    max_concurrency: int | None = None,
) -> list[T]:
    """Run ``per_host`` for every host and return results in host order.

    Parallel mode gathers one task per host; the result list is positional,
    not completion-ordered. ``max_concurrency`` bounds how many hosts are
    worked on at once in parallel mode.

    Raises:
        NoHostError: If the context has no hosts
    """
    if not context.hosts:
        raise NoHostError("Context has no hosts")

    mode = Mode(mode)
    if mode is Mode.SEQUENTIAL:
        return [await per_host(host) for host in context.hosts]

    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def bounded(host: Host) -> T:
        async with semaphore if semaphore is not None else nullcontext():
            return await per_host(host)

    return list(await asyncio.gather(*(bounded(host) for host in context.hosts)))


async def run_on_host(host: Host, command: str) -> ExecutionResult:
    """Open a connection and a channel to one host, run, drain and close.

    Any sshfleet error becomes an error result for this host.
    """
    log = logger.bind(host=host.name)
    try:
        connection = await Connection.open(host.name, host.options)
    except SSHFleetError as e:
        log.error("Connection failed", error=str(e))
        return ExecutionResult.failure(host.name, str(e))

    try:
        channel = await Channel.open(connection)
        result = await channel.run(command)
    except SSHFleetError as e:
        log.error("Command failed", error=str(e))
        return ExecutionResult.failure(host.name, str(e))
    finally:
        await connection.close()

    log.info("Command finished", exit_code=result.exit_code, output_chunks=len(result.output))
    return result


async def run(
    context: Context,
    command: str,
    *,
    mode: Mode | str = Mode.SEQUENTIAL,
    max_concurrency: int | None = None,
) -> list[ExecutionResult]:
    """Execute a command in the given context.

    Returns one ExecutionResult per host, in the order of ``context.hosts``.
    A host that cannot be reached yields an error result at its position;
    the other hosts still run. A non-zero exit code is a successful result
    carrying that code.

    Example::

        results = await run(context("web1").with_path("/var/www"), "ls")
        print(results[0].text(Stream.STDOUT))
    """
    compiled = context.build(command)
    logger.info("Running command", command=compiled, hosts=len(context.hosts), mode=str(mode))

    async def per_host(host: Host) -> ExecutionResult:
        return await run_on_host(host, compiled)

    return await fan_out(context, per_host, mode=mode, max_concurrency=max_concurrency)


def summarize(results: Sequence[ExecutionResult]) -> dict[str, Any]:
    """Count ok / failed / non-zero results for logging and CLI exit codes."""
    return {
        "total": len(results),
        "errors": sum(1 for r in results if not r.ok),
        "nonzero": sum(1 for r in results if r.ok and r.exit_code not in (0, None)),
        "unknown_status": sum(1 for r in results if r.ok and r.exit_code is None),
    }
