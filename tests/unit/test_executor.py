"""Tests for running a command across the hosts of a Context."""

from __future__ import annotations

import shlex
from unittest.mock import AsyncMock, patch

import pytest

from sshfleet.context import context
from sshfleet.errors import NoHostError
from sshfleet.executor import Mode, fan_out, run, summarize
from sshfleet.models import ExecutionResult, Host, ResultStatus, Stream
from sshfleet.transport import RecordingTransport
from tests.fakes import FailingTransport, SlowTransport, completed, stdout


def _echo(command: str) -> list:
    return completed(stdout(f"ran: {command}\n"))


def _shell(command: str) -> list:
    """Interpret the export/cd/pwd/printenv subset of a compiled command."""
    env: dict[str, str] = {}
    cwd = "/home/deploy"
    output = ""
    for part in command.split(" && "):
        argv = shlex.split(part)
        if argv[0] == "export":
            env.update(arg.split("=", 1) for arg in argv[1:])
        elif argv[0] == "cd":
            cwd = argv[1]
        elif argv[0] == "pwd":
            output += cwd + "\n"
        elif argv[0] == "printenv":
            output += env[argv[1]] + "\n"
    return completed(stdout(output))


class TestRun:
    """Tests for executor.run."""

    async def test_single_host(self) -> None:
        transport = RecordingTransport(_echo)
        ctx = context("web1", {"transport": transport})

        results = await run(ctx, "uptime")

        assert len(results) == 1
        assert results[0].host == "web1"
        assert results[0].exit_code == 0
        assert results[0].text(Stream.STDOUT) == "ran: uptime\n"

    async def test_command_is_compiled_once_with_context(self) -> None:
        transport = RecordingTransport()
        ctx = context(["web1", "web2"], {"transport": transport}).with_path("/tmp")

        await run(ctx, "pwd")

        assert transport.commands() == ["cd /tmp && pwd", "cd /tmp && pwd"]

    async def test_env_is_exported(self) -> None:
        transport = RecordingTransport()
        ctx = context("web1", {"transport": transport}).with_env({"NODE_ENV": "production"})

        await run(ctx, "printenv NODE_ENV")

        assert transport.commands("web1") == ["export NODE_ENV='production' && printenv NODE_ENV"]

    async def test_exported_value_reaches_the_command(self) -> None:
        ctx = context("h1", {"transport": RecordingTransport(_shell)}).with_env({"NODE_ENV": "production"})

        results = await run(ctx, "printenv NODE_ENV")

        assert [(r.status, r.stdout, r.exit_code) for r in results] == [(ResultStatus.OK, b"production\n", 0)]

    async def test_path_applies_on_every_host(self) -> None:
        ctx = context(["h1", "h2"], {"transport": RecordingTransport(_shell)}).with_path("/tmp")

        results = await run(ctx, "pwd")

        assert [(r.host, r.stdout, r.exit_code) for r in results] == [("h1", b"/tmp\n", 0), ("h2", b"/tmp\n", 0)]
        assert all(r.ok for r in results)

    async def test_sequential_results_follow_host_order(self) -> None:
        transport = RecordingTransport()
        ctx = context(["c", "a", "b"], {"transport": transport})

        results = await run(ctx, "true")

        assert [r.host for r in results] == ["c", "a", "b"]
        connects = [call.host for call in transport.calls if call.operation == "connect"]
        assert connects == ["c", "a", "b"]

    async def test_connection_is_closed_after_each_host(self) -> None:
        transport = RecordingTransport()
        ctx = context(["web1", "web2"], {"transport": transport})

        await run(ctx, "true")

        operations = [(call.operation, call.host) for call in transport.calls]
        assert operations.index(("close", "web1")) < operations.index(("connect", "web2"))

    async def test_nonzero_exit_is_a_result_not_an_error(self) -> None:
        transport = RecordingTransport(lambda _c: completed(code=3))
        results = await run(context("web1", {"transport": transport}), "false")
        assert results[0].ok
        assert results[0].exit_code == 3

    async def test_unreachable_host_does_not_stop_others(self) -> None:
        transport = FailingTransport(_echo, unreachable={"down"})
        ctx = context(["web1", "down", "web2"], {"transport": transport})

        results = await run(ctx, "uptime")

        assert [r.status for r in results] == [ResultStatus.OK, ResultStatus.ERROR, ResultStatus.OK]
        assert "Connection refused" in (results[1].error or "")
        assert transport.commands() == ["uptime", "uptime"]

    async def test_invalid_port_is_an_error_result(self) -> None:
        ctx = context([("h1", {"port": "ssh"}), "h2"], {"dry_run": True})

        results = await run(ctx, "true")

        assert [r.ok for r in results] == [False, True]
        assert "Invalid port" in (results[0].error or "")

    async def test_no_hosts(self) -> None:
        with pytest.raises(NoHostError):
            await run(context([]), "uptime")

    async def test_dry_run_never_needs_a_network(self) -> None:
        results = await run(context(["web1", "web2"], {"dry_run": True}), "rm -rf /tmp/cache")
        assert all(r.ok and r.exit_code == 0 for r in results)


class TestParallel:
    """Parallel mode runs hosts concurrently but returns results positionally."""

    async def test_results_are_positional_not_completion_ordered(self) -> None:
        transport = SlowTransport({"slow": 0.05, "medium": 0.02, "fast": 0.0}, _echo)
        ctx = context(["slow", "medium", "fast"], {"transport": transport})

        results = await run(ctx, "hostname", mode=Mode.PARALLEL)

        assert [r.host for r in results] == ["slow", "medium", "fast"]
        assert transport.finished == ["fast", "medium", "slow"]
        assert transport.max_in_flight == 3

    async def test_max_concurrency(self) -> None:
        transport = SlowTransport({name: 0.01 for name in ("a", "b", "c", "d")}, _echo)
        ctx = context(["a", "b", "c", "d"], {"transport": transport})

        results = await run(ctx, "true", mode="parallel", max_concurrency=2)

        assert [r.host for r in results] == ["a", "b", "c", "d"]
        assert transport.max_in_flight == 2

    async def test_failure_isolation(self) -> None:
        transport = FailingTransport(unreachable={"b"})
        ctx = context(["a", "b", "c"], {"transport": transport})

        results = await run(ctx, "true", mode=Mode.PARALLEL)

        assert [r.ok for r in results] == [True, False, True]

    async def test_rejected_connection_options_are_isolated(self) -> None:
        error = TypeError("unexpected keyword argument 'bogus_option'")
        ctx = context([("bad", {"bogus_option": 1}), ("good", {"dry_run": True}), ("h3", {"port": "ssh"})])

        with patch("sshfleet.transport.asyncssh.connect", new=AsyncMock(side_effect=error)):
            results = await run(ctx, "true", mode=Mode.PARALLEL)

        assert [r.host for r in results] == ["bad", "good", "h3"]
        assert [r.ok for r in results] == [False, True, False]
        assert "bogus_option" in (results[0].error or "")


class TestFanOut:
    async def test_per_host_receives_hosts_in_order(self) -> None:
        seen: list[str] = []

        async def per_host(host: Host) -> str:
            seen.append(host.name)
            return host.name.upper()

        assert await fan_out(context(["x", "y"]), per_host) == ["X", "Y"]
        assert seen == ["x", "y"]

    async def test_invalid_mode(self) -> None:
        async def per_host(host: Host) -> None:
            return None

        with pytest.raises(ValueError):
            await fan_out(context("x"), per_host, mode="sideways")


class TestSummarize:
    def test_counts(self) -> None:
        results = [
            ExecutionResult.success("a", [], 0),
            ExecutionResult.success("b", [], 2),
            ExecutionResult.success("c", [], None),
            ExecutionResult.failure("d", "unreachable"),
        ]
        assert summarize(results) == {"total": 4, "errors": 1, "nonzero": 1, "unknown_status": 1}
