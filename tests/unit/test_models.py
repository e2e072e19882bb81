"""Tests for hosts and result types."""

from __future__ import annotations

import pytest

from sshfleet.errors import CommandExecutionError
from sshfleet.models import ExecutionResult, Host, OutputChunk, ResultStatus, Stream, TransferResult, host


class TestHost:
    """Tests for host() normalization."""

    def test_from_name(self) -> None:
        assert host("web1") == Host(name="web1", options={})

    def test_from_tuple(self) -> None:
        assert host(("web1", {"port": 2222})) == Host(name="web1", options={"port": 2222})

    def test_from_mapping(self) -> None:
        assert host({"name": "web1", "options": {"user": "ops"}}) == Host(name="web1", options={"user": "ops"})

    def test_from_host_merges_shared(self) -> None:
        result = host(Host("web1", {"port": 2222}), {"port": 22, "user": "ops"})
        assert result.options == {"port": 2222, "user": "ops"}

    def test_unsupported_spec(self) -> None:
        with pytest.raises(TypeError, match="Unsupported host specification"):
            host(42)

    def test_options_are_copied(self) -> None:
        options = {"port": 2222}
        h = Host("web1", options)
        options["port"] = 1
        assert h.options == {"port": 2222}


def _result() -> ExecutionResult:
    return ExecutionResult.success(
        host="web1",
        output=[
            OutputChunk(Stream.STDOUT, b"one\n"),
            OutputChunk(Stream.STDERR, b"warn\n"),
            OutputChunk(Stream.STDOUT, b"two\n"),
        ],
        exit_code=0,
    )


class TestExecutionResult:
    """Tests for ExecutionResult accessors and check()."""

    def test_streams_keep_arrival_order(self) -> None:
        result = _result()
        assert result.stdout == b"one\ntwo\n"
        assert result.stderr == b"warn\n"
        assert result.merged == b"one\nwarn\ntwo\n"

    def test_text(self) -> None:
        result = _result()
        assert result.text(Stream.STDOUT) == "one\ntwo\n"
        assert result.text() == "one\nwarn\ntwo\n"

    def test_success_is_ok(self) -> None:
        result = _result()
        assert result.ok
        assert result.status is ResultStatus.OK
        assert result.check() is result

    def test_failure(self) -> None:
        result = ExecutionResult.failure("web1", "web1: Connection refused")
        assert not result.ok
        assert result.output == ()
        assert result.exit_code is None
        with pytest.raises(CommandExecutionError, match="Connection refused"):
            result.check()

    def test_check_nonzero_exit(self) -> None:
        result = ExecutionResult.success(
            host="web1", output=[OutputChunk(Stream.STDERR, b"no such file\n")], exit_code=2
        )
        with pytest.raises(CommandExecutionError) as exc_info:
            result.check()
        assert exc_info.value.exit_code == 2
        assert "no such file" in str(exc_info.value)

    def test_check_allows_unknown_exit_status(self) -> None:
        result = ExecutionResult.success(host="web1", output=[], exit_code=None, exit_signal="KILL")
        assert result.check() is result


class TestTransferResult:
    def test_ok(self) -> None:
        assert TransferResult(host="web1", status=ResultStatus.OK, files=("a",)).ok
        assert not TransferResult(host="web1", status=ResultStatus.ERROR, error="boom").ok
