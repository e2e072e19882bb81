"""Upload and download files for every host in a Context."""

from __future__ import annotations

import os
import posixpath
from pathlib import Path

from sshfleet.channel import Channel
from sshfleet.connection import Connection
from sshfleet.context import Context
from sshfleet.errors import SSHFleetError, TransferError
from sshfleet.executor import Mode, fan_out
from sshfleet.logger import get_logger
from sshfleet.models import Host, ResultStatus, TransferResult
from sshfleet.scp import ScpReceiver, ScpSender, sink_command, source_command

__all__ = [
    "download",
    "local_files",
    "resolve_remote",
    "upload",
]

logger = get_logger("sshfleet.transfer")


def resolve_remote(context: Context, remote: str) -> str:
    """Resolve a remote path against the context's working directory.

    Absolute paths are returned unchanged; so are relative ones when the
    context has no path (the remote side resolves them against the login
    user's home).
    """
    if posixpath.isabs(remote) or not context.path:
        return remote
    return posixpath.normpath(posixpath.join(context.path, remote))


def local_files(path: Path, recursive: bool, name: str | None = None) -> list[str]:
    """Relative names of the files an upload of ``path`` would transfer.

    Raises:
        TransferError: If ``path`` is missing, or a directory without recursive mode
    """
    name = name or Path(os.path.abspath(path)).name
    if path.is_file():
        return [name]
    if not path.is_dir():
        raise TransferError(f"Local path does not exist: {path}")
    if not recursive:
        raise TransferError(f"{path} is a directory (use recursive mode)")
    return sorted(
        f"{name}/{entry.relative_to(path).as_posix()}" for entry in path.rglob("*") if entry.is_file()
    )


def _basename(path: str) -> str:
    return posixpath.basename(path.rstrip("/"))


def _transfer_command(context: Context, command: str) -> str:
    # The remote path already carries the context path
    return context.with_path(None).build(command)


async def _open(host: Host) -> Connection | TransferResult:
    try:
        return await Connection.open(host.name, host.options)
    except SSHFleetError as e:
        logger.error("Connection failed", host=host.name, error=str(e))
        return TransferResult(host=host.name, status=ResultStatus.ERROR, error=str(e))


def _failed(host: Host, error: SSHFleetError) -> TransferResult:
    transferred = error.transferred if isinstance(error, TransferError) else ()
    logger.error("Transfer failed", host=host.name, error=str(error), transferred=len(transferred))
    return TransferResult(host=host.name, status=ResultStatus.ERROR, files=transferred, error=str(error))


async def upload(
    context: Context,
    local_path: str | Path,
    *,
    recursive: bool = False,
    preserve: bool = False,
    as_: str | None = None,
    mode: Mode | str = Mode.SEQUENTIAL,
    max_concurrency: int | None = None,
) -> list[TransferResult]:
    """Upload a local file (or directory tree) to every host in the context.

    Args:
        context: Hosts and settings; the remote path resolves against ``context.path``
        local_path: File or directory to send
        recursive: Send a directory and everything below it
        preserve: Carry mode bits and modification/access times across
        as_: Remote name; defaults to the local basename
        mode: "sequential" or "parallel"
        max_concurrency: Upper bound on hosts handled at once in parallel mode

    Returns:
        One TransferResult per host, in host order
    """
    source = Path(local_path)
    # "." and ".." have no name of their own
    local_name = Path(os.path.abspath(source)).name
    remote = resolve_remote(context, as_ or local_name)
    # A trailing slash names a remote directory to upload into
    name = local_name if as_ and as_.endswith("/") else _basename(remote)
    command = _transfer_command(context, sink_command(remote, recursive=recursive, preserve=preserve))

    async def per_host(host: Host) -> TransferResult:
        try:
            planned = local_files(source, recursive, name)
        except TransferError as e:
            return _failed(host, e)

        opened = await _open(host)
        if isinstance(opened, TransferResult):
            return opened
        connection = opened

        try:
            if connection.dry_run:
                logger.info("Dry run: would upload", host=host.name, remote=remote, files=planned)
                return TransferResult(host=host.name, status=ResultStatus.OK, files=tuple(planned))

            channel = await Channel.open(connection)
            await channel.exec(command)
            sender = ScpSender(channel, preserve=preserve)
            await sender.start()
            if source.is_dir():
                await sender.send_directory(source, name)
            else:
                await sender.send_file(source, name)
            files = await sender.finish()
        except SSHFleetError as e:
            return _failed(host, e)
        except OSError as e:
            return _failed(host, TransferError(f"Cannot read {source}: {e}"))
        finally:
            await connection.close()

        logger.info("Uploaded", host=host.name, remote=remote, files=len(files))
        return TransferResult(host=host.name, status=ResultStatus.OK, files=tuple(files))

    return await fan_out(context, per_host, mode=mode, max_concurrency=max_concurrency)


async def download(
    context: Context,
    remote_path: str,
    *,
    recursive: bool = False,
    preserve: bool = False,
    as_: str | Path | None = None,
    mode: Mode | str = Mode.SEQUENTIAL,
    max_concurrency: int | None = None,
) -> list[TransferResult]:
    """Download a remote file (or directory tree) from every host in the context.

    The local target is ``as_`` or the remote basename in the current
    directory. With several hosts every download lands on the same local
    path, so they always run one after another (the last host wins) and a
    parallel ``mode`` is ignored.

    Returns:
        One TransferResult per host, in host order
    """
    remote = resolve_remote(context, remote_path)
    target = Path(as_) if as_ is not None else Path(_basename(remote))
    command = _transfer_command(context, source_command(remote, recursive=recursive, preserve=preserve))
    if Mode(mode) is Mode.PARALLEL and len(context.hosts) > 1:
        logger.warning(
            "Downloads to one local target run sequentially", hosts=len(context.hosts), local=str(target)
        )
        mode = Mode.SEQUENTIAL

    async def per_host(host: Host) -> TransferResult:
        opened = await _open(host)
        if isinstance(opened, TransferResult):
            return opened
        connection = opened

        try:
            if connection.dry_run:
                logger.info("Dry run: would download", host=host.name, remote=remote, local=str(target))
                return TransferResult(host=host.name, status=ResultStatus.OK)

            channel = await Channel.open(connection)
            await channel.exec(command)
            files = await ScpReceiver(channel, preserve=preserve).receive(target)
        except SSHFleetError as e:
            return _failed(host, e)
        except OSError as e:
            return _failed(host, TransferError(f"Cannot write {target}: {e}"))
        finally:
            await connection.close()

        logger.info("Downloaded", host=host.name, remote=remote, files=len(files))
        return TransferResult(host=host.name, status=ResultStatus.OK, files=tuple(files))

    return await fan_out(context, per_host, mode=mode, max_concurrency=max_concurrency)
