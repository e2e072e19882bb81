"""CLI entry point for sshfleet using Typer."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Sequence
from importlib.resources import files
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.text import Text

from sshfleet import __version__
from sshfleet.config import Configuration, ConfigurationError
from sshfleet.context import Context
from sshfleet.executor import Mode, run, summarize
from sshfleet.logger import configure_logging, default_log_path, parse_log_level
from sshfleet.models import ExecutionResult, TransferResult
from sshfleet.transfer import download, upload

# Exit codes
EXIT_OK = 0
EXIT_HOST_FAILED = 1
EXIT_USAGE = 2

app = typer.Typer(
    name="sshfleet",
    help="Run shell commands and copy files on one or more hosts over SSH",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

HostOption = Annotated[
    list[str] | None,
    typer.Option("--host", "-H", help="Host to run on, optionally user@host:port (repeatable)"),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config file (default: ~/.config/sshfleet/config.yaml)"),
]
PathOption = Annotated[str | None, typer.Option("--path", help="Remote working directory")]
UserOption = Annotated[str | None, typer.Option("--user", help="Run as this user (sudo -u)")]
GroupOption = Annotated[str | None, typer.Option("--group", help="Run with this group (sudo -g)")]
UmaskOption = Annotated[str | None, typer.Option("--umask", help="File creation mask, e.g. 022")]
EnvOption = Annotated[
    list[str] | None,
    typer.Option("--env", "-e", help="Environment variable as KEY=VALUE (repeatable)"),
]
ParallelOption = Annotated[bool, typer.Option("--parallel", help="Work on all hosts at once")]
DryRunOption = Annotated[bool, typer.Option("--dry-run", help="Show what would run without connecting")]
LogLevelOption = Annotated[
    str | None,
    typer.Option("--log-level", help="Terminal log level (DEBUG, FULL, INFO, WARNING, ERROR, CRITICAL)"),
]
RecursiveOption = Annotated[bool, typer.Option("--recursive", "-r", help="Copy directories recursively")]
PreserveOption = Annotated[bool, typer.Option("--preserve", "-p", help="Preserve modes and times")]


def _version_callback(value: bool) -> None:
    """Print version and exit if --version flag is provided."""
    if value:
        console.print(f"sshfleet {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version_flag: Annotated[
        bool,
        typer.Option("--version", "-v", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
) -> None:
    """sshfleet remote execution toolkit."""


def _load_configuration(config: Path | None) -> Configuration:
    """Load the given config file, the default one if it exists, or built-in defaults."""
    config_path = config or Configuration.get_default_config_path()
    if config is None and not config_path.exists():
        return Configuration()
    try:
        return Configuration.from_yaml(config_path)
    except ConfigurationError as e:
        err_console.print("[bold red]Configuration error:[/bold red]")
        for error in e.errors:
            err_console.print(f"  {error.path}: {error.message}")
        raise typer.Exit(EXIT_USAGE) from None


def _parse_host(spec: str) -> Any:
    """Parse ``[user@]name[:port]`` into a host specification."""
    options: dict[str, Any] = {}
    name = spec
    if "@" in name:
        options["user"], name = name.rsplit("@", 1)
    if name.count(":") == 1:
        name, port = name.split(":")
        try:
            options["port"] = int(port)
        except ValueError:
            raise typer.BadParameter(f"Invalid port in host {spec!r}", param_hint="--host") from None
    return (name, options) if options else name


def _parse_env(pairs: Sequence[str] | None) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


def _prepare(
    config: Path | None,
    hosts: list[str] | None,
    log_level: str | None,
    **overrides: Any,
) -> tuple[Configuration, Context]:
    """Load configuration, set up logging and build the execution context."""
    cfg = _load_configuration(config)

    cli_level = cfg.log_cli_level
    if log_level is not None:
        try:
            cli_level = parse_log_level(log_level)
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--log-level") from None
    configure_logging(
        log_file_level=cfg.log_file_level,
        log_cli_level=cli_level,
        log_file_path=default_log_path() if cfg.log_to_file else None,
    )

    host_specs = [_parse_host(h) for h in hosts] if hosts else None
    try:
        ctx = cfg.build_context(host_specs, **overrides)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None

    if not ctx.hosts:
        err_console.print("[bold red]Error:[/bold red] No hosts given (use --host or the config file)")
        raise typer.Exit(EXIT_USAGE)
    return cfg, ctx


def _mode(cfg: Configuration, parallel: bool) -> Mode:
    return Mode.PARALLEL if parallel else cfg.mode


def _print_execution(results: Sequence[ExecutionResult]) -> int:
    for result in results:
        header = Text()
        header.append(result.host, style="bold magenta")
        if not result.ok:
            header.append(f"  error: {result.error}", style="bold red")
            console.print(header)
            continue

        if result.exit_code is None:
            status = f"no exit status (signal {result.exit_signal})" if result.exit_signal else "no exit status"
            header.append(f"  {status}", style="yellow")
        else:
            header.append(f"  exit {result.exit_code}", style="green" if result.exit_code == 0 else "red")
        console.print(header)

        for chunk in result.output:
            text = chunk.data.decode(errors="replace")
            console.print(Text(text, style="red" if chunk.stream == "stderr" else ""), end="")
        if result.output and not result.output[-1].data.endswith(b"\n"):
            console.print()

    summary = summarize(results)
    failed = summary["errors"] + summary["nonzero"]
    return EXIT_OK if failed == 0 else EXIT_HOST_FAILED


def _print_transfers(results: Sequence[TransferResult]) -> int:
    for result in results:
        line = Text()
        line.append(result.host, style="bold magenta")
        if result.ok:
            line.append(f"  ok ({len(result.files)} file(s))", style="green")
        else:
            line.append(f"  error: {result.error}", style="bold red")
        console.print(line)
        for name in result.files:
            console.print(Text(f"  {name}", style="dim"))
    return EXIT_OK if all(r.ok for r in results) else EXIT_HOST_FAILED


@app.command("run")
def run_command(
    command: Annotated[str, typer.Argument(help="Shell command to run on every host")],
    host: HostOption = None,
    config: ConfigOption = None,
    path: PathOption = None,
    user: UserOption = None,
    group: GroupOption = None,
    umask: UmaskOption = None,
    env: EnvOption = None,
    parallel: ParallelOption = False,
    dry_run: DryRunOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Run a shell command on every host.

    Exits 0 when every host ran the command with exit status 0.
    """
    cfg, ctx = _prepare(
        config,
        host,
        log_level,
        path=path,
        user=user,
        group=group,
        umask=umask,
        env=_parse_env(env),
        dry_run=dry_run or None,
    )
    if dry_run:
        console.print(Text(f"Would run: {ctx.build(command)}", style="dim"))
    results = asyncio.run(run(ctx, command, mode=_mode(cfg, parallel), max_concurrency=cfg.max_concurrency))
    sys.exit(_print_execution(results))


@app.command("upload")
def upload_command(
    local: Annotated[Path, typer.Argument(help="Local file or directory")],
    as_: Annotated[str | None, typer.Option("--as", help="Remote name (default: local basename)")] = None,
    recursive: RecursiveOption = False,
    preserve: PreserveOption = False,
    host: HostOption = None,
    config: ConfigOption = None,
    path: PathOption = None,
    user: UserOption = None,
    group: GroupOption = None,
    umask: UmaskOption = None,
    env: EnvOption = None,
    parallel: ParallelOption = False,
    dry_run: DryRunOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Upload a file or directory to every host."""
    cfg, ctx = _prepare(
        config,
        host,
        log_level,
        path=path,
        user=user,
        group=group,
        umask=umask,
        env=_parse_env(env),
        dry_run=dry_run or None,
    )
    results = asyncio.run(
        upload(
            ctx,
            local,
            recursive=recursive,
            preserve=preserve,
            as_=as_,
            mode=_mode(cfg, parallel),
            max_concurrency=cfg.max_concurrency,
        )
    )
    sys.exit(_print_transfers(results))


@app.command("download")
def download_command(
    remote: Annotated[str, typer.Argument(help="Remote file or directory")],
    as_: Annotated[Path | None, typer.Option("--as", help="Local target (default: remote basename)")] = None,
    recursive: RecursiveOption = False,
    preserve: PreserveOption = False,
    host: HostOption = None,
    config: ConfigOption = None,
    path: PathOption = None,
    user: UserOption = None,
    group: GroupOption = None,
    umask: UmaskOption = None,
    env: EnvOption = None,
    parallel: ParallelOption = False,
    dry_run: DryRunOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Download a file or directory from every host."""
    cfg, ctx = _prepare(
        config,
        host,
        log_level,
        path=path,
        user=user,
        group=group,
        umask=umask,
        env=_parse_env(env),
        dry_run=dry_run or None,
    )
    results = asyncio.run(
        download(
            ctx,
            remote,
            recursive=recursive,
            preserve=preserve,
            as_=as_,
            mode=_mode(cfg, parallel),
            max_concurrency=cfg.max_concurrency,
        )
    )
    sys.exit(_print_transfers(results))


@app.command()
def init(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite existing configuration file"),
    ] = False,
) -> None:
    """Initialize default configuration file.

    Creates ~/.config/sshfleet/config.yaml with default settings.
    Use --force to overwrite an existing configuration.
    """
    config_path = Configuration.get_default_config_path()

    if config_path.exists() and not force:
        console.print(f"[yellow]Configuration file already exists:[/yellow] {config_path}")
        console.print("Use --force to overwrite")
        raise typer.Exit(1)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    default_config = files("sshfleet").joinpath("default-config.yaml").read_text()
    config_path.write_text(default_config)

    console.print(f"[green]Created configuration file:[/green] {config_path}")
    console.print("\n[dim]Add your hosts under 'hosts' and shared options under 'defaults'.[/dim]")


if __name__ == "__main__":
    app()
