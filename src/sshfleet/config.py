"""Configuration loading and validation for sshfleet."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from sshfleet.context import Context, context
from sshfleet.executor import Mode
from sshfleet.models import Host
from sshfleet.logger import LogLevel, parse_log_level

__all__ = [
    "ConfigError",
    "Configuration",
    "ConfigurationError",
    "ContextDefaults",
]


@dataclass(frozen=True)
class ConfigError:
    """One problem found while loading the configuration."""

    path: str  # Dotted path to the invalid value, or the file path
    message: str


@dataclass
class ContextDefaults:
    """Settings applied to the context built from the configuration."""

    path: str | None = None
    user: str | None = None
    group: str | None = None
    umask: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class Configuration:
    """Parsed and validated configuration from YAML file."""

    log_file_level: LogLevel = LogLevel.FULL
    log_cli_level: LogLevel = LogLevel.WARNING
    log_to_file: bool = False
    mode: Mode = Mode.SEQUENTIAL
    max_concurrency: int | None = None
    defaults: dict[str, Any] = field(default_factory=dict)  # Shared host options
    hosts: list[Any] = field(default_factory=list)  # Host specifications
    context_defaults: ContextDefaults = field(default_factory=ContextDefaults)

    @classmethod
    def from_yaml(cls, path: Path) -> Configuration:
        """Load and validate configuration from YAML file.

        Args:
            path: Path to config.yaml

        Returns:
            Validated Configuration instance

        Raises:
            ConfigurationError: If YAML is invalid or schema validation fails
        """
        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(
                [ConfigError(path=str(path), message=f"Configuration file not found: {path}")]
            ) from None
        except yaml.YAMLError as e:
            error_msg = str(e)
            mark = getattr(e, "problem_mark", None)
            problem = getattr(e, "problem", None)
            if mark is not None and problem is not None:
                error_msg = f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}"
            raise ConfigurationError([ConfigError(path=str(path), message=error_msg)]) from e

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Configuration:
        """Validate an already-parsed configuration mapping.

        Raises:
            ConfigurationError: If schema validation fails
        """
        validator = jsonschema.Draft7Validator(_load_schema())
        errors = [
            ConfigError(
                path=".".join(str(p) for p in error.absolute_path) or "root",
                message=error.message,
            )
            for error in sorted(validator.iter_errors(data), key=lambda e: list(map(str, e.absolute_path)))
        ]
        if errors:
            raise ConfigurationError(errors)

        # Schema restricts level names, so parsing cannot fail here
        log_file_level = parse_log_level(data.get("log_file_level", "FULL"))
        log_cli_level = parse_log_level(data.get("log_cli_level", "WARNING"))

        ctx_data = data.get("context", {})
        return cls(
            log_file_level=log_file_level,
            log_cli_level=log_cli_level,
            log_to_file=data.get("log_to_file", False),
            mode=Mode(data.get("mode", Mode.SEQUENTIAL)),
            max_concurrency=data.get("max_concurrency"),
            defaults=dict(data.get("defaults", {})),
            hosts=[_host_spec(entry) for entry in data.get("hosts", [])],
            context_defaults=ContextDefaults(
                path=ctx_data.get("path"),
                user=ctx_data.get("user"),
                group=ctx_data.get("group"),
                umask=ctx_data.get("umask"),
                env={k: str(v) for k, v in ctx_data.get("env", {}).items()},
            ),
        )

    @classmethod
    def get_default_config_path(cls) -> Path:
        """Get the default config file path."""
        return Path.home() / ".config" / "sshfleet" / "config.yaml"

    def build_context(self, hosts: list[Any] | None = None, **overrides: Any) -> Context:
        """Create a Context from the configured (or given) hosts and settings.

        Keyword overrides (path, user, group, umask, dry_run, ...) win over the
        file: context settings replace those from the ``context`` section,
        anything else is added to the shared host options. A ``dry_run``
        override is forced onto every host, even one whose own options say
        otherwise.
        """
        settings = {
            "path": self.context_defaults.path,
            "user": self.context_defaults.user,
            "group": self.context_defaults.group,
            "umask": self.context_defaults.umask,
        }
        env = dict(self.context_defaults.env)
        env.update(overrides.pop("env", None) or {})
        for key in list(settings):
            if overrides.get(key) is not None:
                settings[key] = overrides.pop(key)
            else:
                overrides.pop(key, None)

        shared = {**self.defaults, **{k: v for k, v in overrides.items() if v is not None}}
        ctx = context(hosts if hosts else self.hosts, shared)
        if overrides.get("dry_run"):
            forced = tuple(Host(h.name, {**h.options, "dry_run": True}) for h in ctx.hosts)
            ctx = replace(ctx, hosts=forced)
        ctx = (
            ctx.with_path(settings["path"])
            .with_user(settings["user"])
            .with_group(settings["group"])
            .with_umask(settings["umask"])
        )
        return ctx.with_env(env) if env else ctx


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, errors: list[ConfigError]) -> None:
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


def _host_spec(entry: str | dict[str, Any]) -> Any:
    """Turn a YAML host entry (name, or mapping with name + options) into a host spec."""
    if isinstance(entry, str):
        return entry
    options = {key: value for key, value in entry.items() if key != "name"}
    return (entry["name"], options)


def _load_schema() -> dict[str, Any]:
    """Load the config schema from package resources."""
    schema_path = Path(__file__).parent / "schemas" / "config-schema.yaml"
    with schema_path.open() as f:
        return yaml.safe_load(f)
