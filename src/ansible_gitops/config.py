from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

MIN_INTERVAL_SECONDS = 10
MIN_TOKEN_LENGTH = 40

DEFAULT_INTERVAL_SECONDS = 300
DEFAULT_BRANCH = "main"
DEFAULT_GIT_TIMEOUT_SECONDS = 120.0
DEFAULT_PLAYBOOK_TIMEOUT_SECONDS = 30 * 60.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 60.0
DEFAULT_SHUTDOWN_GRACE_SECONDS = 1.0

# Environment wins over flags, flags over the config file.
ENV_VARS: dict[str, str] = {
    "playbook": "ANSIBLE_PLAYBOOK",
    "inventory": "ANSIBLE_INVENTORY",
    "interval": "WATCH_INTERVAL",
    "repos": "WATCH_REPOS",
    "branch": "WATCH_BRANCH",
    "github_token": "GITHUB_TOKEN",
    "github_user": "GITHUB_USER",
}

_FILE_KEYS = frozenset(
    {
        "playbook",
        "inventory",
        "interval",
        "repos",
        "branch",
        "github_token",
        "github_user",
        "git_timeout",
        "playbook_timeout",
    }
)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class WatchConfig:
    playbook_path: Path | None
    inventory_path: Path | None = None
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    repos: tuple[str, ...] = ()
    branch: str = DEFAULT_BRANCH
    github_token: str = ""
    github_user: str = ""
    git_timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS
    playbook_timeout_seconds: float = DEFAULT_PLAYBOOK_TIMEOUT_SECONDS
    probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS
    configure_git: bool = True


def validate_config(config: WatchConfig) -> None:
    """Raise ConfigError for the first invalid setting; return None when usable."""
    if config.playbook_path is None or not str(config.playbook_path).strip():
        raise ConfigError("playbook path is required")
    if not config.playbook_path.is_file():
        raise ConfigError(f"playbook file does not exist: {config.playbook_path}")
    if config.inventory_path is not None and not config.inventory_path.exists():
        raise ConfigError(f"inventory file does not exist: {config.inventory_path}")
    if config.interval_seconds < MIN_INTERVAL_SECONDS:
        raise ConfigError(f"watch interval must be at least {MIN_INTERVAL_SECONDS} seconds")
    if not config.repos:
        raise ConfigError("at least one repository must be specified")
    if not config.github_token:
        raise ConfigError("GitHub token is required")
    if len(config.github_token) < MIN_TOKEN_LENGTH:
        raise ConfigError("invalid GitHub token format")


def describe_config(config: WatchConfig) -> list[str]:
    repos = ", ".join(config.repos) or "<none>"
    token = "<set>" if config.github_token else "<unset>"
    return [
        f"Playbook Path: {config.playbook_path or '<unset>'}",
        f"Inventory Path: {config.inventory_path or '<none>'}",
        f"Watch Interval: {config.interval_seconds} seconds",
        f"Watch Repositories: {repos}",
        f"Watch Branch: {config.branch}",
        f"GitHub User: {config.github_user or '<unset>'}",
        f"GitHub Token: {token}",
        f"Playbook Timeout: {config.playbook_timeout_seconds:.0f} seconds",
    ]


def _dedupe_preserve_order(items: Sequence[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for item in items:
        if item in seen:
            continue
        out.append(item)
        seen.add(item)
    return out


def split_repos(raw: str) -> tuple[str, ...]:
    return tuple(_dedupe_preserve_order([r.strip() for r in raw.split(",") if r.strip()]))


def _toml_load(path: Path) -> dict[str, Any]:
    try:
        import tomllib  # pyright: ignore[reportMissingImports]
    except ModuleNotFoundError:  # pragma: no cover
        import tomli as tomllib  # type: ignore[no-redef]

    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}") from e
    except Exception as e:  # tomllib.TOMLDecodeError is not public across tomli/tomllib
        raise ConfigError(f"Failed to parse TOML in {path}: {e}") from e
    return data


def load_config_file(path: Path) -> dict[str, Any]:
    data = _toml_load(path)
    table = data.get("watch", {})
    if not isinstance(table, dict):
        raise ConfigError(f"{path}: [watch] must be a table")

    errors: list[str] = []
    for key in sorted(set(table) - _FILE_KEYS):
        errors.append(f"watch.{key}: unknown setting")

    values: dict[str, Any] = {}
    for key, value in table.items():
        if key not in _FILE_KEYS:
            continue
        if key == "repos":
            if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
                errors.append("watch.repos: expected list[str]")
                continue
            values[key] = ",".join(value)
        elif key in {"interval", "git_timeout", "playbook_timeout"}:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"watch.{key}: expected number, got {type(value).__name__}")
                continue
            values[key] = value
        else:
            if not isinstance(value, str):
                errors.append(f"watch.{key}: expected string, got {type(value).__name__}")
                continue
            values[key] = value

    if errors:
        raise ConfigError(f"Invalid config file {path}:\n- " + "\n- ".join(errors))
    return values


def _parse_int(value: Any, *, source: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"invalid {source}={value!r} (expected int)")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError as e:
        raise ConfigError(f"invalid {source}={value!r} (expected int)") from e


def _parse_seconds(value: Any, *, source: str) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid {source}={value!r} (expected seconds)") from e
    if seconds <= 0:
        raise ConfigError(f"{source} must be > 0, got {value!r}")
    return seconds


def load_config(
    *,
    flags: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    config_file: Path | None = None,
    configure_git: bool = True,
) -> WatchConfig:
    """Assemble a WatchConfig from defaults, a TOML file, flags and environment.

    ``flags`` holds values from the command line keyed like the config file
    (``playbook``, ``repos``, ...); ``None`` means "not given". Repos may be a
    comma separated string or a sequence. The result is not validated.
    """
    if environ is None:
        environ = os.environ

    values: dict[str, Any] = {}
    sources: dict[str, str] = {}
    if config_file is not None:
        for key, value in load_config_file(config_file).items():
            values[key] = value
            sources[key] = f"{config_file}:watch.{key}"
    for key, value in (flags or {}).items():
        if value is None:
            continue
        values[key] = value
        sources[key] = f"--{key.replace('_', '-')}"
    for key, env_name in ENV_VARS.items():
        raw = environ.get(env_name)
        if raw:
            values[key] = raw
            sources[key] = env_name

    raw_repos = values.get("repos", ())
    if isinstance(raw_repos, str):
        repos = split_repos(raw_repos)
    else:
        repos = tuple(_dedupe_preserve_order([str(r).strip() for r in raw_repos if str(r).strip()]))

    playbook = str(values.get("playbook") or "").strip()
    inventory = str(values.get("inventory") or "").strip()

    return WatchConfig(
        playbook_path=Path(playbook) if playbook else None,
        inventory_path=Path(inventory) if inventory else None,
        interval_seconds=(
            _parse_int(values["interval"], source=sources["interval"])
            if "interval" in values
            else DEFAULT_INTERVAL_SECONDS
        ),
        repos=repos,
        branch=str(values.get("branch") or DEFAULT_BRANCH).strip(),
        github_token=str(values.get("github_token") or "").strip(),
        github_user=str(values.get("github_user") or "").strip(),
        git_timeout_seconds=(
            _parse_seconds(values["git_timeout"], source=sources["git_timeout"])
            if "git_timeout" in values
            else DEFAULT_GIT_TIMEOUT_SECONDS
        ),
        playbook_timeout_seconds=(
            _parse_seconds(values["playbook_timeout"], source=sources["playbook_timeout"])
            if "playbook_timeout" in values
            else DEFAULT_PLAYBOOK_TIMEOUT_SECONDS
        ),
        configure_git=configure_git,
    )
