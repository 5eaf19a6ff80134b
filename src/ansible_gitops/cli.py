from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from ansible_gitops import __version__
from ansible_gitops.ansible_subprocess import ToolUnavailableError, check_ansible_tools
from ansible_gitops.command_runner import CommandRunner
from ansible_gitops.config import (
    ConfigError,
    WatchConfig,
    describe_config,
    load_config,
    validate_config,
)
from ansible_gitops.git_subprocess import GitError, git_configure_credentials
from ansible_gitops.reconcile import Reconciler
from ansible_gitops.watch_loop import WatchLoop

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.strip().upper())
    if not isinstance(level, int):
        raise SystemExit(f"ansible-gitops: invalid log level {level_name!r}")
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _load_validated_config(args: argparse.Namespace) -> WatchConfig:
    flags = {
        "playbook": args.playbook,
        "inventory": args.inventory,
        "interval": args.interval,
        "repos": args.repos,
        "branch": args.branch,
        "github_token": args.github_token,
        "github_user": args.github_user,
        "git_timeout": args.git_timeout,
        "playbook_timeout": args.playbook_timeout,
    }
    config_file = Path(args.config).expanduser() if args.config else None
    try:
        config = load_config(
            flags=flags,
            config_file=config_file,
            configure_git=not bool(args.skip_git_config),
        )
        validate_config(config)
    except ConfigError as e:
        raise SystemExit(f"ansible-gitops: configuration error: {e}") from e
    return config


def _log_config(config: WatchConfig) -> None:
    logger.info("Configuration:")
    for line in describe_config(config):
        logger.info("  %s", line)


def _start_reconciler(reconciler: Reconciler) -> None:
    config = reconciler.config
    runner = reconciler.runner
    try:
        check_ansible_tools(runner, timeout_seconds=config.probe_timeout_seconds)
    except ToolUnavailableError as e:
        raise SystemExit(f"ansible-gitops: Ansible not available: {e}") from e

    if config.configure_git:
        try:
            git_configure_credentials(runner, user=config.github_user, token=config.github_token)
        except GitError as e:
            raise SystemExit(f"ansible-gitops: git configuration error: {e}") from e
    else:
        logger.info("Skipping git credential configuration (--skip-git-config)")

    reconciler.initialize()


def _cmd_watch(args: argparse.Namespace) -> int:
    config = _load_validated_config(args)
    logger.info("Starting Ansible GitOps Service...")
    logger.info("Current working directory: %s", os.getcwd())
    _log_config(config)

    reconciler = Reconciler(config, CommandRunner())
    loop = WatchLoop(
        reconciler,
        interval_seconds=config.interval_seconds,
        grace_seconds=config.shutdown_grace_seconds,
    )
    # Startup may block on git and ansible for minutes; stop requests must
    # already be handled while it runs.
    loop.install_signal_handlers()
    _start_reconciler(reconciler)
    if loop.stopping:
        logger.info("Shutdown requested during startup")
        logger.info("Service stopped")
        return 0
    loop.serve()
    return 0


def _cmd_tick(args: argparse.Namespace) -> int:
    config = _load_validated_config(args)
    _log_config(config)

    reconciler = Reconciler(config, CommandRunner())
    _start_reconciler(reconciler)
    result = reconciler.run_tick()

    changed = ",".join(result.changed_repos) or "-"
    failed = ",".join(f.path for f in result.failed_repos) or "-"
    line = f"status={result.status} changed={changed} failed={failed}"
    if result.skip_reason:
        line += f" reason={result.skip_reason!r}"
    print(line)
    return 1 if result.status == "apply_failed" else 0


def _cmd_check_config(args: argparse.Namespace) -> int:
    config = _load_validated_config(args)
    for line in describe_config(config):
        print(line)
    print("status=ok")
    return 0


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help="TOML file with a [watch] table.")
    parser.add_argument("--playbook", default=None, help="Path to the Ansible playbook ($ANSIBLE_PLAYBOOK).")
    parser.add_argument("--inventory", default=None, help="Path to the Ansible inventory ($ANSIBLE_INVENTORY).")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between checks, at least 10 ($WATCH_INTERVAL, default 300).",
    )
    parser.add_argument(
        "--repos",
        default=None,
        help="Comma-separated list of local repository checkouts to watch ($WATCH_REPOS).",
    )
    parser.add_argument("--branch", default=None, help="Branch to watch for changes ($WATCH_BRANCH, default main).")
    parser.add_argument("--github-token", default=None, help="GitHub Personal Access Token ($GITHUB_TOKEN).")
    parser.add_argument("--github-user", default=None, help="GitHub username ($GITHUB_USER).")
    parser.add_argument(
        "--git-timeout",
        type=float,
        default=None,
        help="Timeout for each git command in seconds (default 120).",
    )
    parser.add_argument(
        "--playbook-timeout",
        type=float,
        default=None,
        help="Timeout for one ansible-playbook run in seconds (default 1800).",
    )
    parser.add_argument(
        "--skip-git-config",
        action="store_true",
        help="Do not write GitHub credentials into the global git config.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ansible-gitops",
        description="Watch git repositories and run ansible-playbook when they change.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level ($LOG_LEVEL, default INFO).",
    )

    subparsers = parser.add_subparsers(dest="command")

    watch_parser = subparsers.add_parser("watch", help="Watch repositories until SIGINT/SIGTERM.")
    _add_config_arguments(watch_parser)
    watch_parser.set_defaults(func=_cmd_watch)

    tick_parser = subparsers.add_parser("tick", help="Run a single reconciliation tick and exit.")
    _add_config_arguments(tick_parser)
    tick_parser.set_defaults(func=_cmd_tick)

    check_parser = subparsers.add_parser("check-config", help="Validate and print the effective configuration.")
    _add_config_arguments(check_parser)
    check_parser.set_defaults(func=_cmd_check_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 0
    _configure_logging(os.environ.get("LOG_LEVEL") or args.log_level or "INFO")
    return int(args.func(args))
