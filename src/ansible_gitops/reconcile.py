from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Literal

from ansible_gitops.ansible_subprocess import (
    AutomationRunError,
    ToolUnavailableError,
    check_ansible_tools,
    run_playbook,
)
from ansible_gitops.command_runner import CommandResult, CommandRunner
from ansible_gitops.config import WatchConfig
from ansible_gitops.repo_state import RepoCheckError, RepoState, RepoStateTracker

logger = logging.getLogger(__name__)

TickStatus = Literal[
    "skipped",
    "no_changes",
    "applied",
    "apply_failed",
    "cancelled",
]


@dataclass(frozen=True, slots=True)
class RepoFailure:
    path: str
    error: str


@dataclass(frozen=True, slots=True)
class TickResult:
    status: TickStatus
    changed_repos: tuple[str, ...] = ()
    failed_repos: tuple[RepoFailure, ...] = ()
    skip_reason: str | None = None
    playbook: CommandResult | None = None
    error: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.changed_repos)


class Reconciler:
    """One watch-and-reconcile pass over every tracked repository.

    Owns the repository state for the lifetime of the process. Each tick
    probes the Ansible tools, checks repositories one by one in configuration
    order, and runs the playbook at most once if any of them moved.
    """

    def __init__(
        self,
        config: WatchConfig,
        runner: CommandRunner,
        *,
        tracker: RepoStateTracker | None = None,
    ) -> None:
        if config.playbook_path is None:
            raise ValueError("Reconciler requires a validated config (playbook_path is unset).")
        self.config = config
        self.runner = runner
        self.tracker = tracker or RepoStateTracker(
            runner,
            branch=config.branch,
            git_timeout_seconds=config.git_timeout_seconds,
        )

    def initialize(self) -> dict[str, RepoState]:
        return self.tracker.initialize(self.config.repos)

    def run_tick(self, cancel: threading.Event | None = None) -> TickResult:
        logger.info(
            "=== Checking repositories for changes (interval: %d seconds) ===",
            self.config.interval_seconds,
        )
        if cancel is not None and cancel.is_set():
            return TickResult(status="cancelled")

        try:
            check_ansible_tools(self.runner, timeout_seconds=self.config.probe_timeout_seconds)
        except ToolUnavailableError as e:
            logger.warning("Ansible check failed, skipping this tick: %s", e)
            return TickResult(status="skipped", skip_reason=str(e))

        changed: list[str] = []
        failed: list[RepoFailure] = []
        for path in self.tracker.paths:
            if cancel is not None and cancel.is_set():
                logger.info("Shutdown requested; stopping repository scan")
                return TickResult(
                    status="cancelled",
                    changed_repos=tuple(changed),
                    failed_repos=tuple(failed),
                )

            logger.info("Checking repository: %s (branch: %s)", path, self.config.branch)
            try:
                check = self.tracker.check_and_update(path, cancel=cancel)
            except RepoCheckError as e:
                logger.error("Error checking repository %s", e)
                failed.append(RepoFailure(path=path, error=str(e)))
                continue

            if check.changed:
                logger.info("Detected changes in repository %s (branch: %s)", path, self.config.branch)
                logger.info("   Old hash: %s", check.previous or "<unknown>")
                logger.info("   New hash: %s", check.revision)
                changed.append(path)
            else:
                logger.info("No changes detected in %s", path)

        if not changed:
            logger.info("=== No changes detected in any repository ===")
            return TickResult(status="no_changes", failed_repos=tuple(failed))

        if cancel is not None and cancel.is_set():
            logger.info("Shutdown requested; not starting the playbook")
            return TickResult(
                status="cancelled",
                changed_repos=tuple(changed),
                failed_repos=tuple(failed),
            )

        logger.info("=== Changes detected in %d repositories, running playbook ===", len(changed))
        try:
            result = run_playbook(
                self.runner,
                playbook_path=self.config.playbook_path,
                inventory_path=self.config.inventory_path,
                timeout_seconds=self.config.playbook_timeout_seconds,
            )
        except AutomationRunError as e:
            logger.error("Error running playbook: %s", e)
            return TickResult(
                status="apply_failed",
                changed_repos=tuple(changed),
                failed_repos=tuple(failed),
                playbook=e.result,
                error=str(e),
            )

        logger.info("Playbook executed successfully in %.1fs", result.elapsed_seconds)
        return TickResult(
            status="applied",
            changed_repos=tuple(changed),
            failed_repos=tuple(failed),
            playbook=result,
        )
