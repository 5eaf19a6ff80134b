from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, replace

from ansible_gitops.command_runner import CommandRunner
from ansible_gitops.git_subprocess import (
    GitError,
    git_branch_revision,
    git_checkout,
    git_pull,
    git_rev_parse,
)

logger = logging.getLogger(__name__)


class RepoCheckError(RuntimeError):
    def __init__(self, path: str, branch: str, message: str) -> None:
        super().__init__(f"{path} (branch: {branch}): {message}")
        self.path = path
        self.branch = branch


@dataclass(frozen=True, slots=True)
class RepoState:
    path: str
    branch: str
    revision: str | None = None


@dataclass(frozen=True, slots=True)
class RepoCheckResult:
    path: str
    changed: bool
    revision: str
    previous: str | None


class RepoStateTracker:
    """Last known revision of every watched repository, in configuration order.

    Revisions are opaque strings compared by exact equality. A repository
    whose first lookup failed keeps ``revision=None`` and is retried on every
    check; the first revision obtained for it counts as a change.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        branch: str,
        git_timeout_seconds: float = 120.0,
    ) -> None:
        self.runner = runner
        self.branch = branch
        self.git_timeout_seconds = git_timeout_seconds
        self._states: dict[str, RepoState] = {}

    @property
    def states(self) -> dict[str, RepoState]:
        return dict(self._states)

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(self._states)

    def revision(self, path: str) -> str | None:
        return self._states[path].revision

    def initialize(self, repos: Iterable[str]) -> dict[str, RepoState]:
        for path in repos:
            state = RepoState(path=path, branch=self.branch)
            try:
                revision = self._resolve_revision(path)
            except GitError as e:
                logger.error("Error getting initial hash for %s: %s", path, e)
            else:
                state = replace(state, revision=revision)
                logger.info("Initial git hash for %s (branch: %s): %s", path, self.branch, revision)
            self._states[path] = state
        return self.states

    def check_and_update(
        self,
        path: str,
        *,
        cancel: threading.Event | None = None,
    ) -> RepoCheckResult:
        state = self._states.get(path)
        if state is None:
            raise KeyError(f"Repository is not tracked: {path}")

        try:
            git_checkout(
                self.runner,
                repo=path,
                branch=self.branch,
                timeout_seconds=self.git_timeout_seconds,
                cancel=cancel,
            )
        except GitError as e:
            raise RepoCheckError(path, self.branch, str(e)) from e

        try:
            git_pull(
                self.runner,
                repo=path,
                branch=self.branch,
                timeout_seconds=self.git_timeout_seconds,
                cancel=cancel,
            )
        except GitError as e:
            raise RepoCheckError(path, self.branch, f"Error pulling changes: {e}") from e

        try:
            revision = git_rev_parse(
                self.runner,
                repo=path,
                timeout_seconds=self.git_timeout_seconds,
                cancel=cancel,
            )
        except GitError as e:
            raise RepoCheckError(path, self.branch, f"Error getting git hash: {e}") from e

        previous = state.revision
        if revision == previous:
            return RepoCheckResult(path=path, changed=False, revision=revision, previous=previous)

        self._states[path] = replace(state, revision=revision)
        return RepoCheckResult(path=path, changed=True, revision=revision, previous=previous)

    def _resolve_revision(self, path: str) -> str:
        return git_branch_revision(
            self.runner,
            repo=path,
            branch=self.branch,
            timeout_seconds=self.git_timeout_seconds,
        )
