from __future__ import annotations

import threading
from collections.abc import Sequence
from pathlib import Path

import pytest

from ansible_gitops.command_runner import CommandResult, CommandStartError
from ansible_gitops.config import WatchConfig


class FakeRunner:
    """Scripted stand-in for CommandRunner that understands git and ansible argv."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.revisions: dict[str, str] = {}
        self.incoming: dict[str, str] = {}
        self.checkout_failures: set[str] = set()
        self.pull_failures: set[str] = set()
        self.missing_tools: set[str] = set()
        self.broken_tools: set[str] = set()
        self.playbook_exit_code = 0
        self.playbook_timed_out = False

    def _result(
        self,
        argv: tuple[str, ...],
        *,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        timeout_seconds: float,
        timed_out: bool = False,
    ) -> CommandResult:
        return CommandResult(
            args=argv,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            elapsed_seconds=0.01,
            timeout_seconds=timeout_seconds,
            timed_out=timed_out,
        )

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout_seconds: float,
        capture: bool = True,
        cancel: threading.Event | None = None,
        redact: Sequence[str] = (),
    ) -> CommandResult:
        del cwd, capture, cancel, redact
        argv = tuple(str(a) for a in args)
        self.calls.append(argv)
        tool = argv[0]
        if tool in self.missing_tools:
            raise CommandStartError(f"{tool} not found (install it and ensure it's on PATH).")

        if tool == "git":
            return self._git(argv, timeout_seconds=timeout_seconds)

        if argv[1:] == ("--version",):
            if tool in self.broken_tools:
                return self._result(argv, exit_code=1, stderr="broken", timeout_seconds=timeout_seconds)
            return self._result(argv, stdout=f"{tool} [core 2.16.0]\n", timeout_seconds=timeout_seconds)

        if tool == "ansible-playbook":
            return self._result(
                argv,
                exit_code=124 if self.playbook_timed_out else self.playbook_exit_code,
                timeout_seconds=timeout_seconds,
                timed_out=self.playbook_timed_out,
            )

        raise AssertionError(f"unexpected command: {argv}")

    def _git(self, argv: tuple[str, ...], *, timeout_seconds: float) -> CommandResult:
        if argv[1] != "-C":
            return self._result(argv, timeout_seconds=timeout_seconds)

        repo, sub = argv[2], argv[3]
        if sub == "checkout":
            if repo in self.checkout_failures:
                return self._result(
                    argv,
                    exit_code=1,
                    stderr=f"error: pathspec '{argv[4]}' did not match",
                    timeout_seconds=timeout_seconds,
                )
            return self._result(argv, timeout_seconds=timeout_seconds)
        if sub == "pull":
            if repo in self.pull_failures:
                return self._result(
                    argv,
                    exit_code=1,
                    stderr="fatal: unable to access remote",
                    timeout_seconds=timeout_seconds,
                )
            if repo in self.incoming:
                self.revisions[repo] = self.incoming.pop(repo)
            return self._result(argv, timeout_seconds=timeout_seconds)
        if sub == "rev-parse":
            revision = self.revisions.get(repo)
            if revision is None:
                return self._result(
                    argv,
                    exit_code=128,
                    stderr="fatal: not a git repository",
                    timeout_seconds=timeout_seconds,
                )
            return self._result(argv, stdout=revision + "\n", timeout_seconds=timeout_seconds)
        raise AssertionError(f"unexpected git command: {argv}")

    def commands(self, tool: str, sub: str | None = None) -> list[tuple[str, ...]]:
        out = [c for c in self.calls if c[0] == tool]
        if sub is not None:
            out = [c for c in out if sub in c]
        return out

    def playbook_runs(self) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] == "ansible-playbook" and "--version" not in c]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def playbook(tmp_path: Path) -> Path:
    path = tmp_path / "site.yml"
    path.write_text("- hosts: all\n  tasks: []\n", encoding="utf-8")
    return path


@pytest.fixture
def watch_config(playbook: Path) -> WatchConfig:
    return WatchConfig(
        playbook_path=playbook,
        interval_seconds=10,
        repos=("/a", "/b"),
        branch="main",
        github_token="t" * 40,
        github_user="deployer",
    )
