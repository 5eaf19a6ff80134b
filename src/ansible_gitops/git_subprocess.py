from __future__ import annotations

import threading
from collections.abc import Sequence

from ansible_gitops.command_runner import CommandError, CommandResult, CommandRunner


class GitError(RuntimeError):
    pass


def _run_git(
    runner: CommandRunner,
    args: Sequence[str],
    *,
    repo: str | None = None,
    timeout_seconds: float = 60.0,
    capture: bool = True,
    cancel: threading.Event | None = None,
    redact: Sequence[str] = (),
) -> CommandResult:
    argv = ["git"]
    if repo is not None:
        argv.extend(["-C", repo])
    argv.extend(args)
    try:
        return runner.run(
            argv,
            timeout_seconds=timeout_seconds,
            capture=capture,
            cancel=cancel,
            redact=redact,
        ).check()
    except CommandError as e:
        raise GitError(str(e)) from e


def git_checkout(
    runner: CommandRunner,
    *,
    repo: str,
    branch: str,
    timeout_seconds: float = 60.0,
    cancel: threading.Event | None = None,
) -> None:
    try:
        _run_git(
            runner,
            ["checkout", branch],
            repo=repo,
            timeout_seconds=timeout_seconds,
            cancel=cancel,
        )
    except GitError as e:
        raise GitError(f"Error checking out branch {branch}: {e}") from e


def git_pull(
    runner: CommandRunner,
    *,
    repo: str,
    branch: str,
    remote: str = "origin",
    timeout_seconds: float = 120.0,
    cancel: threading.Event | None = None,
) -> None:
    _run_git(
        runner,
        ["pull", remote, branch],
        repo=repo,
        timeout_seconds=timeout_seconds,
        capture=False,
        cancel=cancel,
    )


def git_rev_parse(
    runner: CommandRunner,
    *,
    repo: str,
    ref: str = "HEAD",
    timeout_seconds: float = 60.0,
    cancel: threading.Event | None = None,
) -> str:
    result = _run_git(
        runner,
        ["rev-parse", ref],
        repo=repo,
        timeout_seconds=timeout_seconds,
        cancel=cancel,
    )
    value = result.stdout.strip()
    if not value:
        raise GitError(f"git rev-parse {ref!r} returned empty output.")
    return value


def git_branch_revision(
    runner: CommandRunner,
    *,
    repo: str,
    branch: str,
    timeout_seconds: float = 60.0,
    cancel: threading.Event | None = None,
) -> str:
    git_checkout(runner, repo=repo, branch=branch, timeout_seconds=timeout_seconds, cancel=cancel)
    return git_rev_parse(runner, repo=repo, timeout_seconds=timeout_seconds, cancel=cancel)


def git_configure_credentials(
    runner: CommandRunner,
    *,
    user: str,
    token: str,
    host: str = "github.com",
    timeout_seconds: float = 30.0,
) -> None:
    """Point HTTPS remotes on ``host`` at a token-authenticated URL (global git config)."""
    settings: list[tuple[str, str]] = [
        ("credential.helper", "store"),
        ("user.name", user),
        (f"url.https://{token}@{host}/.insteadOf", f"https://{host}/"),
    ]
    for key, value in settings:
        # The insteadOf key embeds the token.
        safe_key = key.replace(token, "***") if token else key
        try:
            _run_git(
                runner,
                ["config", "--global", key, value],
                timeout_seconds=timeout_seconds,
                redact=(token,),
            )
        except GitError as e:
            raise GitError(f"Error running git config {safe_key}: {e}") from e
