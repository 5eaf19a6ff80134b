from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ansible_gitops.command_runner import (
    CommandError,
    CommandFailedError,
    CommandResult,
    CommandRunner,
    CommandStartError,
)

logger = logging.getLogger(__name__)

PLAYBOOK_TOOL = "ansible-playbook"
GALAXY_TOOL = "ansible-galaxy"


class ToolUnavailableError(RuntimeError):
    pass


class AutomationRunError(RuntimeError):
    def __init__(self, message: str, *, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass(frozen=True, slots=True)
class ToolVersions:
    playbook: str
    galaxy: str


def _probe_version(runner: CommandRunner, tool: str, *, timeout_seconds: float) -> str:
    try:
        result = runner.run([tool, "--version"], timeout_seconds=timeout_seconds).check()
    except CommandStartError as e:
        raise ToolUnavailableError(f"{tool} not found: {e}") from e
    except CommandError as e:
        raise ToolUnavailableError(f"{tool} not usable: {e}") from e

    output = result.output
    if not output:
        raise ToolUnavailableError(f"{tool} --version returned empty output.")
    return output.splitlines()[0].strip()


def check_ansible_tools(runner: CommandRunner, *, timeout_seconds: float = 60.0) -> ToolVersions:
    playbook = _probe_version(runner, PLAYBOOK_TOOL, timeout_seconds=timeout_seconds)
    logger.info("Ansible version: %s", playbook)
    galaxy = _probe_version(runner, GALAXY_TOOL, timeout_seconds=timeout_seconds)
    logger.info("Ansible Galaxy version: %s", galaxy)
    return ToolVersions(playbook=playbook, galaxy=galaxy)


def playbook_command(playbook_path: Path, inventory_path: Path | None = None) -> tuple[str, ...]:
    args: list[str] = [PLAYBOOK_TOOL, str(playbook_path)]
    if inventory_path is not None:
        args.extend(["-i", str(inventory_path)])
    return tuple(args)


def run_playbook(
    runner: CommandRunner,
    *,
    playbook_path: Path,
    inventory_path: Path | None = None,
    timeout_seconds: float = 1800.0,
) -> CommandResult:
    """Apply the playbook once, streaming its output.

    A shutdown request does not interrupt a run in progress; only the timeout
    kills it.
    """
    args = playbook_command(playbook_path, inventory_path)
    logger.info("Executing command: %s", " ".join(args))
    try:
        return runner.run(args, timeout_seconds=timeout_seconds, capture=False).check()
    except CommandFailedError as e:
        raise AutomationRunError(str(e), result=e.result) from e
    except CommandError as e:
        raise AutomationRunError(str(e)) from e
