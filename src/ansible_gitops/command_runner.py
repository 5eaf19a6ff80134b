from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
KILLED_EXIT_CODE = -9

# Upper bound on how late a cancel request is noticed while a child runs.
_CANCEL_POLL_SECONDS = 0.2
_REAP_TIMEOUT_SECONDS = 5.0


class CommandError(RuntimeError):
    pass


class CommandStartError(CommandError):
    pass


class CommandFailedError(CommandError):
    def __init__(self, result: CommandResult) -> None:
        super().__init__(result.describe())
        self.result = result


class CommandTimeoutError(CommandFailedError):
    pass


def _mask(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        text = text.replace(secret, "***")
    return text


def _truncate(text: str, *, limit: int) -> str:
    if len(text) <= limit:
        return text
    omitted = len(text) - limit
    return text[:limit] + f"\n...<truncated {omitted} chars>"


@dataclass(frozen=True, slots=True)
class CommandResult:
    args: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    elapsed_seconds: float
    timeout_seconds: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def output(self) -> str:
        parts = [p.strip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)

    def describe(self) -> str:
        command = " ".join(self.args)
        if self.timed_out:
            return f"{command} timed out after {self.timeout_seconds:.0f}s (killed)."
        if self.cancelled:
            return f"{command} cancelled after {self.elapsed_seconds:.1f}s (killed)."
        if self.exit_code == 0:
            return f"{command} succeeded in {self.elapsed_seconds:.1f}s."
        details = (self.stderr or "").strip() or (self.stdout or "").strip() or "<no output>"
        return f"{command} failed (exit={self.exit_code}): {details}"

    def check(self) -> CommandResult:
        if self.timed_out:
            raise CommandTimeoutError(self)
        if not self.ok:
            raise CommandFailedError(self)
        return self


class CommandRunner:
    """Run external commands synchronously under a hard wall-clock deadline.

    With ``capture=True`` stdout/stderr are collected into the result; with
    ``capture=False`` the child inherits this process's streams so long runs
    (``git pull``, ``ansible-playbook``) show up in the service log as they
    happen. A child still running at the deadline is killed and reaped and the
    result reports ``timed_out`` with exit code 124. When a ``cancel`` event is
    passed, setting it kills the child as well. Strings listed in ``redact``
    are replaced by ``***`` in log lines and in the returned result.
    """

    def __init__(self, *, output_limit_chars: int = 200_000) -> None:
        self.output_limit_chars = output_limit_chars

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
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")

        argv = tuple(str(a) for a in args)
        if not argv:
            raise ValueError("args must name a command.")
        secrets = tuple(s for s in redact if s)
        shown_args = tuple(_mask(a, secrets) for a in argv)

        logger.debug("Running %s (timeout=%.0fs)", " ".join(shown_args), timeout_seconds)
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                list(argv),
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE if capture else None,
                stderr=subprocess.PIPE if capture else None,
                text=True,
            )
        except FileNotFoundError as e:
            raise CommandStartError(
                f"{argv[0]} not found (install it and ensure it's on PATH)."
            ) from e
        except OSError as e:
            raise CommandStartError(_mask(f"Failed to start {argv[0]}: {e}", secrets)) from e

        deadline = started + timeout_seconds
        stdout: str | None = None
        stderr: str | None = None
        timed_out = False
        cancelled = False
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            wait = remaining if cancel is None else min(remaining, _CANCEL_POLL_SECONDS)
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                continue

        if timed_out or cancelled:
            proc.kill()
            try:
                stdout, stderr = proc.communicate(timeout=_REAP_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                # A grandchild still holds the pipes; keep whatever was read.
                logger.warning("%s did not release its output after kill", argv[0])

        elapsed = time.monotonic() - started
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        elif proc.returncode is None:
            exit_code = KILLED_EXIT_CODE
        else:
            exit_code = int(proc.returncode)

        result = CommandResult(
            args=shown_args,
            exit_code=exit_code,
            stdout=_mask(_truncate(stdout or "", limit=self.output_limit_chars), secrets),
            stderr=_mask(_truncate(stderr or "", limit=self.output_limit_chars), secrets),
            elapsed_seconds=elapsed,
            timeout_seconds=timeout_seconds,
            timed_out=timed_out,
            cancelled=cancelled,
        )
        if timed_out:
            logger.warning("%s", result.describe())
        return result
