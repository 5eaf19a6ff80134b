from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from ansible_gitops import command_runner
from ansible_gitops.command_runner import (
    TIMEOUT_EXIT_CODE,
    CommandFailedError,
    CommandRunner,
    CommandStartError,
    CommandTimeoutError,
)


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_run_captures_output(tmp_path: Path) -> None:
    result = CommandRunner().run(
        _python("import os, sys; print(os.getcwd()); print('warn', file=sys.stderr)"),
        cwd=tmp_path,
        timeout_seconds=30,
    )
    assert result.ok
    assert result.exit_code == 0
    assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()
    assert result.stderr.strip() == "warn"
    assert "warn" in result.output
    assert result.timed_out is False
    assert result.check() is result


def test_nonzero_exit_is_reported_not_raised() -> None:
    result = CommandRunner().run(_python("import sys; sys.exit(3)"), timeout_seconds=30)
    assert result.exit_code == 3
    assert not result.ok
    assert not result.timed_out
    with pytest.raises(CommandFailedError) as excinfo:
        result.check()
    assert not isinstance(excinfo.value, CommandTimeoutError)
    assert "exit=3" in str(excinfo.value)


def test_missing_executable_is_start_error() -> None:
    with pytest.raises(CommandStartError, match="not found"):
        CommandRunner().run(["definitely-not-a-real-tool-xyz"], timeout_seconds=5)


def test_timeout_kills_process_within_bound() -> None:
    timeout = 0.5
    started = time.monotonic()
    result = CommandRunner().run(_python("import time; time.sleep(30)"), timeout_seconds=timeout)
    elapsed = time.monotonic() - started

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.elapsed_seconds < timeout + 5.0
    assert elapsed < timeout + 5.0
    with pytest.raises(CommandTimeoutError, match="timed out"):
        result.check()


def test_cancel_event_kills_process() -> None:
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        result = CommandRunner().run(
            _python("import time; time.sleep(30)"),
            timeout_seconds=60,
            cancel=cancel,
        )
    finally:
        timer.cancel()

    assert result.cancelled is True
    assert result.timed_out is False
    assert not result.ok
    assert result.elapsed_seconds < 10


def test_output_is_truncated() -> None:
    result = CommandRunner(output_limit_chars=10).run(
        _python("print('x' * 100)"),
        timeout_seconds=30,
    )
    assert result.stdout.startswith("x" * 10)
    assert "<truncated" in result.stdout


def test_timeout_keeps_partial_output(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeProc:
        def __init__(self, *args: object, **kwargs: object) -> None:
            del args, kwargs
            self.returncode: int | None = None
            self.killed = False

        def communicate(self, *, timeout: float | None = None) -> tuple[str, str]:
            if not self.killed:
                raise subprocess.TimeoutExpired(cmd=["slow"], timeout=timeout or 0.0)
            self.returncode = -9
            return ("partial-out", "partial-err")

        def kill(self) -> None:
            self.killed = True

    monkeypatch.setattr(command_runner.subprocess, "Popen", FakeProc)

    result = CommandRunner().run(["slow"], timeout_seconds=0.05)

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.stdout == "partial-out"
    assert result.stderr == "partial-err"


def test_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError):
        CommandRunner().run(["true"], timeout_seconds=0)


def test_redacted_strings_are_masked_in_result_and_log(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="ansible_gitops")
    result = CommandRunner().run(
        _python("import sys; print('hunter2-secret'); sys.exit(1)"),
        timeout_seconds=30,
        redact=("hunter2-secret", ""),
    )
    assert result.stdout.strip() == "***"
    assert all("hunter2-secret" not in a for a in result.args)
    assert "hunter2-secret" not in result.describe()
    assert "Running" in caplog.text
    assert "hunter2-secret" not in caplog.text
