from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Sequence
from types import FrameType
from typing import Protocol

from ansible_gitops.reconcile import TickResult

logger = logging.getLogger(__name__)

_MAIN_WAIT_SLICE_SECONDS = 0.5


class TickRunner(Protocol):
    def run_tick(self, cancel: threading.Event | None = None) -> TickResult: ...


class WatchLoop:
    """Periodic, strictly serialized ticks with cooperative shutdown.

    The first tick fires one interval after ``run()`` starts. A tick that
    overruns the interval is followed immediately by the next one; ticks never
    overlap. ``stop_event`` is the cancellation token handed to every tick.
    """

    def __init__(
        self,
        reconciler: TickRunner,
        *,
        interval_seconds: float,
        grace_seconds: float = 1.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        if grace_seconds < 0:
            raise ValueError(f"grace_seconds must be >= 0, got {grace_seconds}")
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.grace_seconds = grace_seconds
        self.stop_event = stop_event or threading.Event()
        self.ticks_completed = 0
        self.last_result: TickResult | None = None
        self._thread: threading.Thread | None = None

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def request_stop(self) -> None:
        self.stop_event.set()

    def run(self) -> None:
        next_tick_at = time.monotonic() + self.interval_seconds
        while not self.stop_event.wait(timeout=max(0.0, next_tick_at - time.monotonic())):
            started = time.monotonic()
            self._run_one_tick()
            next_tick_at = started + self.interval_seconds
        logger.info("Stopping watch loop")

    def _run_one_tick(self) -> None:
        try:
            result = self.reconciler.run_tick(self.stop_event)
        except Exception:
            logger.exception("Unexpected error during tick; continuing with the next one")
            return
        self.ticks_completed += 1
        self.last_result = result
        logger.debug("Tick %d finished with status=%s", self.ticks_completed, result.status)

    def install_signal_handlers(
        self,
        signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        for sig in signals:
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        del frame
        logger.info("Received %s, cleaning up...", signal.Signals(signum).name)
        self.request_stop()

    def serve(self) -> bool:
        """Run the loop on a worker thread until a stop is requested.

        Returns True when the in-flight tick (if any) finished within the
        grace period, False when it was still running and got abandoned.
        """
        if self._thread is not None:
            raise RuntimeError("WatchLoop.serve() may only be called once.")

        self._thread = threading.Thread(target=self.run, name="ansible-gitops-watch", daemon=True)
        self._thread.start()
        while self._thread.is_alive() and not self.stop_event.wait(_MAIN_WAIT_SLICE_SECONDS):
            pass

        self.request_stop()
        self._thread.join(timeout=self.grace_seconds)
        finished = not self._thread.is_alive()
        if not finished:
            logger.warning(
                "Tick still running after %.1fs grace period; not waiting for it",
                self.grace_seconds,
            )
        logger.info("Service stopped")
        return finished
