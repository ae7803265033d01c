"""
Periodic timer driving the detection ticks.

Ticks run one at a time on a single worker thread. The schedule is fixed-rate:
when a tick overruns one or more intervals, the missed firings are skipped, not
queued, so a slow batch never causes ticks to pile up or overlap.
"""

import threading
import time
from collections.abc import Callable

import structlog

logger = structlog.get_logger(__name__)


class PeriodicTimer:
    """Calls `callback` every `interval_seconds`, first call one interval after start()"""

    def __init__(self, interval_seconds: float, callback: Callable[[], None], name: str = "tick"):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.name = name
        self.ticks = 0
        self.skipped_ticks = 0
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self._thread is not None:
            raise RuntimeError("Timer already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def cancel(self, wait: bool = False, timeout: float | None = None):
        """Stop future ticks. An in-flight tick is left to finish.

        Args:
            wait: Block until the worker thread exits
            timeout: Max seconds to wait
        """
        self._cancelled.set()
        if (
            wait
            and self._thread is not None
            and self._thread is not threading.current_thread()
        ):
            self._thread.join(timeout)

    def _run(self):
        next_fire = time.monotonic() + self.interval_seconds

        while not self._cancelled.wait(max(0.0, next_fire - time.monotonic())):
            self.ticks += 1
            try:
                self.callback()
            except Exception as e:
                logger.error("Tick callback failed", timer=self.name, error=str(e), exc_info=True)

            next_fire += self.interval_seconds
            now = time.monotonic()
            if now > next_fire:
                missed = int((now - next_fire) // self.interval_seconds) + 1
                next_fire += missed * self.interval_seconds
                self.skipped_ticks += missed
                logger.warning(
                    "Tick overran its interval, skipping missed ticks",
                    timer=self.name,
                    skipped=missed,
                    interval_seconds=self.interval_seconds,
                )
