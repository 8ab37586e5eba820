"""
Request outcome counters and their periodic report.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

REQUESTS_TOTAL = "requests_total"
REQUESTS_SUCCESS = "requests_success"
REQUESTS_FAILURE = "requests_failure"

COUNTER_NAMES = (REQUESTS_TOTAL, REQUESTS_SUCCESS, REQUESTS_FAILURE)


class ProxyMetrics:
    """
    Monotonic counters shared by all request handler threads.

    Counters only ever go up: there is no decrement and no reset.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTER_NAMES}

    def increment(self, name: str) -> int:
        """Add one to ``name`` and return the new value."""
        with self._lock:
            if name not in self._counters:
                raise KeyError(f"unknown counter '{name}'")
            self._counters[name] += 1
            return self._counters[name]

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self) -> Dict[str, int]:
        """Consistent copy of all counters."""
        with self._lock:
            return dict(self._counters)

    @property
    def total(self) -> int:
        return self.get(REQUESTS_TOTAL)

    @property
    def success(self) -> int:
        return self.get(REQUESTS_SUCCESS)

    @property
    def failure(self) -> int:
        return self.get(REQUESTS_FAILURE)


def format_snapshot(snapshot: Dict[str, int]) -> str:
    return " ".join(f"{name}={value}" for name, value in snapshot.items())


class MetricsReporter:
    """Background thread reporting a metrics snapshot every ``interval`` seconds."""

    def __init__(
        self,
        metrics: ProxyMetrics,
        interval: float = 60,
        sink: Optional[Callable[[str], None]] = None,
    ):
        self.metrics = metrics
        self.interval = interval
        self._sink = sink or logger.info
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def report(self) -> None:
        try:
            self._sink(f"metrics: {format_snapshot(self.metrics.snapshot())}")
        except Exception as e:
            logger.warning(f"Failed to report metrics: {e}")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.report()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="proximity-metrics")
        self._thread.start()

    def stop(self) -> None:
        """Stop the thread and write one last report."""
        if not self.is_running:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        self.report()
