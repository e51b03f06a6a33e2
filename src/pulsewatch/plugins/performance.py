"""Process performance metrics.

Reports a snapshot of process-level measurements (uptime, CPU time, peak
memory, garbage collections, live threads) together with any custom marks
recorded through ``record``.
"""

from __future__ import annotations

import atexit
import dataclasses
import gc
import os
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import normalize_options
from ..errors import ConfigurationError, UsageError
from ..log import get_logger
from ..metrics import PerformanceMetric
from . import BasePlugin

if sys.platform != "win32":
    import resource

logger = get_logger(__name__)

REPORT_TIMES = ("exit", "manual", "immediate")


@dataclass
class PerformanceOptions:
    """Options for the performance plugin.

    Attributes:
        report_time: When the snapshot is sent: ``exit`` (at interpreter
            exit), ``manual`` (only through ``report``) or ``immediate``
            (``report_delay`` seconds after setup).
        report_delay: Delay in seconds for ``immediate``.
    """

    report_time: str = "exit"
    report_delay: float = 3.0

    def __post_init__(self) -> None:
        if self.report_time not in REPORT_TIMES:
            raise ConfigurationError(
                f"report_time must be one of {', '.join(REPORT_TIMES)}, got {self.report_time!r}"
            )
        if self.report_delay < 0:
            raise ConfigurationError(f"report_delay must be >= 0, got {self.report_delay}")


_PERFORMANCE_FIELDS = frozenset(f.name for f in dataclasses.fields(PerformanceOptions))


def _max_rss_kb() -> Optional[float]:
    if sys.platform == "win32":
        return None
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # macOS reports bytes, Linux kilobytes.
    return rss / 1024 if sys.platform == "darwin" else float(rss)


def collect_process_metrics(started: float) -> Dict[str, float]:
    """Measure the current process.

    Args:
        started: ``time.monotonic()`` value uptime is measured from.

    Returns:
        Millisecond timings plus ``maxRss`` (KiB, where the platform has
        it), ``gcCollections`` and ``threadCount``.
    """
    times = os.times()
    metrics: Dict[str, float] = {
        "uptime": round((time.monotonic() - started) * 1000, 3),
        "cpuUser": round(times.user * 1000, 3),
        "cpuSystem": round(times.system * 1000, 3),
        "gcCollections": float(sum(stats["collections"] for stats in gc.get_stats())),
        "threadCount": float(threading.active_count()),
    }
    max_rss = _max_rss_kb()
    if max_rss is not None:
        metrics["maxRss"] = max_rss
    return metrics


class PerformancePlugin(BasePlugin[PerformanceOptions]):
    """Reports process performance once per ``report_time``."""

    name = "performance"

    def __init__(self) -> None:
        super().__init__()
        self._started = time.monotonic()
        self._marks: Dict[str, float] = {}
        self._timer: Optional[threading.Timer] = None
        self._exit_registered = False
        self._lock = threading.Lock()

    def parse_options(self, options: Any) -> PerformanceOptions:
        if isinstance(options, PerformanceOptions):
            return options
        return PerformanceOptions(**normalize_options(options or {}, _PERFORMANCE_FIELDS))

    def init(self) -> None:
        options = self.options
        if options is None:
            raise UsageError("PerformancePlugin.init called outside setup")
        if options.report_time == "exit":
            atexit.register(self._report_at_exit)
            self._exit_registered = True
        elif options.report_time == "immediate":
            self._timer = threading.Timer(options.report_delay, self.report)
            self._timer.daemon = True
            self._timer.start()

    def teardown(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._exit_registered:
            atexit.unregister(self._report_at_exit)
            self._exit_registered = False

    def record(self, name: str, value: float) -> None:
        """Record a custom mark, sent with the next report."""
        with self._lock:
            self._marks[name] = value

    def collect(self) -> Dict[str, float]:
        """Process metrics merged with the recorded marks."""
        metrics = collect_process_metrics(self._started)
        with self._lock:
            metrics.update(self._marks)
        return metrics

    def report(self, custom: Optional[Dict[str, float]] = None) -> None:
        """Send a performance metric now.

        Args:
            custom: Extra values merged over the collected ones.
        """
        if self.core is None:
            return
        metrics = self.collect()
        if custom:
            metrics.update(custom)
        try:
            self.core.send(PerformanceMetric(metrics=metrics), immediate=True)
        except Exception as e:
            logger.error("Failed to report performance metrics", error=str(e))

    def _report_at_exit(self) -> None:
        if self.core is not None and not self.core.destroyed:
            self.report()
