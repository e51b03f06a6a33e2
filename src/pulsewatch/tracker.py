"""Metric buffering and flush control.

The tracker owns the configuration, the session id, the plugin registry and
the in-memory metric buffer. It samples and enriches incoming metrics,
decides when to flush, and requeues batches the reporter failed to deliver.

Plugins report from whatever thread observed the event, so buffer appends,
the flush swap and the failed-batch merge happen under one lock. Delivery
itself runs outside it: the buffer is detached by swapping references, so a
flush re-entered during delivery never sends the same metric twice.
"""

from __future__ import annotations

import random
import secrets
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .buffer import merge_failed_batch
from .config import TrackerConfig
from .errors import DeliveryError, TrackerDestroyedError
from .log import get_logger, set_debug
from .metrics import Metric, now_ms
from .plugins import Plugin
from .reporter import Reporter
from .stacktrace import error_metric_from_exception

logger = get_logger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

# Config keys the reporter mirrors.
_REPORTER_KEYS = ("report_url", "headers", "report_immediately", "debug")

PluginSpec = Union[Plugin, Callable[[], Plugin], tuple]


def _base36(number: int) -> str:
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_session_id() -> str:
    """Generate a session id: base-36 millisecond time plus a random suffix."""
    return _base36(int(time.time() * 1000)) + _base36(secrets.randbits(52))


class Tracker:
    """Buffers metrics and hands batches to a reporter.

    Args:
        config: Tracker configuration, or an options mapping accepted by
            ``TrackerConfig.from_options``.
        rng: Source of uniform random numbers in ``[0, 1)`` for sampling.

    Raises:
        ConfigurationError: If the project is missing or a value is invalid.

    Example:
        tracker = Tracker({"project": "shop", "reportUrl": "https://collect.example.com"})
        tracker.set_reporter(Reporter.from_config(tracker.get_config()))
        tracker.send(CustomMetric(name="checkout", value=1))
    """

    def __init__(
        self,
        config: Union[TrackerConfig, Mapping[str, Any]],
        rng: Callable[[], float] = random.random,
    ) -> None:
        if not isinstance(config, TrackerConfig):
            config = TrackerConfig.from_options(config)
        self._config = config
        self._rng = rng
        self._plugins: Dict[str, Plugin] = {}
        self._reporter: Optional[Reporter] = None
        self._buffer: List[Metric] = []
        # Guards the buffer: plugins send from hook, timer and executor threads.
        self._lock = threading.Lock()
        self._session_id = generate_session_id()
        self._destroyed = False

        if config.debug:
            set_debug(True)
            logger.debug("Tracker initialized", project=config.project, session_id=self._session_id)

    @property
    def session_id(self) -> str:
        """Session id attached to every metric this tracker enriches."""
        return self._session_id

    @property
    def destroyed(self) -> bool:
        """Whether ``destroy()`` has been called."""
        return self._destroyed

    @property
    def buffered(self) -> List[Metric]:
        """Copy of the metrics waiting for the next flush."""
        with self._lock:
            return list(self._buffer)

    @property
    def plugins(self) -> Dict[str, Plugin]:
        """Registered plugins by name."""
        return dict(self._plugins)

    @property
    def reporter(self) -> Optional[Reporter]:
        """The attached reporter, if any."""
        return self._reporter

    def _check_usable(self, operation: str) -> bool:
        if self._destroyed:
            logger.error(
                "Tracker used after destroy",
                operation=operation,
                error=TrackerDestroyedError.__name__,
            )
            return False
        return True

    def use(self, plugins: Iterable[PluginSpec]) -> "Tracker":
        """Register capture plugins.

        Each entry is a plugin instance, a plugin factory, or a
        ``(factory_or_instance, options)`` pair. Plugins that fail to set up
        are logged and skipped.
        """
        if not self._check_usable("use"):
            return self

        for spec in plugins:
            target, options = spec if isinstance(spec, tuple) else (spec, None)
            try:
                is_instance = hasattr(target, "setup") and not isinstance(target, type)
                plugin = target if is_instance else target()
                plugin.setup(self, options)
            except Exception as e:
                logger.error("Plugin setup failed", plugin=repr(target), error=str(e))
                continue
            self._plugins[plugin.name] = plugin
            if self._config.debug:
                logger.debug("Plugin registered", plugin=plugin.name)
        return self

    def set_reporter(self, reporter: Reporter) -> "Tracker":
        """Attach the reporter batches are delivered through."""
        if not self._check_usable("set_reporter"):
            return self
        self._reporter = reporter
        reporter.set_config(**{key: getattr(self._config, key) for key in _REPORTER_KEYS})
        return self

    def set_config(self, **changes: Any) -> "Tracker":
        """Apply a partial configuration update.

        Endpoint, headers and delivery flags reach the reporter before this
        returns.

        Raises:
            ConfigurationError: If an option is unknown or a value invalid.
        """
        if not self._check_usable("set_config"):
            return self
        self._config = self._config.merge(**changes)
        if "debug" in changes:
            set_debug(self._config.debug)
        if self._reporter is not None:
            self._reporter.set_config(
                **{key: getattr(self._config, key) for key in _REPORTER_KEYS}
            )
        return self

    def get_config(self) -> TrackerConfig:
        """Return the current configuration."""
        return self._config

    def add_error(
        self,
        error: BaseException,
        category: Optional[str] = None,
        level: Optional[str] = None,
        tags: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Report an exception as an error metric, delivered immediately."""
        if not self._check_usable("add_error"):
            return

        tags = dict(tags or {})
        tags.update({k: v for k, v in (("category", category), ("level", level)) if v})
        self.send(error_metric_from_exception(error, "manual", tags), immediate=True)

    def _should_sample(self) -> bool:
        return self._rng() < self._config.sample_rate

    def _enrich(self, metric: Metric) -> Metric:
        config = self._config
        if metric.session_id is None:
            metric.session_id = self._session_id
        if metric.timestamp is None:
            metric.timestamp = now_ms()
        if metric.page_url is None:
            metric.page_url = config.page_url
        if metric.project is None:
            metric.project = config.project
        if metric.app_version is None:
            metric.app_version = config.app_version
        if metric.device is None and config.device_info is not None:
            metric.device = dict(config.device_info)
        return metric

    def send(self, metrics: Union[Metric, Iterable[Metric]], immediate: bool = False) -> None:
        """Buffer one metric or a batch.

        Sampling applies to the whole call: either every metric passed is
        buffered or none is.

        Args:
            metrics: A metric or an iterable of metrics.
            immediate: Flush right after buffering.
        """
        if not self._check_usable("send"):
            return
        if not self._should_sample():
            return

        incoming = [metrics] if isinstance(metrics, Metric) else list(metrics)
        batch = [self._enrich(metric) for metric in incoming]
        with self._lock:
            self._buffer.extend(batch)
            full = len(self._buffer) >= self._config.max_cache

        if immediate or full:
            self.flush()

    def flush(self, immediate: bool = True) -> None:
        """Hand the buffered metrics to the reporter.

        A batch the reporter rejects is put back in front of the buffer.

        Args:
            immediate: Deliver through the blocking transport. Otherwise the
                reporter uses its non-blocking fallback chain.
        """
        if not self._check_usable("flush"):
            return
        self._flush(immediate)

    def _flush(self, immediate: bool) -> None:
        reporter = self._reporter
        if reporter is None:
            return
        with self._lock:
            if not self._buffer:
                return
            batch, self._buffer = self._buffer, []

        # Delivery runs unlocked; sends from other threads keep buffering.
        try:
            reporter.send(batch, immediate)
        except DeliveryError as e:
            logger.error("Delivery failed, batch requeued", error=str(e), count=len(batch))
            with self._lock:
                self._buffer = merge_failed_batch(batch, self._buffer, self._config.max_cache)

    def destroy(self) -> None:
        """Tear down plugins, flush what is left and destroy the reporter.

        In-flight deliveries are not aborted. Every later call on this
        tracker is logged and ignored.
        """
        if not self._check_usable("destroy"):
            return

        for name, plugin in list(self._plugins.items()):
            try:
                plugin.teardown()
            except Exception as e:
                logger.error("Plugin teardown failed", plugin=name, error=str(e))
        self._plugins.clear()

        self._flush(immediate=False)
        self._destroyed = True

        if self._reporter is not None:
            self._reporter.destroy()

        if self._config.debug:
            logger.debug("Tracker destroyed", session_id=self._session_id)
