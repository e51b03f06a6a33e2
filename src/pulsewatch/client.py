"""Monitor facade for pulsewatch.

This module wires a tracker to a reporter and exposes one process-wide
monitor, the way applications normally use the SDK.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Iterable, Optional, Union

from .config import TrackerConfig, load_config
from .errors import UsageError
from .log import configure_logging, get_logger
from .metrics import Metric
from .reporter import Reporter
from .tracker import PluginSpec, Tracker

logger = get_logger(__name__)


class Monitor:
    """Process-wide entry point: owns one tracker and its reporter.

    Methods called before ``init`` (or after ``destroy``) log a usage error
    and do nothing, so instrumentation never breaks the host application.
    """

    _instance: Optional["Monitor"] = None

    def __init__(self) -> None:
        """Initialize an empty monitor."""
        self._tracker: Optional[Tracker] = None
        self._enabled = self._check_enabled()

    @classmethod
    def get_instance(cls) -> "Monitor":
        """Get the singleton monitor.

        Returns:
            The singleton Monitor instance.
        """
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (useful for testing)."""
        if cls._instance is not None and cls._instance.initialized:
            cls._instance.destroy()
        cls._instance = None

    def _check_enabled(self) -> bool:
        """Check environment variables for opt-out signals.

        Returns:
            True if monitoring should be enabled.
        """
        # Universal opt-out (DO_NOT_TRACK standard)
        if os.getenv("DO_NOT_TRACK", "").lower() in ("1", "true"):
            return False

        if os.getenv("PULSEWATCH_ENABLED", "").lower() in ("false", "0", "no"):
            return False

        return True

    @property
    def enabled(self) -> bool:
        """Whether monitoring is enabled."""
        return self._enabled

    @property
    def initialized(self) -> bool:
        """Whether ``init`` created a tracker that is still alive."""
        return self._tracker is not None and not self._tracker.destroyed

    @property
    def tracker(self) -> Optional[Tracker]:
        """The underlying tracker, once initialized."""
        return self._tracker

    def init(
        self,
        config: Optional[TrackerConfig] = None,
        plugins: Optional[Iterable[PluginSpec]] = None,
        setup_logging: bool = True,
        **options: Any,
    ) -> bool:
        """Create the tracker and reporter.

        Args:
            config: A ready configuration. If not provided, one is loaded
                from the config file, environment and ``options``.
            plugins: Plugins to register right away.
            setup_logging: Configure structlog output for the SDK. Pass
                False when the host configures structlog itself.
            **options: Configuration options (snake or camel case).

        Returns:
            True if a tracker is running, False if monitoring is disabled.

        Raises:
            ConfigurationError: If no project is configured or a value is invalid.
        """
        if not self._enabled:
            return False

        if self.initialized:
            logger.warning("Monitor already initialized, init ignored")
            return True

        if config is None:
            config = load_config(**options)
        elif options:
            config = config.merge(**options)

        if not config.enabled:
            return False

        if setup_logging:
            configure_logging(debug=config.debug)

        tracker = Tracker(config)
        tracker.set_reporter(Reporter.from_config(config))
        if plugins:
            tracker.use(plugins)
        self._tracker = tracker
        return True

    def _require_tracker(self, operation: str) -> Optional[Tracker]:
        if self._tracker is None:
            if self._enabled:
                logger.error(
                    "Monitor used before init", operation=operation, error=UsageError.__name__
                )
            return None
        return self._tracker

    def use(self, plugins: Iterable[PluginSpec]) -> "Monitor":
        """Register capture plugins on the tracker."""
        tracker = self._require_tracker("use")
        if tracker is not None:
            tracker.use(plugins)
        return self

    def add_error(
        self,
        error: BaseException,
        category: Optional[str] = None,
        level: Optional[str] = None,
        tags: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Report an exception immediately."""
        tracker = self._require_tracker("add_error")
        if tracker is not None:
            tracker.add_error(error, category=category, level=level, tags=tags)

    def set_config(self, **changes: Any) -> "Monitor":
        """Apply a partial configuration update."""
        tracker = self._require_tracker("set_config")
        if tracker is not None:
            tracker.set_config(**changes)
        return self

    def send(self, metrics: Union[Metric, Iterable[Metric]], immediate: bool = False) -> None:
        """Buffer metrics for delivery."""
        tracker = self._require_tracker("send")
        if tracker is not None:
            tracker.send(metrics, immediate=immediate)

    def flush(self, timeout: float = 2.0) -> None:
        """Deliver buffered metrics and wait for queued background sends.

        Args:
            timeout: Maximum time to wait for background sends, in seconds.
        """
        tracker = self._require_tracker("flush")
        if tracker is None:
            return
        tracker.flush()
        if tracker.reporter is not None:
            tracker.reporter.wait(timeout)

    def destroy(self) -> None:
        """Destroy the tracker. The monitor can be initialized again afterwards."""
        tracker = self._require_tracker("destroy")
        if tracker is None:
            return
        tracker.destroy()
        self._tracker = None


# Convenience function for singleton access
def get_monitor() -> Monitor:
    """Get the singleton monitor instance.

    Returns:
        The Monitor singleton.
    """
    return Monitor.get_instance()
