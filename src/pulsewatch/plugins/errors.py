"""Uncaught error capture.

Chains onto the interpreter's error hooks and reports what reaches them:

- ``sys.excepthook``: uncaught exceptions in the main thread (``js``)
- ``threading.excepthook``: uncaught exceptions in threads (``thread``)
- an asyncio loop exception handler: unretrieved task errors (``async``)
- a root ``logging`` handler: ERROR records (``console``)

Previous hooks keep running. Every hook is restored on teardown.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..config import normalize_options
from ..errors import ConfigurationError, UsageError
from ..log import LOGGER_NAME, get_logger
from ..metrics import JSErrorMetric
from ..stacktrace import error_metric_from_exception
from . import BasePlugin

logger = get_logger(__name__)

# Exceptions that end the process on purpose.
_IGNORED = (KeyboardInterrupt, SystemExit)


@dataclass
class ErrorPluginOptions:
    """Options for the error plugin."""

    enable_thread_errors: bool = True
    enable_async_errors: bool = False
    loop: Optional[asyncio.AbstractEventLoop] = None
    capture_logging_errors: bool = False
    error_sample_rate: Optional[float] = None

    def __post_init__(self) -> None:
        """Validate the sample rate."""
        rate = self.error_sample_rate
        if rate is not None and not 0.0 <= rate <= 1.0:
            raise ConfigurationError(f"error_sample_rate must be between 0.0 and 1.0, got {rate}")


_ERROR_FIELDS = frozenset(f.name for f in dataclasses.fields(ErrorPluginOptions))


class _ErrorRecordHandler(logging.Handler):
    """Forwards ERROR log records to the plugin."""

    def __init__(self, plugin: "ErrorPlugin") -> None:
        super().__init__(level=logging.ERROR)
        self._plugin = plugin

    def emit(self, record: logging.LogRecord) -> None:
        # Never report our own log output.
        if record.name == LOGGER_NAME or record.name.startswith(LOGGER_NAME + "."):
            return
        self._plugin.handle_log_record(record)


class ErrorPlugin(BasePlugin[ErrorPluginOptions]):
    """Reports uncaught exceptions and error log records."""

    name = "error"

    def __init__(self, rng: Callable[[], float] = random.random) -> None:
        super().__init__()
        self._rng = rng
        self._previous_excepthook: Optional[Callable[..., Any]] = None
        self._previous_threading_hook: Optional[Callable[..., Any]] = None
        self._previous_loop_handler: Optional[Callable[..., Any]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._log_handler: Optional[_ErrorRecordHandler] = None

    def parse_options(self, options: Any) -> ErrorPluginOptions:
        if isinstance(options, ErrorPluginOptions):
            return options
        return ErrorPluginOptions(**normalize_options(options or {}, _ERROR_FIELDS))

    def init(self) -> None:
        options = self.options
        if options is None:
            raise UsageError("ErrorPlugin.init called outside setup")
        loop = None
        if options.enable_async_errors:
            loop = options.loop or self._running_loop()

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

        if options.enable_thread_errors:
            self._previous_threading_hook = threading.excepthook
            threading.excepthook = self._threading_excepthook

        if loop is not None:
            self._loop = loop
            self._previous_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._loop_exception_handler)

        if options.capture_logging_errors:
            self._log_handler = _ErrorRecordHandler(self)
            logging.getLogger().addHandler(self._log_handler)

    @staticmethod
    def _running_loop() -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            raise ConfigurationError(
                "enable_async_errors needs a loop option or a running event loop"
            ) from None

    def teardown(self) -> None:
        if self._previous_excepthook is not None:
            if sys.excepthook == self._excepthook:
                sys.excepthook = self._previous_excepthook
            else:
                logger.warning("sys.excepthook replaced by someone else, not restored")
            self._previous_excepthook = None

        if self._previous_threading_hook is not None:
            if threading.excepthook == self._threading_excepthook:
                threading.excepthook = self._previous_threading_hook
            self._previous_threading_hook = None

        if self._loop is not None:
            if not self._loop.is_closed():
                self._loop.set_exception_handler(self._previous_loop_handler)
            self._loop = None
            self._previous_loop_handler = None

        if self._log_handler is not None:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler = None

    def _excepthook(self, exc_type: Any, exc_value: BaseException, tb: Any) -> None:
        if not isinstance(exc_value, _IGNORED):
            self.report_exception(exc_value, "js")
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc_value, tb)

    def _threading_excepthook(self, args: Any) -> None:
        if args.exc_value is not None and not isinstance(args.exc_value, _IGNORED):
            thread_name = args.thread.name if args.thread is not None else None
            self.report_exception(args.exc_value, "thread", {"thread": thread_name})
        if self._previous_threading_hook is not None:
            self._previous_threading_hook(args)

    def _loop_exception_handler(
        self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]
    ) -> None:
        exception = context.get("exception")
        if isinstance(exception, BaseException):
            self.report_exception(exception, "async")
        else:
            self.report(
                JSErrorMetric(
                    message=str(context.get("message") or "Unhandled async error"),
                    name="AsyncError",
                    error_type="async",
                )
            )
        if self._previous_loop_handler is not None:
            self._previous_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    def handle_log_record(self, record: logging.LogRecord) -> None:
        """Report an ERROR log record, with its exception when it carries one."""
        tags = {"logger": record.name, "level": record.levelname.lower()}
        if record.exc_info and record.exc_info[1] is not None:
            self.report_exception(record.exc_info[1], "console", tags)
            return
        self.report(
            JSErrorMetric(
                message=record.getMessage(),
                name=record.levelname,
                error_type="console",
                filename=record.pathname,
                lineno=record.lineno,
                tags=tags,
            )
        )

    def report_exception(
        self,
        error: BaseException,
        error_type: str,
        tags: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Convert an exception to an error metric and report it."""
        try:
            metric = error_metric_from_exception(error, error_type, tags)
        except Exception as e:
            logger.error("Failed to serialize exception", error=str(e))
            metric = JSErrorMetric(
                message=str(error), name=type(error).__name__, error_type=error_type
            )
        self.report(metric)

    def report(self, metric: JSErrorMetric) -> None:
        """Send an error metric immediately, subject to the error sample rate."""
        rate = self.options.error_sample_rate if self.options else None
        if rate is not None and self._rng() > rate:
            return
        if self.core is None:
            return
        try:
            self.core.send(metric, immediate=True)
        except Exception as e:
            logger.error("Failed to report error metric", error=str(e))
