"""Convenience decorators for monitoring.

This module provides decorators for easily adding metrics to functions:
- track_performance: Report function execution time
- track_errors: Automatically report exceptions
- track_feature: Report feature usage
"""

from __future__ import annotations

import functools
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from .client import get_monitor
from .metrics import CustomMetric, PerformanceMetric

F = TypeVar("F", bound=Callable[..., Any])


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def track_performance(name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator to report function execution time.

    Sends a performance metric ``{name: duration_ms}`` tagged with the
    outcome (``ok`` or ``error``).

    Args:
        name: Metric name. Defaults to the function's qualified name.

    Returns:
        Decorated function.

    Example:
        @track_performance("checkout.total")
        def compute_total(cart):
            ...
    """

    def decorator(func: F) -> F:
        metric_name = name or func.__qualname__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            monitor = get_monitor()

            # If monitoring is off, just run the function
            if not monitor.initialized:
                return func(*args, **kwargs)

            start = time.perf_counter()
            status = "error"
            try:
                result = func(*args, **kwargs)
                status = "ok"
                return result
            finally:
                monitor.send(
                    PerformanceMetric(
                        metrics={metric_name: _elapsed_ms(start)},
                        tags={"status": status, "function": func.__name__},
                    )
                )

        return wrapper  # type: ignore

    return decorator


def track_errors(
    reraise: bool = True,
    capture_args: bool = False,
) -> Callable[[F], F]:
    """Decorator to automatically report exceptions.

    Args:
        reraise: Whether to re-raise the exception after reporting.
        capture_args: Whether to include function arguments in the error tags.
            Warning: May expose sensitive data if enabled.

    Returns:
        Decorated function.

    Example:
        @track_errors(reraise=True)
        def process_order(order):
            ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            monitor = get_monitor()

            try:
                return func(*args, **kwargs)
            except Exception as e:
                if monitor.initialized:
                    tags: Dict[str, Any] = {
                        "function": func.__name__,
                        "module": func.__module__,
                    }
                    if capture_args:
                        # Warning: may expose sensitive data
                        tags["args"] = repr(args)[:500]
                        tags["kwargs"] = repr(kwargs)[:500]

                    monitor.add_error(e, tags=tags)

                if reraise:
                    raise
                return None

        return wrapper  # type: ignore

    return decorator


def track_feature(
    feature_name: str,
    include_result: bool = False,
) -> Callable[[F], F]:
    """Decorator to report feature usage.

    Args:
        feature_name: Name of the feature being tracked.
        include_result: Whether to send a second metric describing the result.

    Returns:
        Decorated function.

    Example:
        @track_feature("cart.add_item")
        def add_item(cart, item):
            ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            monitor = get_monitor()

            if monitor.initialized:
                monitor.send(
                    CustomMetric(
                        name=feature_name,
                        value=1,
                        category="feature",
                        tags={"function": func.__name__, "module": func.__module__},
                    )
                )

            result = func(*args, **kwargs)

            if include_result and monitor.initialized:
                result_info: Dict[str, Any] = {}
                if result is not None:
                    result_info["result_type"] = type(result).__name__
                    if hasattr(result, "__len__"):
                        result_info["result_length"] = len(result)

                monitor.send(
                    CustomMetric(
                        name=f"{feature_name}:completed",
                        value=result_info,
                        category="feature",
                    )
                )

            return result

        return wrapper  # type: ignore

    return decorator


class MetricSpan:
    """Context manager that times a block and reports it as a performance metric.

    Example:
        with MetricSpan("import.parse_csv") as span:
            span.set_tag("rows", 1000)
            # ... parsing ...
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.tags: Dict[str, Any] = {}
        self.data: Dict[str, float] = {}
        self._start_time: float = 0

    def __enter__(self) -> "MetricSpan":
        self._start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        monitor = get_monitor()
        if not monitor.initialized:
            return

        tags = {**self.tags, "status": "error" if exc_type is not None else "ok"}
        metrics = {**self.data, self.name: _elapsed_ms(self._start_time)}
        monitor.send(PerformanceMetric(metrics=metrics, tags=tags))

    def set_tag(self, key: str, value: Any) -> None:
        """Set a tag on the reported metric."""
        self.tags[key] = value

    def set_data(self, key: str, value: float) -> None:
        """Add a numeric measurement to the reported metric."""
        self.data[key] = value
