"""Conversion of exceptions into error metrics.

Exceptions are serialized with the Sentry SDK's event builder, which walks
the exception chain and extracts frames. Local variables are dropped and
paths sanitized before anything reaches a metric.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sentry_sdk.utils import event_from_exception

from .metrics import JSErrorMetric
from .privacy import scrub_exception_data


def _format_value(value: Dict[str, Any]) -> List[str]:
    lines = []
    frames = (value.get("stacktrace") or {}).get("frames") or []
    if frames:
        lines.append("Traceback (most recent call last):")
    for frame in frames:
        path = frame.get("abs_path") or frame.get("filename") or "<unknown>"
        lines.append(
            f'  File "{path}", line {frame.get("lineno", "?")}, in {frame.get("function", "?")}'
        )
    header = value.get("type") or "Exception"
    if value.get("value"):
        header += f": {value['value']}"
    lines.append(header)
    return lines


def format_exception_values(values: List[Dict[str, Any]]) -> str:
    """Render serialized exception values as a Python-style traceback."""
    blocks = ["\n".join(_format_value(value)) for value in values]
    return "\n\n".join(blocks)


def serialize_exception(error: BaseException) -> Dict[str, Any]:
    """Serialize an exception and its chain, scrubbed.

    Returns:
        A ``{"values": [...]}`` mapping, outermost cause first and the
        raised exception last.
    """
    exc_info = (type(error), error, error.__traceback__)
    event, _hint = event_from_exception(exc_info)
    exception_data: Dict[str, Any] = dict(event.get("exception") or {"values": []})
    scrub_exception_data(exception_data)
    return exception_data


def error_metric_from_exception(
    error: BaseException,
    error_type: str = "manual",
    tags: Optional[Dict[str, Any]] = None,
) -> JSErrorMetric:
    """Build an error metric from an exception.

    Args:
        error: The exception to report.
        error_type: How the error was observed (``js``, ``thread``,
            ``async``, ``console``, ``manual``...).
        tags: Extra tags for the metric.
    """
    values = serialize_exception(error).get("values") or []
    raised = values[-1] if values else {}
    frames = (raised.get("stacktrace") or {}).get("frames") or []
    innermost = frames[-1] if frames else {}

    return JSErrorMetric(
        message=raised.get("value") or str(error),
        name=raised.get("type") or type(error).__name__,
        stack=format_exception_values(values) or None,
        error_type=error_type,
        filename=innermost.get("abs_path") or innermost.get("filename"),
        lineno=innermost.get("lineno"),
        tags=dict(tags or {}),
    )
