"""Metric types for pulsewatch.

A metric is one structured observation submitted for delivery. All variants
share the enrichment fields of ``Metric``; each adds its own payload. The
wire form produced by ``to_dict`` uses camelCase keys and omits unset
values.
"""

from __future__ import annotations

import dataclasses
import json
import platform
import re
import socket
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

_SNAKE_RE = re.compile(r"_([a-z0-9])")


class MetricType(str, Enum):
    """Kinds of metrics."""

    JS_ERROR = "jsError"
    API = "api"
    RESOURCE = "resource"
    PERFORMANCE = "performance"
    PAGE_VIEW = "pv"
    CUSTOM = "custom"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def _camel(name: str) -> str:
    return _SNAKE_RE.sub(lambda m: m.group(1).upper(), name)


def _wire(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            _camel(f.name): _wire(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if getattr(value, f.name) is not None
        }
    if isinstance(value, dict):
        return {k: _wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_wire(v) for v in value]
    return value


@dataclass
class DeviceInfo:
    """Description of the host the metrics were captured on."""

    os: Optional[str] = None
    os_version: Optional[str] = None
    runtime: Optional[str] = None
    runtime_version: Optional[str] = None
    machine: Optional[str] = None
    hostname: Optional[str] = None

    @classmethod
    def detect(cls, include_hostname: bool = False) -> "DeviceInfo":
        """Describe the current host using the platform module."""
        return cls(
            os=platform.system() or None,
            os_version=platform.release() or None,
            runtime=platform.python_implementation(),
            runtime_version=platform.python_version(),
            machine=platform.machine() or None,
            hostname=socket.gethostname() if include_hostname else None,
        )


@dataclass
class Metric:
    """Fields common to every metric.

    Enrichment fields default to ``None`` so the tracker can tell which ones
    the source set.
    """

    type: MetricType = MetricType.CUSTOM
    project: Optional[str] = None
    app_version: Optional[str] = None
    timestamp: Optional[int] = None
    session_id: Optional[str] = None
    page_url: Optional[str] = None
    uid: Optional[str] = None
    device: Optional[Union[DeviceInfo, Dict[str, Any]]] = None
    tags: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Render the metric in its wire form."""
        data = _wire(self)
        if not self.tags:
            data.pop("tags", None)
        return data


@dataclass
class JSErrorMetric(Metric):
    """An uncaught or reported exception."""

    type: MetricType = MetricType.JS_ERROR
    message: str = ""
    name: str = "Error"
    stack: Optional[str] = None
    error_type: str = "js"
    filename: Optional[str] = None
    lineno: Optional[int] = None
    colno: Optional[int] = None


@dataclass
class APIMetric(Metric):
    """One observed HTTP exchange."""

    type: MetricType = MetricType.API
    url: str = ""
    method: str = "GET"
    status: int = 0
    duration: float = 0
    success: bool = False
    error_message: Optional[str] = None
    business_code: Optional[Union[int, str]] = None
    request_data: Any = None
    response_data: Any = None


@dataclass
class ResourceMetric(Metric):
    """Load of an external resource."""

    type: MetricType = MetricType.RESOURCE
    name: str = ""
    url: str = ""
    initiator_type: str = ""
    duration: float = 0
    transfer_size: Optional[int] = None
    encoded_body_size: Optional[int] = None
    decoded_body_size: Optional[int] = None
    success: bool = True


@dataclass
class PerformanceMetric(Metric):
    """A set of named performance measurements."""

    type: MetricType = MetricType.PERFORMANCE
    metrics: Dict[str, float] = field(default_factory=dict)


@dataclass
class PageViewMetric(Metric):
    """A page or screen view."""

    type: MetricType = MetricType.PAGE_VIEW
    title: str = ""
    path: str = ""
    referrer: Optional[str] = None
    stay_time: Optional[float] = None


@dataclass
class CustomMetric(Metric):
    """An application-defined value."""

    type: MetricType = MetricType.CUSTOM
    name: str = ""
    value: Any = None
    category: Optional[str] = None


def encode_batch(metrics: List[Metric]) -> str:
    """Encode a batch as the JSON array posted to the collection endpoint."""
    return json.dumps([m.to_dict() for m in metrics], default=str, separators=(",", ":"))
