"""pulsewatch - Client-side telemetry for Python applications.

This package collects metrics from a running application (errors, outgoing
HTTP requests, process performance, custom events), buffers them and
delivers them in batches to a collection endpoint.

Features:
- Buffered delivery with sampling, enrichment and failed-batch requeue
- Transport fallback chain (background beacon, blocking request, pixel)
- httpx request capture with trace correlation and body capture
- Privacy-first design with automatic PII scrubbing
- Configurable opt-out (DO_NOT_TRACK, PULSEWATCH_ENABLED)

Quick Start:
    from pulsewatch import get_monitor
    from pulsewatch.plugins.errors import ErrorPlugin
    from pulsewatch.plugins.network import NetworkPlugin

    get_monitor().init(
        project="shop-backend",
        report_url="https://collect.example.com/report",
        plugins=[ErrorPlugin, (NetworkPlugin, {"include_response_body": True})],
    )

    # Report handled exceptions
    try:
        risky_operation()
    except Exception as e:
        get_monitor().add_error(e, category="checkout")
        raise

Decorators:
    from pulsewatch import track_errors, track_performance, track_feature

    @track_errors()
    def process_order(order):
        ...

    @track_performance("checkout.total")
    def compute_total(cart):
        ...

    @track_feature("cart.add_item")
    def add_item(cart, item):
        ...

Opt-out:
    # Environment variable opt-out
    export DO_NOT_TRACK=1
    # Or
    export PULSEWATCH_ENABLED=false
"""

from pulsewatch.buffer import merge_failed_batch
from pulsewatch.classifier import (
    RawExchange,
    RequestClassifier,
    RequestRecord,
    RequestSource,
    extract_content,
    generate_trace_id,
)
from pulsewatch.client import Monitor, get_monitor
from pulsewatch.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULTS,
    NetworkOptions,
    TrackerConfig,
    load_config,
    save_config,
)
from pulsewatch.decorators import (
    MetricSpan,
    track_errors,
    track_feature,
    track_performance,
)
from pulsewatch.errors import (
    ConfigurationError,
    DeliveryBusyError,
    DeliveryError,
    PulsewatchError,
    TrackerDestroyedError,
    UsageError,
)
from pulsewatch.log import configure_logging
from pulsewatch.metrics import (
    APIMetric,
    CustomMetric,
    DeviceInfo,
    JSErrorMetric,
    Metric,
    MetricType,
    PageViewMetric,
    PerformanceMetric,
    ResourceMetric,
)
from pulsewatch.privacy import (
    PII_DENYLIST,
    is_sensitive_key,
    sanitize_path,
    scrub_dict,
    scrub_exception_data,
    scrub_list,
    scrub_string,
)
from pulsewatch.reporter import Reporter
from pulsewatch.tracker import Tracker, generate_session_id

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Facade
    "Monitor",
    "get_monitor",
    # Core
    "Tracker",
    "Reporter",
    "RequestClassifier",
    "RawExchange",
    "RequestRecord",
    "RequestSource",
    "extract_content",
    "generate_trace_id",
    "generate_session_id",
    "merge_failed_batch",
    # Metrics
    "Metric",
    "MetricType",
    "DeviceInfo",
    "JSErrorMetric",
    "APIMetric",
    "ResourceMetric",
    "PerformanceMetric",
    "PageViewMetric",
    "CustomMetric",
    # Config
    "TrackerConfig",
    "NetworkOptions",
    "load_config",
    "save_config",
    "configure_logging",
    "CONFIG_DIR",
    "CONFIG_FILE",
    "DEFAULTS",
    # Errors
    "PulsewatchError",
    "ConfigurationError",
    "UsageError",
    "TrackerDestroyedError",
    "DeliveryError",
    "DeliveryBusyError",
    # Privacy
    "sanitize_path",
    "scrub_dict",
    "scrub_list",
    "scrub_string",
    "scrub_exception_data",
    "is_sensitive_key",
    "PII_DENYLIST",
    # Decorators
    "track_errors",
    "track_performance",
    "track_feature",
    "MetricSpan",
]
