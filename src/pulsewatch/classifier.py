"""Classification of observed HTTP exchanges.

Turns one raw exchange (url, method, status, timing, body excerpts) into a
``RequestRecord``: success or failure, timeout override, business code and
trace id. Nothing here holds state between exchanges; the classifier reads
its options and the current tracker configuration on every call.

The network plugin drives the classifier in three steps around a real
request::

    if classifier.should_ignore(url):
        return send(request)
    trace_id = classifier.inject_trace(url, request.headers)
    ...  # send the request, time it, read the response
    record = classifier.classify(exchange, trace_id)
"""

from __future__ import annotations

import io
import json
import os
import random
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, MutableMapping, Optional, Union
from urllib.parse import urljoin, urlsplit

from .config import NetworkOptions, TrackerConfig
from .log import get_logger
from .metrics import now_ms

logger = get_logger(__name__)

TRACE_ID_HEADER = "M-TRACEID"
APP_KEY_HEADER = "M-APPKEY"
FORBID_REASON_HEADER = "x-forbid-reason"
NETWORK_ERROR_MESSAGE = "Network error"


class RequestSource(str, Enum):
    """Interception mechanism that observed an exchange."""

    HTTPX = "httpx"
    HTTPX_ASYNC = "httpx-async"


@dataclass
class RawExchange:
    """Everything observed about one HTTP exchange."""

    url: str
    method: str = "GET"
    status: int = 0
    reason: str = ""
    start: float = 0
    end: float = 0
    request_headers: Mapping[str, str] = field(default_factory=dict)
    request_body: Any = None
    response_headers: Mapping[str, str] = field(default_factory=dict)
    response_body: Optional[Union[bytes, str]] = None
    error: Optional[BaseException] = None
    source: RequestSource = RequestSource.HTTPX

    @property
    def duration(self) -> float:
        """Elapsed time in milliseconds."""
        return max(self.end - self.start, 0)


@dataclass
class RequestRecord:
    """Outcome of classifying one exchange."""

    url: str
    method: str
    status: int
    duration: float
    success: bool
    source: RequestSource = RequestSource.HTTPX
    error_message: Optional[str] = None
    business_code: Optional[Union[int, str]] = None
    trace_id: Optional[str] = None
    request_data: Any = None
    response_data: Any = None
    timed_out: bool = False


def generate_trace_id() -> str:
    """Generate a trace id: hex millisecond time followed by random hex."""
    return f"{now_ms():x}{secrets.token_hex(7)}"


def resolve_url(url: str, base: Optional[str] = None) -> str:
    """Resolve ``url`` against ``base`` when it is relative."""
    if not url:
        return ""
    if base and not urlsplit(url).scheme:
        return urljoin(base, url)
    return url


def origin_of(url: Optional[str]) -> Optional[str]:
    """Return ``scheme://host[:port]`` for an absolute URL, else ``None``."""
    if not url:
        return None
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    origin = f"{parts.scheme.lower()}://{parts.hostname.lower()}"
    if port is not None:
        origin += f":{port}"
    return origin


def is_same_origin(url: str, origin: Optional[str]) -> bool:
    """Check whether ``url`` resolves to ``origin``."""
    return origin is not None and origin_of(url) == origin


def connect_type(url: str) -> str:
    """Scheme of the URL (``http``, ``https``...) or empty string."""
    try:
        return urlsplit(url).scheme.lower()
    except ValueError:
        return ""


def safe_json_parse(text: str) -> Any:
    """Parse JSON, returning the text unchanged when it is not JSON."""
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text


def _truncate(text: str, max_length: int) -> str:
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def _summarize_file(value: Any) -> str:
    name = getattr(value, "name", None)
    try:
        size: Optional[int] = os.fstat(value.fileno()).st_size
    except (AttributeError, OSError, io.UnsupportedOperation):
        size = len(value.getbuffer()) if isinstance(value, io.BytesIO) else None
    label = f"[{type(value).__name__}]"
    if name:
        label += f" name: {os.path.basename(str(name))},"
    return f"{label} size: {size if size is not None else 'unknown'}"


def _summarize_form(form: Mapping[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in form.items():
        # httpx files= entries: (filename, content[, content_type])
        if isinstance(value, tuple) and len(value) >= 2:
            filename, content = value[0], value[1]
            size = len(content) if isinstance(content, (bytes, str)) else "unknown"
            result[key] = f"[File] name: {filename}, size: {size}"
        elif isinstance(value, (bytes, bytearray)):
            result[key] = f"[bytes] size: {len(value)}"
        elif hasattr(value, "read"):
            result[key] = _summarize_file(value)
        else:
            result[key] = value
    return result


def extract_content(content: Any, max_length: int = 10000) -> Any:
    """Extract a capturable excerpt of a request or response body.

    Structured bodies are summarized rather than inlined, text is truncated
    with a ``...`` marker and parsed as JSON when it still parses.
    """
    if content is None or content == b"" or content == "":
        return None

    if isinstance(content, (bytes, bytearray, memoryview)):
        raw = bytes(content)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return f"[bytes] size: {len(raw)}"
        return extract_content(text, max_length)

    if hasattr(content, "read"):
        return _summarize_file(content)

    if isinstance(content, str):
        return safe_json_parse(_truncate(content, max_length))

    if isinstance(content, Mapping):
        if any(isinstance(v, tuple) or hasattr(v, "read") for v in content.values()):
            return _summarize_form(content)

    try:
        encoded = json.dumps(content)
    except (TypeError, ValueError):
        return "[Object]"
    return safe_json_parse(_truncate(encoded, max_length))


def _lower_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in headers.items()}


def is_forbidden_response(status: int, headers: Optional[Mapping[str, str]]) -> bool:
    """Check for an anti-crawler rejection: 403 with a forbid-reason header."""
    return status == 403 and bool(_lower_headers(headers).get(FORBID_REASON_HEADER))


def _body_text(body: Optional[Union[bytes, str]]) -> str:
    if body is None:
        return ""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8", errors="replace")
    return body


class RequestClassifier:
    """Decides what to report about observed HTTP exchanges.

    Args:
        options: Network capture options.
        config_provider: Returns the current tracker configuration, so
            runtime changes to ``report_url`` or ``page_url`` apply.
        rng: Source of uniform random numbers in ``[0, 1)``.
    """

    def __init__(
        self,
        options: NetworkOptions,
        config_provider: Callable[[], TrackerConfig],
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.options = options
        self._config_provider = config_provider
        self._rng = rng

    @property
    def page_origin(self) -> Optional[str]:
        """Origin of the configured page URL."""
        return origin_of(self._config_provider().page_url)

    def should_ignore(self, url: str) -> bool:
        """Check whether an exchange to ``url`` should not be observed.

        Filters run cheapest first and stop at the first match.
        """
        options = self.options

        if options.ignore_self_report_requests:
            report_url = self._config_provider().report_url
            if report_url and report_url in url:
                return True

        allow = options.resource_allow_regex
        if allow is not None and not allow.search(url):
            return True

        if any(pattern.search(url) for pattern in options.filter_urls):
            return True

        if options.sample < 1.0 and self._rng() > options.sample:
            return True

        return False

    def inject_trace(self, url: str, headers: MutableMapping[str, str]) -> Optional[str]:
        """Attach a trace id to an outgoing same-origin request.

        Returns:
            The trace id, or None when tracing is disabled, the request is
            cross-origin, or the headers could not be updated.
        """
        if not self.options.enable_trace_correlation:
            return None
        if not is_same_origin(url, self.page_origin):
            return None

        try:
            trace_id = generate_trace_id()
            headers[TRACE_ID_HEADER] = trace_id
            headers[APP_KEY_HEADER] = f"fe_{self._config_provider().project}"
        except Exception as e:
            logger.error("Failed to attach trace id", url=url, error=str(e))
            return None
        return trace_id

    def classify(
        self, exchange: RawExchange, trace_id: Optional[str] = None
    ) -> Optional[RequestRecord]:
        """Classify a completed exchange.

        Returns:
            The request record, or None when the exchange must not be
            reported at all.
        """
        options = self.options
        response_headers = _lower_headers(exchange.response_headers)

        if options.ignore_forbidden_responses and is_forbidden_response(
            exchange.status, response_headers
        ):
            return None

        status = exchange.status if exchange.error is None else 0
        duration = exchange.duration
        success = exchange.error is None and 200 <= status < 400

        error_message: Optional[str] = None
        if not success:
            if exchange.error is not None or status == 0:
                error_message = str(exchange.error or "") or NETWORK_ERROR_MESSAGE
            else:
                error_message = f"{status} {exchange.reason}".strip()

        timed_out = (
            options.enable_duration_check and duration > options.duration_threshold_ms
        )
        if timed_out:
            success = False
            error_message = f"Request exceeded {options.duration_threshold_ms:g}ms threshold"

        record = RequestRecord(
            url=exchange.url,
            method=exchange.method.upper(),
            status=status,
            duration=duration,
            success=success,
            source=exchange.source,
            error_message=error_message,
            trace_id=trace_id,
            timed_out=timed_out,
        )

        if options.include_request_body:
            record.request_data = extract_content(
                exchange.request_body, options.max_content_length
            )

        content_type = response_headers.get("content-type", "")
        is_json = "application/json" in content_type
        if exchange.response_body is not None and (is_json or "text/" in content_type):
            text = _body_text(exchange.response_body)
            if options.include_response_body:
                record.response_data = extract_content(text, options.max_content_length)
            if options.auto_extract_business_code and is_json:
                record.business_code = self._extract_business_code(text, exchange.url)

        return record

    def _extract_business_code(self, text: str, url: str) -> Optional[Union[int, str]]:
        try:
            body = json.loads(text)
        except ValueError:
            return None
        try:
            return self.options.business_code_parser(body)
        except Exception as e:
            logger.error("Business code parser failed", url=url, error=str(e))
            return None
