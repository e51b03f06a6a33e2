"""HTTP request capture for httpx.

Every exchange made through an observed transport is classified and
reported as an API metric. Two ways to observe requests:

- ``NetworkPlugin.transport(wrapped)`` wraps one transport, for clients
  built as ``httpx.Client(transport=plugin.transport())``.
- With ``patch_global`` (the default), the plugin patches
  ``httpx.HTTPTransport`` and ``httpx.AsyncHTTPTransport`` process-wide
  between setup and teardown.

Requests to the tracker's own ``report_url`` are skipped by the classifier,
so the reporter's deliveries are never observed.
"""

from __future__ import annotations

import asyncio
import functools
import random
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..classifier import RawExchange, RequestClassifier, RequestRecord, RequestSource, connect_type
from ..config import NetworkOptions
from ..errors import UsageError
from ..log import get_logger
from ..metrics import APIMetric, JSErrorMetric, Metric
from ..privacy import scrub_value
from . import BasePlugin

logger = get_logger(__name__)

_PATCH_MARKER = "_pulsewatch_patched"
# Set on requests an outer transport wrapper already evaluated.
_OBSERVED_EXTENSION = "pulsewatch.seen"


def _now_ms() -> float:
    return time.time() * 1000


def _request_body(request: httpx.Request) -> Any:
    try:
        return request.content
    except httpx.RequestNotRead:
        return None


class NetworkReporter:
    """Turns request records into API metrics and submits them."""

    def __init__(self, core: Any, options: NetworkOptions) -> None:
        self._core = core
        self._options = options

    def to_metric(self, record: RequestRecord) -> APIMetric:
        """Build the API metric for a record."""
        options = self._options
        tags = {
            "connectType": connect_type(record.url),
            "requestType": record.source.value,
            "businessCode": record.business_code,
            "httpTraceId": record.trace_id,
        }
        if record.timed_out:
            tags["timeout"] = True
            tags["timeoutThreshold"] = options.duration_threshold_ms

        request_data, response_data = record.request_data, record.response_data
        if options.scrub_bodies:
            request_data = scrub_value(request_data)
            response_data = scrub_value(response_data)

        return APIMetric(
            url=record.url,
            method=record.method,
            status=record.status,
            duration=record.duration,
            success=record.success,
            error_message=record.error_message,
            business_code=record.business_code,
            request_data=request_data,
            response_data=response_data,
            tags={k: v for k, v in tags.items() if v is not None},
        )

    def _apply_before_send(self, metric: APIMetric) -> APIMetric:
        hook = self._options.before_send
        if hook is None:
            return metric
        try:
            result = hook(metric)
        except Exception as e:
            logger.error("before_send hook failed", error=str(e))
            return metric
        if result is None:
            return metric
        if not isinstance(result, Metric):
            logger.warning(
                "before_send hook returned a non-metric, ignored", returned=type(result).__name__
            )
            return metric
        return result

    def report(self, record: RequestRecord) -> None:
        """Submit the API metric and, for failures, an error metric."""
        metric = self._apply_before_send(self.to_metric(record))
        self._core.send(metric)

        if not record.success:
            self._core.send(self._error_metric(record), immediate=True)

    def _error_metric(self, record: RequestRecord) -> JSErrorMetric:
        if record.timed_out:
            name = "RequestTimeout"
        elif record.status:
            name = f"HttpError_{record.status}"
        else:
            name = "NetworkError"
        return JSErrorMetric(
            message=f"{record.method} {record.url}: {record.error_message}",
            name=name,
            error_type="api",
            tags={"category": "ajax", "level": "error" if record.status >= 500 else "warning"},
        )


class MonitoredTransport(httpx.BaseTransport):
    """Sync transport wrapper that reports every exchange."""

    def __init__(self, plugin: "NetworkPlugin", wrapped: httpx.BaseTransport) -> None:
        self._plugin = plugin
        self._wrapped = wrapped

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        return self._plugin.observe(request, self._wrapped.handle_request)

    def close(self) -> None:
        self._wrapped.close()


class AsyncMonitoredTransport(httpx.AsyncBaseTransport):
    """Async transport wrapper that reports every exchange."""

    def __init__(self, plugin: "NetworkPlugin", wrapped: httpx.AsyncBaseTransport) -> None:
        self._plugin = plugin
        self._wrapped = wrapped

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self._plugin.observe_async(request, self._wrapped.handle_async_request)

    async def aclose(self) -> None:
        await self._wrapped.aclose()


class NetworkPlugin(BasePlugin[NetworkOptions]):
    """Reports HTTP requests made with httpx."""

    name = "network"

    def __init__(self, rng: Callable[[], float] = random.random) -> None:
        super().__init__()
        self._rng = rng
        self.classifier: Optional[RequestClassifier] = None
        self.reporter: Optional[NetworkReporter] = None
        self._active = False
        self._original_sync: Optional[Callable[..., Any]] = None
        self._original_async: Optional[Callable[..., Any]] = None

    def parse_options(self, options: Any) -> NetworkOptions:
        if isinstance(options, NetworkOptions):
            return options
        return NetworkOptions.from_options(options)

    def init(self) -> None:
        core, options = self.core, self.options
        if core is None or options is None:
            raise UsageError("NetworkPlugin.init called outside setup")
        self.classifier = RequestClassifier(options, core.get_config, rng=self._rng)
        self.reporter = NetworkReporter(core, options)
        self._active = True
        if options.patch_global:
            self._patch_httpx()

    def teardown(self) -> None:
        self._active = False
        self._unpatch_httpx()

    def transport(self, wrapped: Optional[httpx.BaseTransport] = None) -> MonitoredTransport:
        """Wrap a sync transport (a fresh ``httpx.HTTPTransport`` by default)."""
        return MonitoredTransport(self, wrapped or httpx.HTTPTransport())

    def async_transport(
        self, wrapped: Optional[httpx.AsyncBaseTransport] = None
    ) -> AsyncMonitoredTransport:
        """Wrap an async transport (a fresh ``httpx.AsyncHTTPTransport`` by default)."""
        return AsyncMonitoredTransport(self, wrapped or httpx.AsyncHTTPTransport())

    def _patch_httpx(self) -> None:
        original_sync = httpx.HTTPTransport.handle_request
        original_async = httpx.AsyncHTTPTransport.handle_async_request
        if getattr(original_sync, _PATCH_MARKER, False):
            logger.warning("httpx already patched by another network plugin, skipping")
            return

        plugin = self

        def handle_request(transport: httpx.HTTPTransport, request: httpx.Request) -> httpx.Response:
            return plugin.observe(request, lambda req: original_sync(transport, req))

        async def handle_async_request(
            transport: httpx.AsyncHTTPTransport, request: httpx.Request
        ) -> httpx.Response:
            return await plugin.observe_async(
                request, lambda req: original_async(transport, req)
            )

        setattr(handle_request, _PATCH_MARKER, True)
        setattr(handle_async_request, _PATCH_MARKER, True)
        self._original_sync = original_sync
        self._original_async = original_async
        httpx.HTTPTransport.handle_request = handle_request  # type: ignore[method-assign]
        httpx.AsyncHTTPTransport.handle_async_request = handle_async_request  # type: ignore[method-assign]

    def _unpatch_httpx(self) -> None:
        if self._original_sync is not None:
            httpx.HTTPTransport.handle_request = self._original_sync  # type: ignore[method-assign]
            self._original_sync = None
        if self._original_async is not None:
            httpx.AsyncHTTPTransport.handle_async_request = self._original_async  # type: ignore[method-assign]
            self._original_async = None

    def _claim(self, request: httpx.Request) -> bool:
        """Mark ``request`` as handled here unless an outer wrapper already did."""
        if not self._active or self.classifier is None:
            return False
        if request.extensions.get(_OBSERVED_EXTENSION):
            return False
        request.extensions[_OBSERVED_EXTENSION] = True
        return True

    def _wants_body(self, response: httpx.Response) -> bool:
        options = self.options
        if options is None:
            return False
        if not (options.include_response_body or options.auto_extract_business_code):
            return False
        content_type = response.headers.get("content-type", "")
        return "application/json" in content_type or "text/" in content_type

    def observe(
        self, request: httpx.Request, send: Callable[[httpx.Request], httpx.Response]
    ) -> httpx.Response:
        """Send ``request`` through ``send`` and report the exchange."""
        classifier = self.classifier
        if classifier is None or not self._claim(request):
            return send(request)
        try:
            if classifier.should_ignore(str(request.url)):
                return send(request)

            trace_id = classifier.inject_trace(str(request.url), request.headers)
            start = _now_ms()
            try:
                response = send(request)
            except Exception as e:
                self._complete(request, start, trace_id, error=e)
                raise

            end = _now_ms()
            body = None
            if self._wants_body(response):
                body = response.read()
            self._complete(request, start, trace_id, response=response, body=body, end=end)
            return response
        finally:
            request.extensions.pop(_OBSERVED_EXTENSION, None)

    async def observe_async(
        self,
        request: httpx.Request,
        send: Callable[[httpx.Request], Awaitable[httpx.Response]],
    ) -> httpx.Response:
        """Async counterpart of ``observe``.

        Classification and reporting run in the loop's default executor:
        a failed request is reported through a blocking delivery, which must
        not stall the event loop.
        """
        classifier = self.classifier
        if classifier is None or not self._claim(request):
            return await send(request)
        source = RequestSource.HTTPX_ASYNC
        try:
            if classifier.should_ignore(str(request.url)):
                return await send(request)

            trace_id = classifier.inject_trace(str(request.url), request.headers)
            start = _now_ms()
            try:
                response = await send(request)
            except Exception as e:
                await self._complete_in_executor(
                    request, start, trace_id, end=_now_ms(), error=e, source=source
                )
                raise

            end = _now_ms()
            body = None
            if self._wants_body(response):
                body = await response.aread()
            await self._complete_in_executor(
                request, start, trace_id, response=response, body=body, end=end, source=source
            )
            return response
        finally:
            request.extensions.pop(_OBSERVED_EXTENSION, None)

    async def _complete_in_executor(
        self, request: httpx.Request, start: float, trace_id: Optional[str], **kwargs: Any
    ) -> None:
        loop = asyncio.get_running_loop()
        job = functools.partial(self._complete, request, start, trace_id, **kwargs)
        try:
            await loop.run_in_executor(None, job)
        except RuntimeError as e:
            # Default executor already shut down.
            logger.error("Failed to report network request", url=str(request.url), error=str(e))

    def _complete(
        self,
        request: httpx.Request,
        start: float,
        trace_id: Optional[str],
        response: Optional[httpx.Response] = None,
        body: Optional[bytes] = None,
        end: Optional[float] = None,
        error: Optional[BaseException] = None,
        source: RequestSource = RequestSource.HTTPX,
    ) -> None:
        # Reporting must never break the host's request.
        try:
            exchange = RawExchange(
                url=str(request.url),
                method=request.method,
                status=response.status_code if response is not None else 0,
                reason=response.reason_phrase if response is not None else "",
                start=start,
                end=end if end is not None else _now_ms(),
                request_headers=request.headers,
                request_body=_request_body(request),
                response_headers=response.headers if response is not None else {},
                response_body=body,
                error=error,
                source=source,
            )
            classifier, reporter = self.classifier, self.reporter
            if classifier is None or reporter is None:
                return
            record = classifier.classify(exchange, trace_id)
            if record is not None:
                reporter.report(record)
        except Exception as e:
            logger.error("Failed to report network request", url=str(request.url), error=str(e))
