"""Tests for httpx request capture."""

import asyncio
import random
import time
from unittest.mock import patch

import httpx
import pytest
import respx
from structlog.testing import capture_logs

from pulsewatch.classifier import APP_KEY_HEADER, TRACE_ID_HEADER, RequestRecord, RequestSource
from pulsewatch.config import NetworkOptions
from pulsewatch.errors import UsageError
from pulsewatch.metrics import APIMetric, CustomMetric, JSErrorMetric
from pulsewatch.plugins import Plugin
from pulsewatch.plugins.network import NetworkPlugin, NetworkReporter
from pulsewatch.tracker import Tracker

API_URL = "https://api.example.com/orders"
REPORT_URL = "https://collect.example.com/report"


def setup_plugin(tracker, rng=lambda: 0.0, **options):
    options.setdefault("patch_global", False)
    plugin = NetworkPlugin(rng=rng)
    tracker.use([(plugin, options)])
    return plugin


def client_for(plugin, handler):
    return httpx.Client(transport=plugin.transport(httpx.MockTransport(handler)))


def api_metrics(metrics):
    return [m for m in metrics if isinstance(m, APIMetric)]


def delivered(mock_reporter):
    return [metric for batch, _ in mock_reporter.sent for metric in batch]


class TestNetworkPlugin:
    """Tests for the monitored transport."""

    def test_implements_plugin_protocol(self):
        """The plugin satisfies the Plugin protocol."""
        assert isinstance(NetworkPlugin(), Plugin)
        assert NetworkPlugin.name == "network"

    def test_init_outside_setup(self):
        """init without setup raises UsageError instead of failing later."""
        with pytest.raises(UsageError):
            NetworkPlugin().init()

    def test_unset_up_plugin_passes_requests_through(self):
        """A plugin that was never set up forwards requests untouched."""
        plugin = NetworkPlugin()
        with client_for(plugin, lambda request: httpx.Response(204)) as client:
            assert client.get(API_URL).status_code == 204

    def test_successful_request(self, tracker):
        """A successful request is buffered as an API metric."""
        plugin = setup_plugin(tracker)
        with client_for(plugin, lambda request: httpx.Response(200)) as client:
            response = client.get(API_URL)

        assert response.status_code == 200
        (metric,) = tracker.buffered
        assert isinstance(metric, APIMetric)
        assert metric.url == API_URL
        assert metric.method == "GET"
        assert metric.status == 200
        assert metric.success is True
        assert metric.duration >= 0
        assert metric.tags == {"connectType": "https", "requestType": "httpx"}
        assert metric.session_id == tracker.session_id

    def test_server_error_reports_error_metric(self, tracker, mock_reporter):
        """A 5xx response adds an error-level ajax error metric."""
        plugin = setup_plugin(tracker)
        with client_for(plugin, lambda request: httpx.Response(500)) as client:
            client.post(API_URL, json={"item": 1})

        api, error = delivered(mock_reporter)
        assert api.success is False
        assert api.error_message == "500 Internal Server Error"
        assert isinstance(error, JSErrorMetric)
        assert error.name == "HttpError_500"
        assert error.error_type == "api"
        assert error.tags == {"category": "ajax", "level": "error"}
        assert "POST https://api.example.com/orders" in error.message

    def test_client_error_is_warning(self, tracker, mock_reporter):
        """A 4xx failure is reported at warning level."""
        plugin = setup_plugin(tracker)
        with client_for(plugin, lambda request: httpx.Response(404)) as client:
            client.get(API_URL)

        error = delivered(mock_reporter)[-1]
        assert error.name == "HttpError_404"
        assert error.tags["level"] == "warning"

    def test_network_error(self, tracker, mock_reporter):
        """Transport errors are reported with status 0 and re-raised."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        plugin = setup_plugin(tracker)
        with client_for(plugin, handler) as client:
            with pytest.raises(httpx.ConnectError):
                client.get(API_URL)

        api, error = delivered(mock_reporter)
        assert api.status == 0
        assert api.error_message == "connection refused"
        assert error.name == "NetworkError"

    def test_slow_request_reported_as_timeout(self, tracker, mock_reporter):
        """A 2500ms success with a 2000ms threshold becomes a timeout failure."""
        plugin = setup_plugin(tracker, enable_duration_check=True, duration_threshold_ms=2000)

        with patch("pulsewatch.plugins.network._now_ms", side_effect=[0.0, 2500.0]):
            with client_for(plugin, lambda request: httpx.Response(200)) as client:
                client.get(API_URL)

        api, error = delivered(mock_reporter)
        assert api.status == 200
        assert api.success is False
        assert api.duration == 2500.0
        assert api.error_message == "Request exceeded 2000ms threshold"
        assert api.tags["timeout"] is True
        assert api.tags["timeoutThreshold"] == 2000
        assert error.name == "RequestTimeout"
        assert error.tags["level"] == "warning"

    def test_self_report_not_observed(self, tracker):
        """Requests to the report URL are passed through untouched."""
        plugin = setup_plugin(tracker)
        with client_for(plugin, lambda request: httpx.Response(200)) as client:
            client.post(REPORT_URL, content=b"[]")

        assert tracker.buffered == []

    def test_forbidden_response_dropped(self, tracker, mock_reporter):
        """An anti-crawler 403 produces no metric at all."""
        plugin = setup_plugin(tracker)
        handler = lambda request: httpx.Response(403, headers={"x-forbid-reason": "bot"})
        with client_for(plugin, handler) as client:
            response = client.get(API_URL)

        assert response.status_code == 403
        assert tracker.buffered == []
        assert mock_reporter.sent == []

    def test_trace_headers_injected(self, tracker):
        """Same-origin requests carry the trace id reported on the metric."""
        tracker.set_config(page_url="https://api.example.com/app")
        plugin = setup_plugin(tracker, enable_trace_correlation=True)
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200)

        with client_for(plugin, handler) as client:
            client.get(API_URL)

        (metric,) = tracker.buffered
        assert seen[TRACE_ID_HEADER.lower()] == metric.tags["httpTraceId"]
        assert seen[APP_KEY_HEADER.lower()] == "fe_test-project"

    def test_bodies_and_business_code(self, tracker):
        """Bodies are captured, scrubbed, and the business code extracted."""
        plugin = setup_plugin(
            tracker,
            include_request_body=True,
            include_response_body=True,
            auto_extract_business_code=True,
        )
        handler = lambda request: httpx.Response(
            200, json={"code": 40001, "user": {"email": "a@b.co"}}
        )
        with client_for(plugin, handler) as client:
            response = client.post(API_URL, json={"password": "hunter2", "item": 7})

        assert response.json()["code"] == 40001
        (metric,) = tracker.buffered
        assert metric.request_data == {"password": "[REDACTED]", "item": 7}
        assert metric.response_data == {"code": 40001, "user": {"email": "[REDACTED]"}}
        assert metric.business_code == 40001
        assert metric.tags["businessCode"] == 40001

    def test_scrubbing_can_be_disabled(self, tracker):
        """scrub_bodies=False keeps bodies verbatim."""
        plugin = setup_plugin(tracker, include_request_body=True, scrub_bodies=False)
        with client_for(plugin, lambda request: httpx.Response(200)) as client:
            client.post(API_URL, json={"password": "hunter2"})

        assert tracker.buffered[0].request_data == {"password": "hunter2"}

    def test_before_send_replaces_metric(self, tracker):
        """A before_send hook may return a replacement metric."""

        def before_send(metric):
            metric.tags["team"] = "checkout"
            return metric

        plugin = setup_plugin(tracker, before_send=before_send)
        with client_for(plugin, lambda request: httpx.Response(200)) as client:
            client.get(API_URL)

        assert tracker.buffered[0].tags["team"] == "checkout"

    def test_before_send_failure_keeps_metric(self, tracker):
        """A failing hook is logged and the original metric still sent."""

        def before_send(metric):
            raise RuntimeError("hook broke")

        plugin = setup_plugin(tracker, before_send=before_send)
        with capture_logs() as logs:
            with client_for(plugin, lambda request: httpx.Response(200)) as client:
                client.get(API_URL)

        assert len(tracker.buffered) == 1
        assert any(log["event"] == "before_send hook failed" for log in logs)

    def test_teardown_stops_capture(self, tracker):
        """Transports outlive the plugin but stop reporting after teardown."""
        plugin = setup_plugin(tracker)
        client = client_for(plugin, lambda request: httpx.Response(200))
        plugin.teardown()

        client.get(API_URL)
        client.close()

        assert tracker.buffered == []

    def test_async_transport(self, tracker):
        """Async clients are observed through the async wrapper."""
        plugin = setup_plugin(tracker)

        async def run():
            transport = plugin.async_transport(httpx.MockTransport(lambda r: httpx.Response(201)))
            async with httpx.AsyncClient(transport=transport) as client:
                await client.get(API_URL)

        asyncio.run(run())

        (metric,) = tracker.buffered
        assert metric.status == 201
        assert metric.tags["requestType"] == "httpx-async"

    def test_async_failure_does_not_block_loop(self, tracker, mock_reporter):
        """Reporting a failed async request leaves the event loop running."""
        record = mock_reporter.send.side_effect

        def slow_send(batch, immediate=False):
            if immediate:
                time.sleep(0.5)
            record(batch, immediate)

        mock_reporter.send.side_effect = slow_send
        plugin = setup_plugin(tracker)
        gaps = []

        async def ticker(done):
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        async def run():
            done = asyncio.Event()
            ticking = asyncio.create_task(ticker(done))
            transport = plugin.async_transport(httpx.MockTransport(lambda r: httpx.Response(500)))
            async with httpx.AsyncClient(transport=transport) as client:
                response = await client.get(API_URL)
            done.set()
            await ticking
            return response

        response = asyncio.run(run())

        assert response.status_code == 500
        assert max(gaps) < 0.3
        api, error = delivered(mock_reporter)
        assert api.success is False
        assert isinstance(error, JSErrorMetric)
        assert error.name == "HttpError_500"


class TestSampling:
    """Tests for combined sampling."""

    def test_network_and_tracker_sampling_compound(self, config, mock_reporter):
        """Requests survive both samplers with probability sample_rate * sample."""
        tracker = Tracker(
            config.merge(sample_rate=0.5, max_cache=100000), rng=random.Random(7).random
        )
        tracker.set_reporter(mock_reporter)
        plugin = setup_plugin(tracker, rng=random.Random(11).random, sample=0.5)

        with client_for(plugin, lambda request: httpx.Response(200)) as client:
            for _ in range(4000):
                client.get(API_URL)

        kept = len(tracker.buffered)
        assert 850 <= kept <= 1150
        tracker.destroy()


class TestGlobalPatching:
    """Tests for process-wide httpx patching."""

    def test_patches_and_restores(self, tracker):
        """Default httpx clients are observed until teardown."""
        original = httpx.HTTPTransport.handle_request
        plugin = setup_plugin(tracker, patch_global=True)
        try:
            assert httpx.HTTPTransport.handle_request is not original
            with respx.mock:
                respx.get(API_URL).mock(return_value=httpx.Response(200))
                with httpx.Client() as client:
                    client.get(API_URL)
        finally:
            plugin.teardown()

        assert httpx.HTTPTransport.handle_request is original
        assert len(api_metrics(tracker.buffered)) == 1

    def test_no_double_patching(self, tracker):
        """A second plugin does not patch over the first."""
        first = setup_plugin(tracker, patch_global=True)
        patched = httpx.HTTPTransport.handle_request
        second = NetworkPlugin()
        try:
            with capture_logs() as logs:
                second.setup(tracker, NetworkOptions(patch_global=True))
            assert httpx.HTTPTransport.handle_request is patched
            assert any("already patched" in log["event"] for log in logs)
            second.teardown()
            assert httpx.HTTPTransport.handle_request is patched
        finally:
            first.teardown()

    def test_wrapped_and_patched_counted_once(self, tracker):
        """A monitored transport over a patched one reports each request once."""
        plugin = setup_plugin(tracker, patch_global=True)
        try:
            with respx.mock:
                respx.get(API_URL).mock(return_value=httpx.Response(200))
                with httpx.Client(transport=plugin.transport()) as client:
                    client.get(API_URL)
        finally:
            plugin.teardown()

        assert len(tracker.buffered) == 1


class TestNetworkReporter:
    """Tests for record to metric conversion."""

    def test_to_metric_drops_unset_tags(self, tracker):
        """Tags without values are omitted."""
        reporter = NetworkReporter(tracker, NetworkOptions())
        record = RequestRecord(
            url="http://api.example.com/x",
            method="GET",
            status=200,
            duration=12.0,
            success=True,
            source=RequestSource.HTTPX,
        )

        metric = reporter.to_metric(record)

        assert metric.tags == {"connectType": "http", "requestType": "httpx"}

    def test_non_metric_hook_result_ignored(self, tracker):
        """A hook returning something else than a metric is ignored."""
        reporter = NetworkReporter(tracker, NetworkOptions(before_send=lambda m: {"x": 1}))
        record = RequestRecord(url=API_URL, method="GET", status=200, duration=1.0, success=True)

        with capture_logs() as logs:
            reporter.report(record)

        assert isinstance(tracker.buffered[0], APIMetric)
        assert any("non-metric" in log["event"] for log in logs)

    def test_hook_may_return_other_metric_type(self, tracker):
        """A hook may swap in any metric."""
        reporter = NetworkReporter(
            tracker, NetworkOptions(before_send=lambda m: CustomMetric(name="swapped"))
        )
        record = RequestRecord(url=API_URL, method="GET", status=200, duration=1.0, success=True)

        reporter.report(record)

        assert tracker.buffered[0].name == "swapped"
