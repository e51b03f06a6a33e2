"""Delivery of metric batches to the collection endpoint.

The reporter tries transports in priority order:

- ``RequestTransport``: blocking POST, the only transport that confirms
  delivery. Used alone for immediate sends; at most one may be in flight.
- ``BeaconTransport``: hands the payload to a background sender and
  returns at once. Pending beacons are drained at interpreter exit.
- ``PixelTransport``: last resort GET of a 1x1 pixel with the batch in the
  query string. Never reports failure.

Failures of confirmed deliveries raise ``DeliveryError`` so the tracker can
requeue the batch.
"""

from __future__ import annotations

import atexit
import queue
import threading
import time
import weakref
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from .config import TrackerConfig, normalize_options
from .errors import DeliveryBusyError, DeliveryError
from .log import get_logger
from .metrics import Metric, encode_batch

logger = get_logger(__name__)

JSON_CONTENT_TYPE = "application/json"
PIXEL_PATH = "1x1.gif"

_Job = Callable[[], None]

# Senders with a started thread. Only weak references, so a sender that is
# never stopped does not outlive its reporter.
_live_senders: "weakref.WeakSet[BackgroundSender]" = weakref.WeakSet()


def _flush_senders_at_exit() -> None:
    for sender in list(_live_senders):
        sender._flush_at_exit()


atexit.register(_flush_senders_at_exit)


def _drain(jobs: "queue.Queue[Optional[_Job]]") -> None:
    while True:
        job = jobs.get()
        try:
            if job is None:
                break
            job()
        except Exception as e:
            logger.warning("Background send failed", error=str(e))
        finally:
            jobs.task_done()
            # Release the finished job while blocked on the next get.
            job = None


def _close_queue(jobs: "queue.Queue[Optional[_Job]]") -> None:
    try:
        jobs.put_nowait(None)
    except queue.Full:
        logger.warning("Sender queue full at collection, sender thread left running")


class BackgroundSender:
    """Single background thread draining a bounded queue of send jobs.

    The thread starts lazily on the first submitted job. Jobs that raise are
    logged and dropped.
    """

    def __init__(self, queue_size: int = 100, exit_timeout: float = 2.0) -> None:
        self._queue: "queue.Queue[Optional[_Job]]" = queue.Queue(maxsize=queue_size)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stopped = False
        self._exit_timeout = exit_timeout

    @property
    def is_alive(self) -> bool:
        """Whether the sender thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def _ensure_thread(self) -> None:
        with self._lock:
            if self.is_alive:
                return
            # The thread holds only the queue, never the sender.
            self._thread = threading.Thread(
                target=_drain, args=(self._queue,), name="pulsewatch-sender", daemon=True
            )
            self._thread.start()
            _live_senders.add(self)
            weakref.finalize(self, _close_queue, self._queue)

    def submit(self, job: _Job) -> bool:
        """Queue a job.

        Returns:
            False if the sender is stopped or the queue is full.
        """
        if self._stopped:
            return False
        self._ensure_thread()
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            return False
        return True

    def flush(self, timeout: float = 2.0) -> bool:
        """Wait until every queued job has run.

        Returns:
            True if the queue drained within ``timeout`` seconds.
        """
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def stop(self, timeout: float = 2.0) -> None:
        """Drain pending jobs and stop the thread."""
        if self._stopped:
            return
        self._stopped = True
        _live_senders.discard(self)
        if not self.is_alive:
            return
        self.flush(timeout)
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            logger.warning("Sender queue still full at shutdown, pending sends dropped")
            return
        if self._thread is not None:
            self._thread.join(timeout)

    def _flush_at_exit(self) -> None:
        if not self.flush(self._exit_timeout):
            logger.warning("Pending beacons not sent before exit", pending=self._queue.qsize())


class RequestTransport:
    """Blocking POST that confirms delivery."""

    name = "request"

    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    def send(self, url: str, payload: bytes, headers: Dict[str, str]) -> None:
        """Post the payload.

        Raises:
            DeliveryError: On a transport error or a non-2xx response.
        """
        try:
            response = self._client.post(url, content=payload, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Request to {url} failed: {e}") from e
        if not response.is_success:
            raise DeliveryError(
                f"Report failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )


class BeaconTransport:
    """Non-blocking POST handed to the background sender."""

    name = "beacon"

    def __init__(self, client: httpx.Client, sender: BackgroundSender) -> None:
        self._client = client
        self._sender = sender

    def send(self, url: str, payload: bytes, headers: Dict[str, str]) -> bool:
        """Queue the payload.

        Returns:
            True if the beacon was queued. Queued beacons are not confirmed.
        """

        def job() -> None:
            response = self._client.post(url, content=payload, headers=headers)
            if not response.is_success:
                logger.warning("Beacon rejected by endpoint", status=response.status_code)

        return self._sender.submit(job)


class PixelTransport:
    """Fire-and-forget GET of a pixel URL carrying the batch."""

    name = "pixel"

    def __init__(self, client: httpx.Client, sender: BackgroundSender) -> None:
        self._client = client
        self._sender = sender

    @staticmethod
    def build_url(report_url: str, payload: bytes) -> str:
        """Append the percent-encoded batch to the pixel URL."""
        data = quote(payload.decode("utf-8"), safe="")
        return f"{report_url.rstrip('/')}/{PIXEL_PATH}?data={data}"

    def send(self, url: str, payload: bytes) -> None:
        """Dispatch the pixel request. Errors are logged, never raised."""
        pixel_url = self.build_url(url, payload)

        def job() -> None:
            try:
                self._client.get(pixel_url)
            except httpx.HTTPError as e:
                logger.debug("Pixel request failed", error=str(e))

        if not self._sender.submit(job):
            job()


class Reporter:
    """Delivers metric batches through the transport fallback chain.

    Args:
        report_url: Collection endpoint. Nothing is sent without it.
        headers: Custom headers merged into every POST.
        report_immediately: Always use the blocking transport.
        debug: Log successful deliveries.
        timeout: Timeout in seconds for HTTP requests.
        client: HTTP client to use. The reporter closes only clients it
            created itself.
        queue_size: Capacity of the beacon queue.
    """

    _OPTIONS = frozenset({"report_url", "headers", "report_immediately", "debug"})

    def __init__(
        self,
        report_url: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        report_immediately: bool = False,
        debug: bool = False,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
        queue_size: int = 100,
    ) -> None:
        self.report_url = report_url
        self.headers = dict(headers or {})
        self.report_immediately = report_immediately
        self.debug = debug
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._sender = BackgroundSender(queue_size=queue_size)
        self._sending = threading.Lock()
        self._destroyed = False

        self.request_transport = RequestTransport(self._client)
        self.beacon_transport = BeaconTransport(self._client, self._sender)
        self.pixel_transport = PixelTransport(self._client, self._sender)

    @classmethod
    def from_config(cls, config: TrackerConfig, **kwargs: Any) -> "Reporter":
        """Create a reporter from a tracker configuration."""
        return cls(
            report_url=config.report_url,
            headers=config.headers,
            report_immediately=config.report_immediately,
            debug=config.debug,
            timeout=config.timeout,
            **kwargs,
        )

    @property
    def destroyed(self) -> bool:
        """Whether the reporter has been destroyed."""
        return self._destroyed

    @property
    def sending(self) -> bool:
        """Whether a blocking delivery is in flight."""
        return self._sending.locked()

    def _post_headers(self) -> Dict[str, str]:
        return {"Content-Type": JSON_CONTENT_TYPE, **self.headers}

    def send(self, metrics: Sequence[Metric], immediate: bool = False) -> None:
        """Deliver a batch.

        Args:
            metrics: The batch, in delivery order.
            immediate: Use the blocking transport only.

        Raises:
            DeliveryError: If an immediate delivery failed or another
                blocking delivery is in flight.
        """
        if self._destroyed:
            logger.warning("Reporter destroyed, batch not sent", count=len(metrics))
            return

        if not self.report_url:
            logger.error("No report_url configured, batch not sent", count=len(metrics))
            return

        batch: List[Metric] = list(metrics)
        if not batch:
            return

        payload = encode_batch(batch).encode("utf-8")
        if immediate or self.report_immediately:
            self._send_blocking(payload, len(batch))
        else:
            self._send_chain(payload, len(batch))

    def _send_blocking(self, payload: bytes, count: int) -> None:
        if not self._sending.acquire(blocking=False):
            logger.warning("Blocking delivery already in flight, batch rejected", count=count)
            raise DeliveryBusyError("A blocking delivery is already in flight")
        try:
            self.request_transport.send(self.report_url, payload, self._post_headers())
        except DeliveryError as e:
            logger.error("Batch delivery failed", error=str(e), count=count)
            raise
        finally:
            self._sending.release()
        if self.debug:
            logger.debug("Batch delivered", transport=RequestTransport.name, count=count)

    def _send_chain(self, payload: bytes, count: int) -> None:
        url = self.report_url
        headers = self._post_headers()

        if self.beacon_transport.send(url, payload, headers):
            if self.debug:
                logger.debug("Batch queued", transport=BeaconTransport.name, count=count)
            return
        logger.warning("Beacon unavailable, falling back to blocking request", count=count)

        if self._sending.acquire(blocking=False):
            try:
                self.request_transport.send(url, payload, headers)
            except DeliveryError as e:
                logger.warning("Blocking request failed, falling back to pixel", error=str(e))
            else:
                if self.debug:
                    logger.debug("Batch delivered", transport=RequestTransport.name, count=count)
                return
            finally:
                self._sending.release()
        else:
            logger.warning("Blocking delivery in flight, falling back to pixel", count=count)

        self.pixel_transport.send(url, payload)
        if self.debug:
            logger.debug("Batch dispatched", transport=PixelTransport.name, count=count)

    def set_config(self, **changes: Any) -> None:
        """Update endpoint, headers or delivery flags at runtime."""
        for key, value in normalize_options(changes, self._OPTIONS).items():
            if key == "headers":
                value = dict(value or {})
            setattr(self, key, value)

    def wait(self, timeout: float = 2.0) -> bool:
        """Block until queued beacons and pixels have been sent.

        Returns:
            True if everything queued was sent within ``timeout`` seconds.
        """
        return self._sender.flush(timeout)

    def destroy(self) -> None:
        """Make the reporter permanently inert.

        Queued background sends are drained first. In-flight blocking sends
        are not aborted.
        """
        if self._destroyed:
            return
        self._destroyed = True
        self._sender.stop()
        if self._owns_client:
            self._client.close()
