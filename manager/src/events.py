from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from manager.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

DEFAULT_SPAM_BURST = 25
DEFAULT_SPAM_QPS = 1.0 / 300.0
DEFAULT_QUEUE_SIZE = 1000
DEFAULT_LRU_CACHE_SIZE = 4096


@dataclass(frozen=True)
class CorrelatorOptions:
    """Spam-filter settings for the shared event channel.

    Every object gets a token bucket holding ``burst_size`` events that
    refills at ``qps`` events per second; events beyond it are dropped.
    Buckets are kept for the ``lru_cache_size`` most recently seen objects.
    """

    burst_size: int = DEFAULT_SPAM_BURST
    qps: float = DEFAULT_SPAM_QPS
    queue_size: int = DEFAULT_QUEUE_SIZE
    lru_cache_size: int = DEFAULT_LRU_CACHE_SIZE


class _TokenBucket:
    def __init__(self, capacity: int, refill_per_second: float, now: float) -> None:
        self.capacity = float(capacity)
        self.refill_per_second = refill_per_second
        self.tokens = float(capacity)
        self.updated = now

    def take(self, now: float) -> bool:
        elapsed = max(0.0, now - self.updated)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_second)
        self.updated = now
        if self.tokens < 1.0:
            return False
        self.tokens -= 1.0
        return True


def object_reference(obj: Mapping[str, Any]) -> dict[str, Any]:
    """Build an ``involvedObject`` reference from a Kubernetes object dict."""
    metadata = obj.get("metadata") or {}
    reference = {
        "apiVersion": obj.get("apiVersion"),
        "kind": obj.get("kind"),
        "name": metadata.get("name"),
        "namespace": metadata.get("namespace"),
        "uid": metadata.get("uid"),
        "resourceVersion": metadata.get("resourceVersion"),
    }
    return {key: value for key, value in reference.items() if value is not None}


class EventBroadcaster:
    """Single writer for all operator-visible events emitted by this process.

    Recorders enqueue without blocking; one daemon thread writes the queue to
    the API.  A full queue or an exhausted spam bucket drops the event and
    counts it in ``capg_manager_events_dropped_total``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        options: CorrelatorOptions,
        stop_token: Any,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.core_api = core_api
        self.options = options
        self._stop_token = stop_token
        self._clock = clock
        self._queue: queue.Queue[tuple[str, dict[str, Any]]] = queue.Queue(
            maxsize=options.queue_size
        )
        self._buckets: OrderedDict[tuple[Any, ...], _TokenBucket] = OrderedDict()
        self._buckets_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._closed = threading.Event()
        self.host = socket.gethostname()

    def recorder_for(self, component: str) -> EventRecorder:
        return EventRecorder(self, component)

    def _allow(self, source: Mapping[str, Any], involved: Mapping[str, Any]) -> bool:
        key = (
            source.get("component"),
            source.get("host"),
            involved.get("apiVersion"),
            involved.get("kind"),
            involved.get("namespace"),
            involved.get("name"),
            involved.get("uid"),
        )
        now = self._clock()
        with self._buckets_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _TokenBucket(self.options.burst_size, self.options.qps, now)
                self._buckets[key] = bucket
                while len(self._buckets) > self.options.lru_cache_size:
                    self._buckets.popitem(last=False)
            else:
                self._buckets.move_to_end(key)
            return bucket.take(now)

    def tracked_objects(self) -> int:
        with self._buckets_lock:
            return len(self._buckets)

    def publish(self, namespace: str, body: dict[str, Any]) -> bool:
        """Queue an event body for writing.  Returns False if it was dropped."""
        if self._closed.is_set():
            METRICS.events_dropped_total.labels(reason="closed").inc()
            return False
        if not self._allow(body.get("source", {}), body.get("involvedObject", {})):
            METRICS.events_dropped_total.labels(reason="spam_filter").inc()
            LOGGER.debug(
                "Spam filter dropped event %s for %s",
                body.get("reason"),
                body.get("involvedObject", {}).get("name"),
            )
            return False
        try:
            self._queue.put_nowait((namespace, body))
        except queue.Full:
            METRICS.events_dropped_total.labels(reason="queue_full").inc()
            return False
        return True

    def _write(self, namespace: str, body: dict[str, Any]) -> None:
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=body)
            METRICS.events_recorded_total.labels(type=body.get("type", EVENT_TYPE_NORMAL)).inc()
        except ApiException as exc:
            METRICS.events_dropped_total.labels(reason="api_error").inc()
            LOGGER.warning(
                "Failed to write event %s in %s: %s", body.get("reason"), namespace, exc.reason
            )
        except Exception:
            METRICS.events_dropped_total.labels(reason="api_error").inc()
            LOGGER.warning("Failed to write event %s", body.get("reason"), exc_info=True)

    def _run(self) -> None:
        while not self._stop_token.is_set() and not self._closed.is_set():
            try:
                namespace, body = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._write(namespace, body)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="event-broadcaster", daemon=True)
        self._thread.start()

    def shutdown(self, timeout: float) -> bool:
        """Stop accepting events and flush what is queued for up to ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        self._closed.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        while time.monotonic() < deadline:
            try:
                namespace, body = self._queue.get_nowait()
            except queue.Empty:
                return True
            self._write(namespace, body)
        return self._queue.empty()


class EventRecorder:
    """Records events on behalf of one component (e.g. ``gcp-controller``)."""

    def __init__(self, broadcaster: EventBroadcaster, component: str) -> None:
        self.broadcaster = broadcaster
        self.component = component

    def event(self, obj: Mapping[str, Any], event_type: str, reason: str, message: str) -> bool:
        involved = object_reference(obj)
        namespace = involved.get("namespace") or "default"
        now = datetime.now(UTC)
        timestamp = now.replace(microsecond=0).isoformat().replace("+00:00", "Z")
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{involved.get('name', 'unknown')}.{time.time_ns():x}",
                "namespace": namespace,
            },
            "involvedObject": involved,
            "reason": reason,
            "message": message,
            "type": event_type,
            "source": {"component": self.component, "host": self.broadcaster.host},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
            "reportingComponent": self.component,
            "reportingInstance": self.broadcaster.host,
        }
        return self.broadcaster.publish(namespace, body)

    def eventf(
        self, obj: Mapping[str, Any], event_type: str, reason: str, fmt: str, *args: Any
    ) -> bool:
        return self.event(obj, event_type, reason, fmt % args if args else fmt)

    def warning(self, obj: Mapping[str, Any], reason: str, message: str) -> bool:
        return self.event(obj, EVENT_TYPE_WARNING, reason, message)


class EventBroadcastTuner:
    """Raises the spam-filter burst for the shared event channel.

    Bulk reconciles of machines and clusters emit enough events per object
    to trip the default burst of 25, after which events would be silently
    dropped; 100 keeps them all at a small memory cost.
    """

    def __init__(self, burst_size: int = 100, qps: float = DEFAULT_SPAM_QPS) -> None:
        self.options = CorrelatorOptions(burst_size=burst_size, qps=qps)

    def build(self, core_api: CoreV1Api, stop_token: Any) -> EventBroadcaster:
        LOGGER.info("Event broadcaster burst size set to %d", self.options.burst_size)
        return EventBroadcaster(core_api=core_api, options=self.options, stop_token=stop_token)
