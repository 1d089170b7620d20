from __future__ import annotations

import threading
import time
from typing import Any
from unittest.mock import MagicMock

from kubernetes.client.exceptions import ApiException

from manager.src.events import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    CorrelatorOptions,
    EventBroadcaster,
    EventBroadcastTuner,
    object_reference,
)


def _machine(name: str = "machine-a", namespace: str = "default") -> dict[str, Any]:
    return {
        "apiVersion": "infrastructure.cluster.x-k8s.io/v1alpha4",
        "kind": "GCPMachine",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
    }


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _make_broadcaster(
    core_api: Any = None,
    burst_size: int = 3,
    qps: float = 1.0,
    queue_size: int = 1000,
    clock: Any = None,
) -> EventBroadcaster:
    return EventBroadcaster(
        core_api=core_api or MagicMock(),
        options=CorrelatorOptions(burst_size=burst_size, qps=qps, queue_size=queue_size),
        stop_token=threading.Event(),
        clock=clock or _Clock(),
    )


def test_spam_filter_drops_events_beyond_the_burst() -> None:
    broadcaster = _make_broadcaster(burst_size=3)
    recorder = broadcaster.recorder_for("gcp-controller")

    accepted = [recorder.event(_machine(), EVENT_TYPE_NORMAL, "Reconciled", "ok") for _ in range(5)]

    assert accepted == [True, True, True, False, False]


def test_spam_filter_buckets_are_per_object() -> None:
    broadcaster = _make_broadcaster(burst_size=1)
    recorder = broadcaster.recorder_for("gcp-controller")

    assert recorder.event(_machine("a"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is True
    assert recorder.event(_machine("b"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is True
    assert recorder.event(_machine("a"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is False


def test_spam_filter_refills_over_time() -> None:
    clock = _Clock()
    broadcaster = _make_broadcaster(burst_size=1, qps=0.5, clock=clock)
    recorder = broadcaster.recorder_for("gcp-controller")

    assert recorder.warning(_machine(), "CreateError", "quota exceeded") is True
    assert recorder.warning(_machine(), "CreateError", "quota exceeded") is False
    clock.now += 2.0
    assert recorder.warning(_machine(), "CreateError", "quota exceeded") is True


def test_spam_filter_tracks_a_bounded_number_of_objects() -> None:
    broadcaster = EventBroadcaster(
        core_api=MagicMock(),
        options=CorrelatorOptions(queue_size=1),
        stop_token=threading.Event(),
        clock=_Clock(),
    )
    recorder = broadcaster.recorder_for("gcp-controller")

    for index in range(20_000):
        recorder.event(_machine(f"machine-{index}"), EVENT_TYPE_NORMAL, "Reconciled", "ok")

    assert broadcaster.tracked_objects() == 4096


def test_spam_filter_evicts_the_least_recently_seen_object() -> None:
    broadcaster = EventBroadcaster(
        core_api=MagicMock(),
        options=CorrelatorOptions(burst_size=1, lru_cache_size=2),
        stop_token=threading.Event(),
        clock=_Clock(),
    )
    recorder = broadcaster.recorder_for("gcp-controller")

    assert recorder.event(_machine("a"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is True
    assert recorder.event(_machine("b"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is True
    assert recorder.event(_machine("a"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is False
    assert recorder.event(_machine("c"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is True

    assert broadcaster.tracked_objects() == 2
    # "b" was evicted, so it starts over with a full bucket.
    assert recorder.event(_machine("b"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is True
    assert recorder.event(_machine("c"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is False

def test_tuner_raises_burst_to_one_hundred() -> None:
    broadcaster = EventBroadcastTuner().build(MagicMock(), threading.Event())
    recorder = broadcaster.recorder_for("gcp-controller")

    accepted = [
        recorder.eventf(_machine(), EVENT_TYPE_NORMAL, "Reconciled", "attempt %d", index)
        for index in range(101)
    ]

    assert broadcaster.options.burst_size == 100
    assert accepted.count(True) == 100
    assert accepted[-1] is False


def test_full_queue_drops_events() -> None:
    broadcaster = _make_broadcaster(burst_size=10, queue_size=1)
    recorder = broadcaster.recorder_for("gcp-controller")

    assert recorder.event(_machine("a"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is True
    assert recorder.event(_machine("b"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is False


def test_writer_thread_posts_events_and_shutdown_flushes() -> None:
    core_api = MagicMock()
    written = threading.Event()
    core_api.create_namespaced_event.side_effect = lambda **_: written.set()
    broadcaster = _make_broadcaster(core_api=core_api)
    broadcaster.start()
    recorder = broadcaster.recorder_for("gcp-controller")

    recorder.event(_machine(namespace="capg-system"), EVENT_TYPE_WARNING, "Failed", "boom")
    assert written.wait(timeout=5)
    assert broadcaster.shutdown(timeout=2) is True

    kwargs = core_api.create_namespaced_event.call_args.kwargs
    body = kwargs["body"]
    assert kwargs["namespace"] == "capg-system"
    assert body["involvedObject"]["kind"] == "GCPMachine"
    assert body["involvedObject"]["uid"] == "uid-machine-a"
    assert body["source"]["component"] == "gcp-controller"
    assert body["type"] == EVENT_TYPE_WARNING
    assert body["metadata"]["name"].startswith("machine-a.")


def test_shutdown_writes_queued_events_without_the_writer_thread() -> None:
    core_api = MagicMock()
    broadcaster = _make_broadcaster(core_api=core_api)
    recorder = broadcaster.recorder_for("gcp-controller")
    recorder.event(_machine("a"), EVENT_TYPE_NORMAL, "Reconciled", "ok")
    recorder.event(_machine("b"), EVENT_TYPE_NORMAL, "Reconciled", "ok")

    assert broadcaster.shutdown(timeout=1) is True
    assert core_api.create_namespaced_event.call_count == 2
    assert recorder.event(_machine("c"), EVENT_TYPE_NORMAL, "Reconciled", "ok") is False


def test_shutdown_never_waits_longer_than_its_timeout() -> None:
    core_api = MagicMock()
    writing = threading.Event()
    release = threading.Event()

    def create(**_: Any) -> None:
        if not writing.is_set():
            writing.set()
            release.wait(timeout=5)
            return
        time.sleep(0.25)

    core_api.create_namespaced_event.side_effect = create
    broadcaster = _make_broadcaster(core_api=core_api, burst_size=10)
    broadcaster.start()
    recorder = broadcaster.recorder_for("gcp-controller")
    for name in ("a", "b", "c"):
        recorder.event(_machine(name), EVENT_TYPE_NORMAL, "Reconciled", "ok")
    assert writing.wait(timeout=5)

    try:
        started = time.monotonic()
        drained = broadcaster.shutdown(timeout=0.5)
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert drained is False
    assert elapsed < 0.8


def test_api_errors_are_logged_not_raised() -> None:
    core_api = MagicMock()
    core_api.create_namespaced_event.side_effect = ApiException(status=403, reason="Forbidden")
    broadcaster = _make_broadcaster(core_api=core_api)
    broadcaster.recorder_for("gcp-controller").event(
        _machine(), EVENT_TYPE_NORMAL, "Reconciled", "ok"
    )

    assert broadcaster.shutdown(timeout=1) is True
    core_api.create_namespaced_event.assert_called_once()


def test_object_reference_omits_missing_fields() -> None:
    reference = object_reference({"kind": "GCPCluster", "metadata": {"name": "cluster-a"}})

    assert reference == {"kind": "GCPCluster", "name": "cluster-a"}
