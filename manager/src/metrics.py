from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ManagerMetrics:
    """Prometheus metrics exported by the manager on ``/metrics``.

    Reconcile metrics carry a ``kind`` label so operators can alert on a
    single control loop saturating its worker pool independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "capg_manager_reconcile_total",
            "Total reconcile attempts by terminal outcome",
            ["kind", "outcome"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "capg_manager_reconcile_duration_seconds",
            "Seconds spent in a single reconcile attempt",
            ["kind"],
            buckets=(0.1, 0.5, 1, 5, 15, 60, 300, 900, 3600, float("inf")),
        )
    )
    active_workers: Gauge = field(
        default_factory=lambda: Gauge(
            "capg_manager_active_workers",
            "Reconcile tasks currently executing",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "capg_manager_queue_depth",
            "Object keys waiting for a free worker",
            ["kind"],
        )
    )
    coalesced_total: Counter = field(
        default_factory=lambda: Counter(
            "capg_manager_coalesced_total",
            "Submissions merged into an already queued or running attempt",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "capg_manager_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "capg_manager_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "capg_manager_leader_state",
            "Whether this manager replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "capg_manager_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    events_recorded_total: Counter = field(
        default_factory=lambda: Counter(
            "capg_manager_events_recorded_total",
            "Kubernetes events written to the API",
            ["type"],
        )
    )
    events_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "capg_manager_events_dropped_total",
            "Kubernetes events dropped before reaching the API",
            ["reason"],
        )
    )
    webhook_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "capg_manager_webhook_requests_total",
            "Admission requests handled by the webhook server",
            ["webhook", "allowed"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "capg_manager",
            "Build information for the manager",
        )
    )


METRICS = ManagerMetrics()
