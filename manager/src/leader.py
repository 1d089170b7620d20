from __future__ import annotations

import enum
import logging
import math
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from manager.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

StateListener = Callable[["LeadershipState"], None]


class LeadershipState(enum.Enum):
    CANDIDATE = "candidate"
    LEADER = "leader"
    RELEASED = "released"


class _LeadershipPublisher:
    """State holder shared by the lease-backed and the static coordinator.

    ``RELEASED`` is terminal: once reached no further transition is published,
    so a replica that lost its lease can never believe it leads again.
    """

    def __init__(self) -> None:
        self._state = LeadershipState.CANDIDATE
        self._state_lock = threading.Lock()
        self._listeners: list[StateListener] = []
        self.leading = threading.Event()
        self.released = threading.Event()

    @property
    def state(self) -> LeadershipState:
        return self._state

    @property
    def is_leader(self) -> bool:
        return self._state is LeadershipState.LEADER

    def add_listener(self, listener: StateListener) -> None:
        """Call ``listener`` with every future state transition, in order."""
        self._listeners.append(listener)

    def _transition(self, new_state: LeadershipState) -> bool:
        with self._state_lock:
            old_state = self._state
            if old_state is new_state or old_state is LeadershipState.RELEASED:
                return False
            self._state = new_state
            if new_state is LeadershipState.LEADER:
                self.leading.set()
            else:
                self.leading.clear()
            if new_state is LeadershipState.RELEASED:
                self.released.set()

        LOGGER.info("Leadership state %s -> %s", old_state.value, new_state.value)
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                LOGGER.exception("Leadership listener failed on %s", new_state.value)
        return True

    def wait_for_leadership(self, stop: Any, poll_seconds: float = 0.5) -> bool:
        """Block until this replica leads.  Returns False if released or stopped first."""
        while not stop.is_set() and not self.released.is_set():
            if self.leading.wait(timeout=poll_seconds):
                return True
        return self.is_leader


class LeaseCoordinator(_LeadershipPublisher):
    """Lease-based leader election using the ``coordination.k8s.io/v1`` Lease API.

    Drives the state machine ``CANDIDATE -> LEADER -> RELEASED``:

    1. As a candidate, every ``retry_period`` read the Lease.  Create it on
       404; take it over when it has no holder or when the record has not
       changed for ``lease_duration`` as measured on *our* monotonic clock.
       Store errors and ``409 Conflict`` are logged and retried forever.
    2. As leader, renew every ``retry_period``.  A failed renewal is retried
       at the same cadence but never past ``renew_deadline`` counted from the
       start of the last successful renewal; every API call carries a request
       timeout no larger than the budget left.  Once the budget is spent, or
       as soon as the Lease names another holder, the coordinator moves to
       ``RELEASED`` and returns.
    3. When ``stop`` fires, a leader clears ``holderIdentity`` as a
       best-effort release and moves to ``RELEASED``.

    Expiry is judged from when we last *observed* the record change, not
    from the holder's ``renewTime``, so wall-clock skew between replicas
    cannot shorten another holder's lease.  Updates send back the
    ``resourceVersion`` we read, so the API server's compare-and-swap
    rejects racing writers with 409.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration: float = 15.0,
        renew_deadline: float = 10.0,
        retry_period: float = 2.0,
        wall_clock: Callable[[], datetime] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if lease_duration <= 0:
            raise ValueError("lease_duration must be positive")
        if renew_deadline <= 0:
            raise ValueError("renew_deadline must be positive")
        if retry_period < 0:
            raise ValueError("retry_period must be >= 0")
        if renew_deadline >= lease_duration:
            raise ValueError("renew_deadline must be smaller than lease_duration")
        if retry_period >= renew_deadline:
            raise ValueError("retry_period must be smaller than renew_deadline")
        super().__init__()

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration = lease_duration
        self.renew_deadline = renew_deadline
        self.retry_period = retry_period
        self._wall_clock = wall_clock or (lambda: datetime.now(UTC))
        self._clock = clock
        self._observed_record: tuple[Any, ...] | None = None
        self._observed_at = 0.0

    def _lease_duration_seconds(self) -> int:
        return max(1, math.ceil(self.lease_duration))

    def _observe(self, spec: V1LeaseSpec | None, now_monotonic: float) -> None:
        record = (
            None
            if spec is None
            else (
                spec.holder_identity,
                spec.renew_time,
                spec.acquire_time,
                spec.lease_transitions,
            )
        )
        if record != self._observed_record:
            self._observed_record = record
            self._observed_at = now_monotonic

    def _try_acquire_or_renew(self, timeout: float) -> bool:
        """Attempt a single acquire-or-renew cycle.  Returns True on success."""
        now_monotonic = self._clock()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                _request_timeout=timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(timeout)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        self._observe(spec, now_monotonic)
        holder = spec.holder_identity if spec is not None else None

        if holder and holder != self.identity:
            if self.is_leader:
                LOGGER.error(
                    "Lease %s is now held by %s; leadership lost", self.lease_name, holder
                )
                self._release(transition="lost")
                return False
            duration = (spec.lease_duration_seconds if spec else None) or self.lease_duration
            if now_monotonic - self._observed_at < duration:
                return False

        return self._update_lease(lease, timeout)

    def _create_lease(self, timeout: float) -> bool:
        """Create a new Lease object, claiming leadership.

        Returns False on ``409 Conflict`` (another replica beat us to it).
        """
        now = self._wall_clock()
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self._lease_duration_seconds(),
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(
                namespace=self.namespace,
                body=lease,
                _request_timeout=timeout,
            )
            return True
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s already exists, will retry", self.lease_name)
                return False
            LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False

    def _update_lease(self, lease: V1Lease, timeout: float) -> bool:
        """Write ourselves into an existing Lease to renew or take it over.

        ``acquireTime`` and ``leaseTransitions`` only change when the holder
        changes.
        """
        now = self._wall_clock()
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        previous_holder = lease.spec.holder_identity
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self._lease_duration_seconds()
        if lease.spec.acquire_time is None or previous_holder != self.identity:
            lease.spec.acquire_time = now
            if previous_holder and previous_holder != self.identity:
                lease.spec.lease_transitions = (lease.spec.lease_transitions or 0) + 1
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
                _request_timeout=timeout,
            )
            return True
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
                return False
            LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False

    def _release_lease(self) -> None:
        """Clear holderIdentity on the Lease to allow immediate takeover."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                _request_timeout=self.retry_period or None,
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                lease.spec.lease_duration_seconds = 1
                lease.spec.renew_time = self._wall_clock()
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name,
                    namespace=self.namespace,
                    body=lease,
                    _request_timeout=self.retry_period or None,
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _attempt(self, timeout: float) -> bool:
        try:
            return self._try_acquire_or_renew(timeout)
        except Exception:
            LOGGER.exception("Unexpected error in leader election cycle")
            return False

    def _become_leader(self, acquire_wait_started: float) -> None:
        acquired_at = self._clock()
        LOGGER.info("Acquired leader lease %s (identity=%s)", self.lease_name, self.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(acquired_at - acquire_wait_started)
        self._transition(LeadershipState.LEADER)

    def _release(self, transition: str) -> None:
        METRICS.leader_state.set(0)
        if self.is_leader:
            METRICS.leader_transitions_total.labels(transition=transition).inc()
        self._transition(LeadershipState.RELEASED)

    def run(self, stop: Any) -> LeadershipState:
        """Campaign, lead and renew until ``stop`` fires or the lease is lost.

        ``stop`` is anything with ``is_set()``/``wait(timeout)``.  Returns the
        terminal state, which is always ``RELEASED``.
        """
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        acquire_wait_started = self._clock()
        last_renew = acquire_wait_started

        while not stop.is_set():
            if not self.is_leader:
                attempt_started = self._clock()
                if self._attempt(timeout=self.renew_deadline):
                    last_renew = attempt_started
                    self._become_leader(acquire_wait_started)
                stop.wait(timeout=self.retry_period)
                continue

            remaining = self.renew_deadline - (self._clock() - last_renew)
            if remaining <= 0:
                LOGGER.error(
                    "Failed to renew lease %s within %.2fs; leadership lost",
                    self.lease_name,
                    self.renew_deadline,
                )
                self._release(transition="lost")
                return self.state

            attempt_started = self._clock()
            if self._attempt(timeout=remaining):
                last_renew = attempt_started
                stop.wait(timeout=self.retry_period)
                continue
            if self.released.is_set():
                return self.state

            remaining = self.renew_deadline - (self._clock() - last_renew)
            LOGGER.warning(
                "Lease renewal failed; %.2fs left before stepping down", max(0.0, remaining)
            )
            stop.wait(timeout=max(0.0, min(self.retry_period, remaining)))

        if self.is_leader:
            self._release_lease()
        self._release(transition="released")
        return self.state


class StaticLeadership(_LeadershipPublisher):
    """Permanent leadership used when leader election is disabled."""

    def run(self, stop: Any) -> LeadershipState:
        METRICS.leader_state.set(1)
        self._transition(LeadershipState.LEADER)
        while not stop.wait(timeout=1.0):
            pass
        METRICS.leader_state.set(0)
        self._transition(LeadershipState.RELEASED)
        return self.state


def default_identity() -> str:
    """Return a unique identity for this replica.

    The pod name (``HOSTNAME`` in Kubernetes) keeps the holder readable in
    ``kubectl get lease``; the random suffix keeps a restarted container with
    the same name from inheriting its predecessor's lease.
    """
    hostname = os.getenv("HOSTNAME") or os.getenv("POD_NAME") or socket.gethostname()
    return f"{hostname}_{uuid.uuid4()}"
