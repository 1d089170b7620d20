from __future__ import annotations

import enum
import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from manager.src.config import ConfigError
from manager.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Identity of one managed object: the unit of deduplication."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcilerRegistration:
    """Per-kind dispatch limits, fixed at startup."""

    kind: str
    concurrency: int
    timeout: float

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ConfigError(f"{self.kind} concurrency must be >= 1, got: {self.concurrency}")
        if self.timeout <= 0:
            raise ConfigError(f"{self.kind} reconcile timeout must be positive")


class ReconcileOutcome(enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReconcileResult:
    """Terminal outcome of one admitted reconcile attempt."""

    key: ObjectKey
    outcome: ReconcileOutcome
    duration: float
    error: BaseException | None = None


class ReconcileCancelled(Exception):
    """Raised by :meth:`ReconcileContext.raise_if_done` once the context is cancelled."""


class ReconcileContext:
    """Deadline and cancellation view handed to a reconciler for one attempt.

    Reconcilers must poll :meth:`done` (or sleep with :meth:`wait`) between
    external calls and pass :meth:`remaining` as their request timeout.
    """

    def __init__(self, key: ObjectKey, timeout: float) -> None:
        self.key = key
        self.deadline = time.monotonic() + timeout
        self._cancelled = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str) -> bool:
        with self._lock:
            if self._cancelled.is_set():
                return False
            self._reason = reason
            self._cancelled.set()
            return True

    def done(self) -> bool:
        return self._cancelled.is_set() or time.monotonic() >= self.deadline

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds`` (never past the deadline).  Returns True if cancelled."""
        if self._cancelled.wait(timeout=min(seconds, self.remaining())):
            return True
        return self.done()

    def raise_if_done(self) -> None:
        if self.done():
            raise ReconcileCancelled(self._reason or "deadline exceeded")


class Reconciler(Protocol):
    """Capability implemented once per managed kind.

    Return normally for success; raise to report an error.  Retry policy is
    the reconciler's own concern, typically by calling ``submit_after``.
    """

    def reconcile(self, ctx: ReconcileContext, key: ObjectKey) -> None: ...


ResultSink = Callable[[ReconcileResult], None]


def log_result(result: ReconcileResult) -> None:
    if result.outcome is ReconcileOutcome.SUCCESS:
        LOGGER.debug("Reconciled %s in %.2fs", result.key, result.duration)
    else:
        LOGGER.warning(
            "Reconcile of %s finished with %s after %.2fs: %s",
            result.key,
            result.outcome.value,
            result.duration,
            result.error,
        )


class _KindQueue:
    """Deduplicating work queue for one kind.

    A key is in ``_dirty`` while it waits to run and in ``_processing`` while
    a worker holds it.  Adding a dirty key is a no-op; adding a key that is
    being processed only marks it dirty, and :meth:`done` re-queues it once the
    current attempt finishes.  A key therefore never runs twice at once and
    any number of submissions during an attempt collapse into one follow-up.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._queue: deque[ObjectKey] = deque()
        self._dirty: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._cond = threading.Condition()
        self._shutting_down = False

    def _publish_depth(self) -> None:
        METRICS.queue_depth.labels(kind=self.kind).set(len(self._queue))

    def add(self, key: ObjectKey) -> bool:
        """Queue ``key``.  Returns False when it was merged into existing work."""
        with self._cond:
            if self._shutting_down:
                return False
            if key in self._dirty:
                METRICS.coalesced_total.labels(kind=self.kind).inc()
                return False
            self._dirty.add(key)
            if key in self._processing:
                METRICS.coalesced_total.labels(kind=self.kind).inc()
                return False
            self._queue.append(key)
            self._publish_depth()
            self._cond.notify()
            return True

    def get(self) -> ObjectKey | None:
        """Block for the next key; None once the queue is shut down."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._publish_depth()
            return key

    def done(self, key: ObjectKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._publish_depth()
                self._cond.notify()

    def shut_down(self) -> int:
        """Stop handing out keys and drop everything queued.  Returns the number dropped."""
        with self._cond:
            self._shutting_down = True
            dropped = len(self._queue)
            self._queue.clear()
            self._dirty.clear()
            self._publish_depth()
            self._cond.notify_all()
            return dropped

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class _Task:
    """One admitted attempt; guarantees a single terminal outcome."""

    def __init__(self, key: ObjectKey, timeout: float, sink: ResultSink) -> None:
        self.key = key
        self.ctx = ReconcileContext(key, timeout)
        self.started = time.monotonic()
        self._sink = sink
        self._reported = False
        self._lock = threading.Lock()

    def finish(self, outcome: ReconcileOutcome, error: BaseException | None = None) -> bool:
        with self._lock:
            if self._reported:
                return False
            self._reported = True
        result = ReconcileResult(
            key=self.key,
            outcome=outcome,
            duration=time.monotonic() - self.started,
            error=error,
        )
        METRICS.reconcile_total.labels(kind=self.key.kind, outcome=outcome.value).inc()
        METRICS.reconcile_duration_seconds.labels(kind=self.key.kind).observe(result.duration)
        try:
            self._sink(result)
        except Exception:
            LOGGER.exception("Result sink failed for %s", self.key)
        return True

    def expire(self) -> None:
        if self.ctx.cancel("deadline exceeded"):
            LOGGER.warning("Reconcile of %s exceeded its deadline; cancelling", self.key)
            self.finish(ReconcileOutcome.TIMEOUT, TimeoutError(f"reconcile of {self.key} timed out"))


class DispatchLimiter:
    """Bounded, leader-gated worker pools, one per registered kind.

    Nothing is admitted until :meth:`activate` (called when this replica
    becomes leader) and nothing after :meth:`stop` or after ``stop_token``
    fires.  Each kind runs exactly ``concurrency`` worker threads, so the
    number of simultaneously executing reconciles per kind is bounded by
    construction.  Every admitted attempt gets a :class:`ReconcileContext`
    bounded by the kind's timeout and yields exactly one
    :class:`ReconcileResult` to ``result_sink``.  The limiter never retries.
    """

    def __init__(
        self,
        stop_token: Any,
        result_sink: ResultSink = log_result,
    ) -> None:
        self._stop_token = stop_token
        self._result_sink = result_sink
        self._registrations: dict[str, tuple[ReconcilerRegistration, Reconciler]] = {}
        self._queues: dict[str, _KindQueue] = {}
        self._workers: list[threading.Thread] = []
        self._in_flight: dict[ObjectKey, _Task] = {}
        self._lock = threading.Lock()
        self._active = False
        self._stopped = False

        self._delayed: list[tuple[float, int, ObjectKey]] = []
        self._delayed_cond = threading.Condition()
        self._delayed_seq = itertools.count()
        self._delayed_thread: threading.Thread | None = None

    @property
    def kinds(self) -> tuple[str, ...]:
        return tuple(self._registrations)

    def registration(self, kind: str) -> ReconcilerRegistration:
        return self._registrations[kind][0]

    def register(self, registration: ReconcilerRegistration, reconciler: Reconciler) -> None:
        with self._lock:
            if self._active or self._stopped:
                raise ConfigError(f"cannot register {registration.kind} after the limiter started")
            if registration.kind in self._registrations:
                raise ConfigError(f"reconciler for {registration.kind} is already registered")
            self._registrations[registration.kind] = (registration, reconciler)
            self._queues[registration.kind] = _KindQueue(registration.kind)
        LOGGER.info(
            "Registered reconciler for %s (concurrency=%d, timeout=%.0fs)",
            registration.kind,
            registration.concurrency,
            registration.timeout,
        )

    def _admitting(self) -> bool:
        return self._active and not self._stopped and not self._stop_token.is_set()

    def activate(self) -> None:
        """Start the worker pools.  Called once this replica holds leadership."""
        with self._lock:
            if self._stopped:
                LOGGER.warning("Refusing to activate a stopped dispatch limiter")
                return
            if self._active:
                return
            self._active = True
            for kind, (registration, reconciler) in self._registrations.items():
                for index in range(registration.concurrency):
                    worker = threading.Thread(
                        target=self._work,
                        args=(self._queues[kind], registration, reconciler),
                        name=f"reconcile-{kind.lower()}-{index}",
                        daemon=True,
                    )
                    self._workers.append(worker)
                    worker.start()
            self._delayed_thread = threading.Thread(
                target=self._run_delayed, name="reconcile-delayed", daemon=True
            )
            self._delayed_thread.start()
        LOGGER.info("Dispatch limiter active for kinds: %s", ", ".join(self._registrations))

    def submit(self, key: ObjectKey) -> bool:
        """Request a reconcile of ``key``.

        Returns True when the key was newly queued, False when it was merged
        into queued or running work or when nothing is being admitted.
        """
        queue = self._queues.get(key.kind)
        if queue is None:
            raise ValueError(f"no reconciler registered for kind {key.kind}")
        if not self._admitting():
            LOGGER.debug("Not admitting %s: dispatch limiter inactive", key)
            return False
        return queue.add(key)

    def submit_after(self, key: ObjectKey, delay: float) -> None:
        """Submit ``key`` once ``delay`` seconds have passed."""
        if key.kind not in self._queues:
            raise ValueError(f"no reconciler registered for kind {key.kind}")
        if delay <= 0:
            self.submit(key)
            return
        with self._delayed_cond:
            heapq.heappush(
                self._delayed, (time.monotonic() + delay, next(self._delayed_seq), key)
            )
            self._delayed_cond.notify()

    def _run_delayed(self) -> None:
        while True:
            with self._delayed_cond:
                if self._stopped or self._stop_token.is_set():
                    self._delayed.clear()
                    return
                now = time.monotonic()
                due: list[ObjectKey] = []
                while self._delayed and self._delayed[0][0] <= now:
                    due.append(heapq.heappop(self._delayed)[2])
                if not due:
                    timeout = 1.0
                    if self._delayed:
                        timeout = min(timeout, self._delayed[0][0] - now)
                    self._delayed_cond.wait(timeout=timeout)
                    continue
            for key in due:
                self.submit(key)

    def _work(
        self,
        queue: _KindQueue,
        registration: ReconcilerRegistration,
        reconciler: Reconciler,
    ) -> None:
        while True:
            key = queue.get()
            if key is None:
                return
            try:
                if self._admitting():
                    self._execute(registration, reconciler, key)
            finally:
                queue.done(key)

    def _execute(
        self,
        registration: ReconcilerRegistration,
        reconciler: Reconciler,
        key: ObjectKey,
    ) -> None:
        task = _Task(key, registration.timeout, self._result_sink)
        with self._lock:
            self._in_flight[key] = task
        METRICS.active_workers.labels(kind=key.kind).inc()
        deadline_timer = threading.Timer(registration.timeout, task.expire)
        deadline_timer.daemon = True
        deadline_timer.start()
        try:
            reconciler.reconcile(task.ctx, key)
        except ReconcileCancelled as exc:
            if time.monotonic() >= task.ctx.deadline:
                task.expire()
            else:
                task.finish(ReconcileOutcome.CANCELLED, exc)
        except Exception as exc:
            if task.finish(ReconcileOutcome.ERROR, exc):
                LOGGER.exception("Reconciler for %s failed on %s", key.kind, key)
        else:
            # A cancelled attempt was already reported; finish() is then a no-op.
            if time.monotonic() >= task.ctx.deadline:
                task.expire()
            else:
                task.finish(ReconcileOutcome.SUCCESS)
        finally:
            deadline_timer.cancel()
            METRICS.active_workers.labels(kind=key.kind).dec()
            with self._lock:
                self._in_flight.pop(key, None)
            if task.ctx.reason == "deadline exceeded":
                LOGGER.warning(
                    "Reconcile of %s returned %.2fs after its deadline",
                    key,
                    time.monotonic() - task.ctx.deadline,
                )

    def in_flight(self) -> tuple[ObjectKey, ...]:
        with self._lock:
            return tuple(self._in_flight)

    def cancel_in_flight(self, reason: str) -> int:
        """Cancel every running attempt and report it ``CANCELLED``.  Returns the count."""
        with self._lock:
            tasks = list(self._in_flight.values())
        cancelled = 0
        for task in tasks:
            if task.ctx.cancel(reason):
                task.finish(ReconcileOutcome.CANCELLED)
                cancelled += 1
        return cancelled

    def stop(self, grace_period: float) -> bool:
        """Stop admitting work and drain the pools.

        Queued keys are dropped immediately.  Running attempts get
        ``grace_period`` seconds to finish, after which their contexts are
        cancelled.  Returns True when every worker exited in time.
        """
        with self._lock:
            self._stopped = True
            workers = list(self._workers)
        with self._delayed_cond:
            self._delayed.clear()
            self._delayed_cond.notify_all()

        dropped = sum(queue.shut_down() for queue in self._queues.values())
        if dropped:
            LOGGER.info("Dropped %d queued reconcile(s) on stop", dropped)

        deadline = time.monotonic() + grace_period
        for worker in workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))

        stragglers = [worker for worker in workers if worker.is_alive()]
        if not stragglers:
            return True

        cancelled = self.cancel_in_flight("shutdown")
        LOGGER.warning(
            "Cancelled %d reconcile(s) still running after the %.1fs grace period",
            cancelled,
            grace_period,
        )
        return False

    def pending(self) -> dict[str, int]:
        return {kind: len(queue) for kind, queue in self._queues.items()}

