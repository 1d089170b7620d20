from __future__ import annotations

import json
import logging
import os
import re
import threading
from collections.abc import Sequence

from manager.src.config import ConfigError, ManagerConfig, load_config, parse_bind_address
from manager.src.dispatch import DispatchLimiter
from manager.src.events import EventBroadcastTuner
from manager.src.health import (
    default_checks,
    start_health_server,
    start_metrics_server,
    stop_server,
)
from manager.src.kube import build_clients, discover_namespace, load_kube_configuration
from manager.src.leader import (
    LeadershipState,
    LeaseCoordinator,
    StaticLeadership,
    default_identity,
)
from manager.src.lifecycle import ShutdownLifecycle
from manager.src.metrics import METRICS
from manager.src.modes import Mode, StartupPlan, select_mode
from manager.src.profiler import start_profiler
from manager.src.reconcilers import DEFAULT_RESOURCE_KINDS, ObjectReconciler
from manager.src.watch import ObjectWatcher
from manager.src.webhooks import WebhookServer, create_webhook_app, default_webhook_registrations

RUNTIME_VERSION = "0.4.0"
EVENT_SOURCE_COMPONENT = "gcp-controller"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    """Install the JSON formatter on the root logger at ``level``."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def start_probe_servers(
    config: ManagerConfig,
    lifecycle: ShutdownLifecycle,
    leader_event: threading.Event,
) -> None:
    """Start health, metrics and profiler listeners; they run in either mode from the start."""
    health_address = parse_bind_address(config.health_addr)
    if health_address is not None:
        health_server = start_health_server(health_address, default_checks(), leader=leader_event)
        lifecycle.register("health server", lambda _: stop_server(health_server))

    metrics_address = parse_bind_address(config.metrics_addr)
    if metrics_address is not None:
        metrics_server = start_metrics_server(metrics_address)
        lifecycle.register("metrics server", lambda _: stop_server(metrics_server))

    if config.profiler_address:
        profiler_address = parse_bind_address(config.profiler_address)
        if profiler_address is not None:
            profiler = start_profiler(profiler_address)
            lifecycle.register("profiler", lambda _: stop_server(profiler))


def start_webhook_mode(config: ManagerConfig, plan: StartupPlan, lifecycle: ShutdownLifecycle) -> None:
    app = create_webhook_app(plan.webhooks)
    server = WebhookServer(app, port=config.webhook_port, cert_dir=config.webhook_cert_dir)
    server.start()
    lifecycle.register("webhook server", server.stop)


def start_reconciler_mode(
    config: ManagerConfig,
    plan: StartupPlan,
    lifecycle: ShutdownLifecycle,
    leader_event: threading.Event,
) -> None:
    """Build the leader-gated reconcile pipeline and start campaigning.

    Work is only admitted while this replica leads.  Losing the lease is
    terminal: in-flight reconciles are cancelled at once and the process
    shuts down non-zero so the orchestrator restarts it as a fresh candidate.
    """
    token = lifecycle.token
    load_kube_configuration()
    clients = build_clients()

    broadcaster = EventBroadcastTuner(burst_size=config.event_burst_size).build(
        clients.core, token
    )
    broadcaster.start()
    lifecycle.register("event broadcaster", broadcaster.shutdown)
    recorder = broadcaster.recorder_for(EVENT_SOURCE_COMPONENT)

    resources = {resource.kind: resource for resource in DEFAULT_RESOURCE_KINDS}
    limiter = DispatchLimiter(stop_token=token)
    for registration in plan.reconcilers:
        resource = resources[registration.kind]
        limiter.register(
            registration,
            ObjectReconciler(
                resource,
                clients.custom_objects,
                recorder=recorder,
                requeue=limiter.submit_after,
            ),
        )

    if plan.leader_election:
        namespace = config.leader_election_namespace or discover_namespace()
        coordinator: LeaseCoordinator | StaticLeadership = LeaseCoordinator(
            coordination_api=clients.coordination,
            namespace=namespace,
            lease_name=config.leader_election_id,
            identity=default_identity(),
            lease_duration=config.lease_duration,
            renew_deadline=config.renew_deadline,
            retry_period=config.retry_period,
        )
    else:
        LOGGER.info("Leader election disabled; assuming leadership")
        coordinator = StaticLeadership()

    watchers = [
        ObjectWatcher(
            resources[registration.kind],
            clients.custom_objects,
            submit=limiter.submit,
            stop_token=token,
            namespace=config.watch_namespace,
            watch_filter=config.watch_filter,
            sync_period=config.sync_period,
            on_fatal=lifecycle.fail,
        )
        for registration in plan.reconcilers
    ]

    def on_transition(state: LeadershipState) -> None:
        if state is LeadershipState.LEADER:
            leader_event.set()
            limiter.activate()
            for watcher in watchers:
                watcher.start()
            return
        if state is LeadershipState.RELEASED:
            leader_event.clear()
            # Also during the drain: without the lease nothing may keep running.
            cancelled = limiter.cancel_in_flight("leadership lost")
            limiter.stop(grace_period=0)
            if cancelled:
                LOGGER.warning(
                    "Cancelled %d in-flight reconcile(s) after losing the lease", cancelled
                )
            if not token.is_set():
                lifecycle.fail("leader election lost")

    coordinator.add_listener(on_transition)

    # The lease outlives the workers: it is released only after the limiter
    # drained, so no other replica starts reconciling while we still are.
    lease_token = token.derive()
    coordinator_thread = threading.Thread(
        target=coordinator.run, args=(lease_token,), name="leader-election", daemon=True
    )

    def stop_leadership(timeout: float) -> bool:
        lease_token.fire(token.reason or "shutdown")
        coordinator_thread.join(timeout=timeout)
        return not coordinator_thread.is_alive()

    def stop_watchers(timeout: float) -> None:
        # A watch stream blocks until its server-side timeout; once the token
        # fired it can no longer admit work, so it is not awaited.
        for watcher in watchers:
            watcher.stop(timeout=0)

    lifecycle.register("leader election", stop_leadership)
    lifecycle.register("dispatch limiter", lambda timeout: limiter.stop(grace_period=timeout))
    lifecycle.register("watches", stop_watchers)
    coordinator_thread.start()


def main(argv: Sequence[str] | None = None) -> int:
    """Manager entrypoint: configure logging, pick a mode, run until shutdown.

    Returns the process exit code: ``0`` after a graceful shutdown, ``1``
    after a construction failure, lost leadership, or an incomplete drain.
    """
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    lifecycle = ShutdownLifecycle()

    try:
        config = load_config(argv)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    if config.watch_namespace:
        LOGGER.info("Watching objects only in namespace %s", config.watch_namespace)

    lifecycle.install_signal_handlers()
    leader_event = threading.Event()
    try:
        start_probe_servers(config, lifecycle, leader_event)
        plan = select_mode(
            config,
            resources=DEFAULT_RESOURCE_KINDS,
            webhooks=default_webhook_registrations(),
        )
        if plan.mode is Mode.WEBHOOK:
            start_webhook_mode(config, plan, lifecycle)
        else:
            start_reconciler_mode(config, plan, lifecycle, leader_event)
    except Exception:
        LOGGER.exception("Unable to start manager")
        lifecycle.fail("startup failed")
        lifecycle.drain(config.graceful_shutdown_timeout)
        return 1

    LOGGER.info("Starting manager (version=%s, mode=%s)", RUNTIME_VERSION, plan.mode.value)
    while not lifecycle.wait(timeout=1.0):
        pass

    drained = lifecycle.drain(config.graceful_shutdown_timeout)
    if not drained:
        LOGGER.error(
            "Manager did not drain within %.0fs", config.graceful_shutdown_timeout
        )
        return 1
    LOGGER.info("Manager stopped")
    return lifecycle.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
