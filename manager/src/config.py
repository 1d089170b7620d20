from __future__ import annotations

import argparse
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

MANAGED_KINDS: tuple[str, ...] = ("GCPCluster", "GCPMachine")
LEADER_ELECTION_ID = "controller-leader-election-capg"
WATCH_FILTER_LABEL = "cluster.x-k8s.io/watch-filter"
DEFAULT_WEBHOOK_CERT_DIR = "/tmp/k8s-webhook-server/serving-certs"  # noqa: S108

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class ConfigError(RuntimeError):
    """Raised when the manager configuration is invalid."""


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_duration(value: str) -> float:
    """Parse a Go-style duration string (``90m``, ``1h30m``, ``500ms``) into seconds.

    A bare ``0`` is accepted.  Anything else without a unit is rejected so a
    typo like ``--sync-period=10`` does not silently mean ten seconds.
    """
    text = value.strip()
    if text in {"0", "-0", "+0"}:
        return 0.0
    sign = 1.0
    if text[:1] in {"-", "+"}:
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if not text:
        raise ConfigError(f"invalid duration: {value!r}")

    total = 0.0
    position = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            raise ConfigError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return sign * total


def parse_bind_address(address: str) -> tuple[str, int] | None:
    """Split ``host:port`` (or ``:port``) into a bindable tuple.

    Returns ``None`` for ``"0"`` or an empty address, which disables the
    listener.
    """
    text = address.strip()
    if text in {"", "0"}:
        return None
    host, separator, port_text = text.rpartition(":")
    if not separator:
        raise ConfigError(f"bind address must be host:port, got: {address!r}")
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ConfigError(f"bind address has a non-numeric port: {address!r}") from exc
    if port < 0 or port > 65535:
        raise ConfigError(f"bind address port must be in 0..65535, got: {address!r}")
    return host.strip("[]") or "0.0.0.0", port  # noqa: S104


@dataclass(frozen=True)
class ManagerConfig:
    """Immutable manager configuration populated once at startup.

    Durations are seconds.  ``webhook_port == 0`` selects reconciler mode; any
    other value runs the process as a webhook server only.
    """

    metrics_addr: str = ":8080"
    health_addr: str = ":9440"
    leader_elect: bool = False
    leader_election_id: str = LEADER_ELECTION_ID
    leader_election_namespace: str = ""
    lease_duration: float = 15.0
    renew_deadline: float = 10.0
    retry_period: float = 2.0
    watch_namespace: str = ""
    watch_filter: str = ""
    concurrency: Mapping[str, int] = field(
        default_factory=lambda: {kind: 10 for kind in MANAGED_KINDS}
    )
    sync_period: float = 600.0
    reconcile_timeout: float = 5400.0
    webhook_port: int = 9443
    webhook_cert_dir: str = DEFAULT_WEBHOOK_CERT_DIR
    profiler_address: str = ""
    graceful_shutdown_timeout: float = 30.0
    event_burst_size: int = 100
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.lease_duration <= 0:
            raise ConfigError("leader-elect-lease-duration must be positive")
        if self.renew_deadline >= self.lease_duration:
            raise ConfigError(
                "leader-elect-renew-deadline must be smaller than leader-elect-lease-duration"
            )
        if self.retry_period <= 0:
            raise ConfigError("leader-elect-retry-period must be positive")
        if self.retry_period >= self.renew_deadline:
            raise ConfigError(
                "leader-elect-retry-period must be smaller than leader-elect-renew-deadline"
            )
        for kind, limit in self.concurrency.items():
            if limit < 1:
                raise ConfigError(f"{kind.lower()}-concurrency must be >= 1, got: {limit}")
        if self.reconcile_timeout <= 0:
            raise ConfigError("reconcile-timeout must be positive")
        if self.sync_period <= 0:
            raise ConfigError("sync-period must be positive")
        if self.webhook_port < 0 or self.webhook_port > 65535:
            raise ConfigError(f"webhook-port must be in 0..65535, got: {self.webhook_port}")
        if self.graceful_shutdown_timeout < 0:
            raise ConfigError("graceful-shutdown-timeout must not be negative")
        if self.event_burst_size < 1:
            raise ConfigError(f"event-burst-size must be >= 1, got: {self.event_burst_size}")
        parse_bind_address(self.metrics_addr)
        parse_bind_address(self.health_addr)
        if self.profiler_address:
            parse_bind_address(self.profiler_address)

    @property
    def webhook_mode(self) -> bool:
        return self.webhook_port != 0

    def concurrency_for(self, kind: str) -> int:
        try:
            return self.concurrency[kind]
        except KeyError as exc:
            raise ConfigError(f"no concurrency limit configured for kind {kind}") from exc


def _kind_env_name(kind: str) -> str:
    return f"{kind.upper()}_CONCURRENCY"


def build_parser(
    env: Mapping[str, str] | None = None,
    kinds: Sequence[str] = MANAGED_KINDS,
) -> argparse.ArgumentParser:
    """Return the flag parser; every flag defaults to its environment variable when set."""
    values = env if env is not None else os.environ

    def default(name: str, fallback: str) -> str:
        return values.get(name, fallback)

    parser = argparse.ArgumentParser(
        prog="capg-manager",
        description="Controller manager for the GCP infrastructure provider",
    )
    parser.add_argument(
        "--metrics-addr",
        default=default("METRICS_ADDR", ":8080"),
        help="The address the metric endpoint binds to.",
    )
    parser.add_argument(
        "--leader-elect",
        nargs="?",
        const="true",
        default=default("LEADER_ELECT", "false"),
        help="Enable leader election so only one active manager reconciles at a time.",
    )
    parser.add_argument(
        "--leader-elect-lease-duration",
        default=default("LEADER_ELECT_LEASE_DURATION", "15s"),
        help="Interval at which non-leader candidates will wait to force acquire leadership.",
    )
    parser.add_argument(
        "--leader-elect-renew-deadline",
        default=default("LEADER_ELECT_RENEW_DEADLINE", "10s"),
        help="Duration the leader will retry refreshing leadership before giving up.",
    )
    parser.add_argument(
        "--leader-elect-retry-period",
        default=default("LEADER_ELECT_RETRY_PERIOD", "2s"),
        help="Duration candidates wait between tries of actions.",
    )
    parser.add_argument(
        "--namespace",
        default=default("WATCH_NAMESPACE", ""),
        help="Namespace to watch for objects. Empty watches all namespaces.",
    )
    parser.add_argument(
        "--leader-election-namespace",
        default=default("LEADER_ELECTION_NAMESPACE", ""),
        help="Namespace for the leader election lease. Empty discovers the current namespace.",
    )
    parser.add_argument(
        "--profiler-address",
        default=default("PROFILER_ADDRESS", ""),
        help="Bind address to expose the thread profiler (e.g. localhost:6060).",
    )
    parser.add_argument(
        "--watch-filter",
        default=default("WATCH_FILTER", ""),
        help=(
            f"Label value objects must carry to be reconciled. Label key is always "
            f"{WATCH_FILTER_LABEL}. Empty reconciles all objects."
        ),
    )
    for kind in kinds:
        parser.add_argument(
            f"--{kind.lower()}-concurrency",
            dest=f"concurrency_{kind.lower()}",
            default=default(_kind_env_name(kind), "10"),
            help=f"Number of {kind}s to process simultaneously.",
        )
    parser.add_argument(
        "--sync-period",
        default=default("SYNC_PERIOD", "10m"),
        help="The minimum interval at which watched resources are reconciled.",
    )
    parser.add_argument(
        "--webhook-port",
        default=default("WEBHOOK_PORT", "9443"),
        help="Webhook server port. Non-zero runs the manager as a webhook server only.",
    )
    parser.add_argument(
        "--webhook-cert-dir",
        default=default("WEBHOOK_CERT_DIR", DEFAULT_WEBHOOK_CERT_DIR),
        help="Directory holding tls.crt and tls.key for the webhook server.",
    )
    parser.add_argument(
        "--health-addr",
        default=default("HEALTH_ADDR", ":9440"),
        help="The address the health endpoint binds to.",
    )
    parser.add_argument(
        "--reconcile-timeout",
        default=default("RECONCILE_TIMEOUT", "90m"),
        help="The maximum duration a reconcile loop can run.",
    )
    parser.add_argument(
        "--graceful-shutdown-timeout",
        default=default("GRACEFUL_SHUTDOWN_TIMEOUT", "30s"),
        help="How long in-flight work may run after shutdown starts.",
    )
    parser.add_argument(
        "--event-burst-size",
        default=default("EVENT_BURST_SIZE", "100"),
        help="Burst of events per object accepted before the spam filter drops them.",
    )
    return parser


def _to_int(flag: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{flag} must be an integer, got: {raw!r}") from exc


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
    kinds: Sequence[str] = MANAGED_KINDS,
) -> ManagerConfig:
    """Parse flags (with environment fallbacks) into a validated :class:`ManagerConfig`."""
    values = env if env is not None else os.environ
    args = build_parser(values, kinds).parse_args(argv)

    concurrency = {
        kind: _to_int(f"{kind.lower()}-concurrency", getattr(args, f"concurrency_{kind.lower()}"))
        for kind in kinds
    }

    return ManagerConfig(
        metrics_addr=args.metrics_addr,
        health_addr=args.health_addr,
        leader_elect=parse_bool(args.leader_elect),
        leader_election_namespace=args.leader_election_namespace.strip(),
        lease_duration=parse_duration(args.leader_elect_lease_duration),
        renew_deadline=parse_duration(args.leader_elect_renew_deadline),
        retry_period=parse_duration(args.leader_elect_retry_period),
        watch_namespace=args.namespace.strip(),
        watch_filter=args.watch_filter.strip(),
        concurrency=concurrency,
        sync_period=parse_duration(args.sync_period),
        reconcile_timeout=parse_duration(args.reconcile_timeout),
        webhook_port=_to_int("webhook-port", args.webhook_port),
        webhook_cert_dir=args.webhook_cert_dir,
        profiler_address=args.profiler_address.strip(),
        graceful_shutdown_timeout=parse_duration(args.graceful_shutdown_timeout),
        event_burst_size=_to_int("event-burst-size", args.event_burst_size),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
    )
