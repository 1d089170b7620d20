from __future__ import annotations

import pytest

from manager.src.config import (
    ConfigError,
    ManagerConfig,
    load_config,
    parse_bind_address,
    parse_bool,
    parse_duration,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("15s", 15.0),
        ("90m", 5400.0),
        ("1h30m", 5400.0),
        ("500ms", 0.5),
        ("2.5s", 2.5),
        ("0", 0.0),
    ],
)
def test_parse_duration_accepts_go_style_values(raw: str, expected: float) -> None:
    assert parse_duration(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", ["10", "", "5 s", "1x", "s", "1h-30m"])
def test_parse_duration_rejects_malformed_values(raw: str) -> None:
    with pytest.raises(ConfigError, match="invalid duration"):
        parse_duration(raw)


def test_parse_bool() -> None:
    assert parse_bool("true")
    assert parse_bool(" Yes ")
    assert not parse_bool("false")
    assert not parse_bool(None)


def test_parse_bind_address() -> None:
    assert parse_bind_address(":8080") == ("0.0.0.0", 8080)
    assert parse_bind_address("127.0.0.1:9440") == ("127.0.0.1", 9440)
    assert parse_bind_address("0") is None
    assert parse_bind_address("") is None


@pytest.mark.parametrize("raw", ["8080", "localhost:http", "localhost:70000"])
def test_parse_bind_address_rejects_invalid(raw: str) -> None:
    with pytest.raises(ConfigError):
        parse_bind_address(raw)


def test_defaults_match_documented_values() -> None:
    config = load_config([], env={})

    assert config.metrics_addr == ":8080"
    assert config.health_addr == ":9440"
    assert config.leader_elect is False
    assert config.leader_election_id == "controller-leader-election-capg"
    assert (config.lease_duration, config.renew_deadline, config.retry_period) == (15, 10, 2)
    assert config.concurrency == {"GCPCluster": 10, "GCPMachine": 10}
    assert config.sync_period == 600
    assert config.reconcile_timeout == 5400
    assert config.webhook_port == 9443
    assert config.webhook_mode is True
    assert config.graceful_shutdown_timeout == 30
    assert config.event_burst_size == 100


def test_flags_override_environment() -> None:
    env = {"GCPMACHINE_CONCURRENCY": "4", "WEBHOOK_PORT": "9443", "LEADER_ELECT": "false"}

    config = load_config(
        ["--webhook-port=0", "--leader-elect", "--gcpmachine-concurrency=7", "--sync-period=5m"],
        env=env,
    )

    assert config.webhook_mode is False
    assert config.leader_elect is True
    assert config.concurrency_for("GCPMachine") == 7
    assert config.concurrency_for("GCPCluster") == 10
    assert config.sync_period == 300


def test_environment_fallbacks_are_used() -> None:
    env = {
        "LEADER_ELECT": "true",
        "LEADER_ELECT_LEASE_DURATION": "30s",
        "LEADER_ELECT_RENEW_DEADLINE": "20s",
        "LEADER_ELECT_RETRY_PERIOD": "4s",
        "WATCH_NAMESPACE": " capg-system ",
        "WATCH_FILTER": "team-a",
        "GCPCLUSTER_CONCURRENCY": "3",
        "LOG_LEVEL": "debug",
    }

    config = load_config([], env=env)

    assert config.leader_elect is True
    assert (config.lease_duration, config.renew_deadline, config.retry_period) == (30, 20, 4)
    assert config.watch_namespace == "capg-system"
    assert config.watch_filter == "team-a"
    assert config.concurrency_for("GCPCluster") == 3
    assert config.log_level == "DEBUG"


def test_renew_deadline_must_be_below_lease_duration() -> None:
    with pytest.raises(ConfigError, match="renew-deadline must be smaller"):
        load_config(
            ["--leader-elect-lease-duration=10s", "--leader-elect-renew-deadline=10s"], env={}
        )


def test_retry_period_must_be_below_renew_deadline() -> None:
    with pytest.raises(ConfigError, match="retry-period must be smaller"):
        load_config(["--leader-elect-retry-period=10s"], env={})


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ConfigError, match="gcpcluster-concurrency must be >= 1"):
        load_config(["--gcpcluster-concurrency=0"], env={})


def test_non_integer_concurrency_is_rejected() -> None:
    with pytest.raises(ConfigError, match="must be an integer"):
        load_config(["--gcpmachine-concurrency=many"], env={})


def test_reconcile_timeout_must_be_positive() -> None:
    with pytest.raises(ConfigError, match="reconcile-timeout"):
        ManagerConfig(reconcile_timeout=0)


def test_unknown_kind_has_no_concurrency() -> None:
    with pytest.raises(ConfigError, match="no concurrency limit"):
        ManagerConfig().concurrency_for("GCPMachinePool")
