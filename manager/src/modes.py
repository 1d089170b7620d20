from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from manager.src.config import ConfigError, ManagerConfig
from manager.src.dispatch import ReconcilerRegistration
from manager.src.reconcilers import ResourceKind
from manager.src.webhooks import WebhookRegistration

LOGGER = logging.getLogger(__name__)


class Mode(enum.Enum):
    RECONCILER = "reconciler"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class StartupPlan:
    """What the process starts: reconcilers behind a lease, or webhooks without one.

    Webhooks answer synchronously and scale out with every replica, while
    reconcilers mutate shared external state and must sit behind a single
    leader, so a plan never carries both.
    """

    mode: Mode
    reconcilers: tuple[ReconcilerRegistration, ...] = ()
    webhooks: tuple[WebhookRegistration, ...] = ()
    leader_election: bool = False

    def __post_init__(self) -> None:
        if self.reconcilers and self.webhooks:
            raise ConfigError("a startup plan cannot install both reconcilers and webhooks")
        if self.mode is Mode.WEBHOOK and (self.reconcilers or self.leader_election):
            raise ConfigError("webhook mode must not run reconcilers or leader election")
        if self.mode is Mode.RECONCILER and self.webhooks:
            raise ConfigError("reconciler mode must not install webhooks")


def select_mode(
    config: ManagerConfig,
    resources: Sequence[ResourceKind],
    webhooks: Sequence[WebhookRegistration],
) -> StartupPlan:
    """Decide once, at startup, which command set this process runs.

    ``webhook_port == 0`` runs every reconciler (leader-gated when leader
    election is enabled); any other port runs only the webhook server.
    """
    if config.webhook_mode:
        LOGGER.info(
            "Webhook port %d set; running as webhook server only, no reconcilers installed",
            config.webhook_port,
        )
        return StartupPlan(mode=Mode.WEBHOOK, webhooks=tuple(webhooks))

    registrations = tuple(
        ReconcilerRegistration(
            kind=resource.kind,
            concurrency=config.concurrency_for(resource.kind),
            timeout=config.reconcile_timeout,
        )
        for resource in resources
    )
    LOGGER.info(
        "Webhook port is 0; running reconcilers for %s",
        ", ".join(registration.kind for registration in registrations),
    )
    return StartupPlan(
        mode=Mode.RECONCILER,
        reconcilers=registrations,
        leader_election=config.leader_elect,
    )
