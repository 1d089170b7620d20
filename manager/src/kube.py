from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from kubernetes import client, config
from kubernetes.client import CoordinationV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from manager.src.config import ConfigError

LOGGER = logging.getLogger(__name__)

SERVICE_ACCOUNT_NAMESPACE_FILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")

NamespaceLookup = Callable[[], str | None]


@dataclass(frozen=True)
class KubeClients:
    """API clients shared by every component, built once from the active kube configuration."""

    coordination: CoordinationV1Api
    core: CoreV1Api
    custom_objects: CustomObjectsApi


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the coordination, core and custom-object API clients."""
    return KubeClients(
        coordination=client.CoordinationV1Api(),
        core=client.CoreV1Api(),
        custom_objects=client.CustomObjectsApi(),
    )


def namespace_from_env(env: Mapping[str, str] | None = None) -> str | None:
    values = env if env is not None else os.environ
    return values.get("POD_NAMESPACE") or None


def namespace_from_service_account(path: Path = SERVICE_ACCOUNT_NAMESPACE_FILE) -> str | None:
    try:
        namespace = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return namespace or None


def namespace_from_kubeconfig() -> str | None:
    try:
        _, active_context = config.list_kube_config_contexts()
    except (ConfigException, OSError):
        return None
    if not active_context:
        return None
    return active_context.get("context", {}).get("namespace") or None


DEFAULT_NAMESPACE_LOOKUPS: tuple[NamespaceLookup, ...] = (
    namespace_from_env,
    namespace_from_service_account,
    namespace_from_kubeconfig,
)


def discover_namespace(lookups: Sequence[NamespaceLookup] = DEFAULT_NAMESPACE_LOOKUPS) -> str:
    """Return the namespace this process runs in, trying each lookup in order.

    Raises :class:`ConfigError` when none of them yields a namespace; leader
    election cannot pick a lease location on its own.
    """
    for lookup in lookups:
        namespace = lookup()
        if namespace:
            LOGGER.info("Discovered leader election namespace %s", namespace)
            return namespace
    raise ConfigError(
        "unable to find leader election namespace: not running in-cluster, "
        "please specify --leader-election-namespace"
    )
