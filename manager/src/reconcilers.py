from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CustomObjectsApi
from kubernetes.client.exceptions import ApiException

from manager.src.dispatch import ObjectKey, ReconcileCancelled, ReconcileContext
from manager.src.events import EVENT_TYPE_NORMAL, EventRecorder

LOGGER = logging.getLogger(__name__)

PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"
INFRASTRUCTURE_GROUP = "infrastructure.cluster.x-k8s.io"

ObjectHandler = Callable[[ReconcileContext, Mapping[str, Any]], None]
Requeue = Callable[[ObjectKey, float], None]


@dataclass(frozen=True)
class ResourceKind:
    """API coordinates of a managed custom resource."""

    kind: str
    group: str
    version: str
    plural: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


GCP_CLUSTER = ResourceKind("GCPCluster", INFRASTRUCTURE_GROUP, "v1alpha4", "gcpclusters")
GCP_MACHINE = ResourceKind("GCPMachine", INFRASTRUCTURE_GROUP, "v1alpha4", "gcpmachines")
DEFAULT_RESOURCE_KINDS: tuple[ResourceKind, ...] = (GCP_CLUSTER, GCP_MACHINE)


def _log_object(ctx: ReconcileContext, obj: Mapping[str, Any]) -> None:
    LOGGER.debug("Observed %s generation %s", ctx.key, obj.get("metadata", {}).get("generation"))


class ObjectReconciler:
    """Generic reconcile entry point for one custom resource kind.

    Fetches the current object, skips deleted and paused objects, and hands
    the rest to ``handler``, where the provider-specific work happens.  On
    failure the key is re-submitted with exponential backoff (5ms doubling up
    to ``max_backoff``) before the error is re-raised for the result sink.
    """

    def __init__(
        self,
        resource: ResourceKind,
        custom_objects_api: CustomObjectsApi,
        recorder: EventRecorder | None = None,
        handler: ObjectHandler = _log_object,
        requeue: Requeue | None = None,
        base_backoff: float = 0.005,
        max_backoff: float = 1000.0,
    ) -> None:
        self.resource = resource
        self.custom_objects_api = custom_objects_api
        self.recorder = recorder
        self.handler = handler
        self.requeue = requeue
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self._failures: dict[ObjectKey, int] = {}
        self._failures_lock = threading.Lock()

    def backoff_for(self, key: ObjectKey) -> float:
        with self._failures_lock:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        return min(self.max_backoff, self.base_backoff * (2 ** (failures - 1)))

    def forget(self, key: ObjectKey) -> None:
        with self._failures_lock:
            self._failures.pop(key, None)

    def _fetch(self, ctx: ReconcileContext, key: ObjectKey) -> Mapping[str, Any] | None:
        try:
            return self.custom_objects_api.get_namespaced_custom_object(
                group=self.resource.group,
                version=self.resource.version,
                namespace=key.namespace,
                plural=self.resource.plural,
                name=key.name,
                _request_timeout=max(ctx.remaining(), 0.001),
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def reconcile(self, ctx: ReconcileContext, key: ObjectKey) -> None:
        try:
            ctx.raise_if_done()
            obj = self._fetch(ctx, key)
            if obj is None:
                LOGGER.info("%s no longer exists; nothing to reconcile", key)
                self.forget(key)
                return

            annotations = obj.get("metadata", {}).get("annotations") or {}
            if PAUSED_ANNOTATION in annotations:
                LOGGER.info("%s is paused; skipping reconcile", key)
                self.forget(key)
                return

            ctx.raise_if_done()
            self.handler(ctx, obj)
        except ReconcileCancelled:
            raise
        except Exception:
            if self.requeue is not None and not ctx.done():
                delay = self.backoff_for(key)
                LOGGER.info("Requeueing %s in %.3fs after failure", key, delay)
                self.requeue(key, delay)
            raise

        self.forget(key)
        if self.recorder is not None:
            self.recorder.event(obj, EVENT_TYPE_NORMAL, "Reconciled", f"{key.kind} reconciled")
