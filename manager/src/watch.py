from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import CustomObjectsApi
from kubernetes.client.exceptions import ApiException

from manager.src.config import WATCH_FILTER_LABEL
from manager.src.dispatch import ObjectKey
from manager.src.metrics import METRICS
from manager.src.reconcilers import ResourceKind

LOGGER = logging.getLogger(__name__)

Submit = Callable[[ObjectKey], bool]
FatalHandler = Callable[[str], None]


class ObjectWatcher:
    """List-then-watch source feeding one kind's keys into the dispatch limiter.

    1. Lists the kind (one namespace or all) and submits every object.
    2. Streams a watch from the list's ``resourceVersion`` and submits the
       key of every ``ADDED``/``MODIFIED``/``DELETED`` event.
    3. Re-lists and resubmits everything every ``sync_period`` seconds so
       objects are reconciled periodically even without changes.
    4. On ``410 Gone`` re-lists immediately and resumes.
    5. On transient errors backs off with jitter, capped at 30 s.

    ``401``/``403`` mean missing RBAC: the watcher reports them through
    ``on_fatal`` and exits rather than retrying forever.
    """

    def __init__(
        self,
        resource: ResourceKind,
        custom_objects_api: CustomObjectsApi,
        submit: Submit,
        stop_token: Any,
        namespace: str = "",
        watch_filter: str = "",
        sync_period: float = 600.0,
        on_fatal: FatalHandler | None = None,
    ) -> None:
        self.resource = resource
        self.custom_objects_api = custom_objects_api
        self.submit = submit
        self.stop_token = stop_token
        self.namespace = namespace
        self.label_selector = f"{WATCH_FILTER_LABEL}={watch_filter}" if watch_filter else None
        self.sync_period = sync_period
        self.on_fatal = on_fatal
        self.synced = threading.Event()
        self._stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def _should_stop(self) -> bool:
        return self._stop.is_set() or self.stop_token.is_set()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "group": self.resource.group,
            "version": self.resource.version,
            "plural": self.resource.plural,
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    def _list_function(self) -> Callable[..., Any]:
        if self.namespace:
            return self.custom_objects_api.list_namespaced_custom_object
        return self.custom_objects_api.list_cluster_custom_object

    def _key_for(self, obj: Any) -> ObjectKey | None:
        if not isinstance(obj, dict):
            return None
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            return None
        return ObjectKey(self.resource.kind, metadata.get("namespace") or "", name)

    def _submit_object(self, obj: Any) -> None:
        key = self._key_for(obj)
        if key is not None:
            self.submit(key)

    def _list_and_submit(self) -> str | None:
        listing = self._list_function()(**self._list_kwargs())
        for item in listing.get("items") or []:
            self._submit_object(item)
        return (listing.get("metadata") or {}).get("resourceVersion")

    def _fatal(self, stage: str, status: int) -> None:
        message = (
            f"Kubernetes API denied {stage} of {self.resource.plural} (status={status}). "
            "Check manager RBAC and service account permissions."
        )
        LOGGER.error(message)
        METRICS.watch_errors_total.labels(kind=self.resource.kind).inc()
        self.synced.clear()
        if self.on_fatal is not None:
            self.on_fatal(message)

    def _backoff(self, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._wait(jittered)
        return min(backoff_seconds * 2, 30)

    def _wait(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while not self._should_stop():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop.wait(timeout=min(remaining, 0.5))

    def run_forever(self) -> None:
        """Main loop: list, watch, resync until stopped."""
        resource_version: str | None = None
        last_list = 0.0
        backoff_seconds = 1.0

        while not self._should_stop():
            if resource_version is None or time.monotonic() - last_list >= self.sync_period:
                try:
                    resource_version = self._list_and_submit()
                    last_list = time.monotonic()
                    self.synced.set()
                    backoff_seconds = 1.0
                    LOGGER.info(
                        "Listed %s; watching from resourceVersion %s",
                        self.resource.plural,
                        resource_version,
                    )
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self._fatal("list", exc.status)
                        return
                    LOGGER.exception("Listing %s failed", self.resource.plural)
                    METRICS.watch_errors_total.labels(kind=self.resource.kind).inc()
                    resource_version = None
                    backoff_seconds = self._backoff(backoff_seconds)
                    continue
                except Exception:
                    LOGGER.exception("Unexpected error listing %s", self.resource.plural)
                    METRICS.watch_errors_total.labels(kind=self.resource.kind).inc()
                    resource_version = None
                    backoff_seconds = self._backoff(backoff_seconds)
                    continue

            until_resync = self.sync_period - (time.monotonic() - last_list)
            timeout_seconds = max(1, min(300, math.ceil(until_resync)))
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                stream = watcher.stream(
                    self._list_function(),
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                    **self._list_kwargs(),
                )
                for event in stream:
                    if self._should_stop():
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        code = obj.get("code") if isinstance(obj, dict) else None
                        raise ApiException(status=code or 500, reason="watch error event")
                    if isinstance(obj, dict):
                        version = (obj.get("metadata") or {}).get("resourceVersion")
                        if version:
                            resource_version = version
                    if event_type in {"ADDED", "MODIFIED", "DELETED"}:
                        self._submit_object(obj)
                backoff_seconds = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    LOGGER.warning(
                        "Watch of %s expired; re-listing", self.resource.plural
                    )
                    resource_version = None
                    continue
                if exc.status in {401, 403}:
                    self._fatal("watch", exc.status)
                    return
                LOGGER.exception("Kubernetes API watch error for %s", self.resource.plural)
                METRICS.watch_errors_total.labels(kind=self.resource.kind).inc()
                backoff_seconds = self._backoff(backoff_seconds)
            except Exception:
                LOGGER.exception("Unexpected watch error for %s", self.resource.plural)
                METRICS.watch_errors_total.labels(kind=self.resource.kind).inc()
                backoff_seconds = self._backoff(backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run_forever, name=f"watch-{self.resource.plural}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float) -> bool:
        """Interrupt any open watch stream and wait for the loop to exit."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()
