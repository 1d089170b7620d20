from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException

from manager.src.dispatch import ObjectKey, ReconcileCancelled, ReconcileContext
from manager.src.reconcilers import GCP_MACHINE, PAUSED_ANNOTATION, ObjectReconciler

KEY = ObjectKey("GCPMachine", "default", "machine-a")


def _machine(annotations: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "apiVersion": GCP_MACHINE.api_version,
        "kind": "GCPMachine",
        "metadata": {"name": "machine-a", "namespace": "default", "annotations": annotations},
    }


def _make_reconciler(
    api: Any = None, handler: Any = None, requeue: Any = None
) -> tuple[ObjectReconciler, MagicMock]:
    recorder = MagicMock()
    kwargs: dict[str, Any] = {"recorder": recorder, "requeue": requeue}
    if handler is not None:
        kwargs["handler"] = handler
    return ObjectReconciler(GCP_MACHINE, api or MagicMock(), **kwargs), recorder


def test_reconciles_existing_object_and_records_event() -> None:
    api = MagicMock()
    api.get_namespaced_custom_object.return_value = _machine()
    handler = MagicMock()
    reconciler, recorder = _make_reconciler(api, handler=handler)

    reconciler.reconcile(ReconcileContext(KEY, timeout=30), KEY)

    handler.assert_called_once()
    kwargs = api.get_namespaced_custom_object.call_args.kwargs
    assert kwargs["plural"] == "gcpmachines"
    assert kwargs["name"] == "machine-a"
    assert 0 < kwargs["_request_timeout"] <= 30
    recorder.event.assert_called_once()
    assert recorder.event.call_args.args[2] == "Reconciled"


def test_missing_object_is_a_no_op() -> None:
    api = MagicMock()
    api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    handler = MagicMock()
    reconciler, recorder = _make_reconciler(api, handler=handler)

    reconciler.reconcile(ReconcileContext(KEY, timeout=30), KEY)

    handler.assert_not_called()
    recorder.event.assert_not_called()


def test_paused_object_is_skipped() -> None:
    api = MagicMock()
    api.get_namespaced_custom_object.return_value = _machine({PAUSED_ANNOTATION: ""})
    handler = MagicMock()
    reconciler, _ = _make_reconciler(api, handler=handler)

    reconciler.reconcile(ReconcileContext(KEY, timeout=30), KEY)

    handler.assert_not_called()


def test_failure_requeues_with_exponential_backoff_and_reraises() -> None:
    api = MagicMock()
    api.get_namespaced_custom_object.return_value = _machine()
    requeue = MagicMock()
    reconciler, recorder = _make_reconciler(
        api, handler=MagicMock(side_effect=RuntimeError("quota exceeded")), requeue=requeue
    )

    for _ in range(3):
        with pytest.raises(RuntimeError, match="quota exceeded"):
            reconciler.reconcile(ReconcileContext(KEY, timeout=30), KEY)

    delays = [call.args[1] for call in requeue.call_args_list]
    assert delays == pytest.approx([0.005, 0.01, 0.02])
    recorder.event.assert_not_called()


def test_success_resets_backoff() -> None:
    reconciler, _ = _make_reconciler()
    reconciler.backoff_for(KEY)
    reconciler.backoff_for(KEY)

    reconciler.forget(KEY)

    assert reconciler.backoff_for(KEY) == pytest.approx(0.005)


def test_backoff_is_capped() -> None:
    reconciler = ObjectReconciler(GCP_MACHINE, MagicMock(), max_backoff=0.02)

    delays = [reconciler.backoff_for(KEY) for _ in range(6)]

    assert max(delays) == pytest.approx(0.02)


def test_server_errors_propagate() -> None:
    api = MagicMock()
    api.get_namespaced_custom_object.side_effect = ApiException(status=500, reason="Boom")
    requeue = MagicMock()
    reconciler, _ = _make_reconciler(api, requeue=requeue)

    with pytest.raises(ApiException):
        reconciler.reconcile(ReconcileContext(KEY, timeout=30), KEY)
    requeue.assert_called_once()


def test_cancelled_context_is_not_requeued() -> None:
    api = MagicMock()
    requeue = MagicMock()
    reconciler, _ = _make_reconciler(api, requeue=requeue)
    ctx = ReconcileContext(KEY, timeout=30)
    ctx.cancel("shutdown")

    with pytest.raises(ReconcileCancelled, match="shutdown"):
        reconciler.reconcile(ctx, KEY)

    api.get_namespaced_custom_object.assert_not_called()
    requeue.assert_not_called()
