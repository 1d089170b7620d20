from __future__ import annotations

import base64
import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from manager.src.reconcilers import GCP_MACHINE
from manager.src.webhooks import (
    AdmissionDecision,
    WebhookRegistration,
    WebhookType,
    create_webhook_app,
    default_webhook_registrations,
)

MUTATE_MACHINE = "/mutate-infrastructure-cluster-x-k8s-io-v1alpha4-gcpmachine"
VALIDATE_MACHINE = "/validate-infrastructure-cluster-x-k8s-io-v1alpha4-gcpmachine"
MUTATE_TEMPLATE = "/mutate-infrastructure-cluster-x-k8s-io-v1alpha4-gcpmachinetemplate"
VALIDATE_TEMPLATE = "/validate-infrastructure-cluster-x-k8s-io-v1alpha4-gcpmachinetemplate"


def _review(uid: str = "b7f1c2de") -> dict[str, Any]:
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": "infrastructure.cluster.x-k8s.io", "version": "v1alpha4", "kind": "GCPMachine"},
            "operation": "CREATE",
            "object": {"metadata": {"name": "machine-a", "namespace": "default"}},
        },
    }


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_webhook_app(default_webhook_registrations()), raise_server_exceptions=False)


def test_openapi_contains_every_webhook_path(client: TestClient) -> None:
    schema = client.get("/openapi.json")
    assert schema.status_code == 200
    paths = schema.json()["paths"]
    for path in (MUTATE_MACHINE, VALIDATE_MACHINE, MUTATE_TEMPLATE, VALIDATE_TEMPLATE):
        assert "post" in paths[path]


@pytest.mark.parametrize("path", [MUTATE_MACHINE, VALIDATE_MACHINE, MUTATE_TEMPLATE, VALIDATE_TEMPLATE])
def test_default_webhooks_allow_and_echo_uid(client: TestClient, path: str) -> None:
    response = client.post(path, json=_review(uid="req-42"))

    assert response.status_code == 200
    body = response.json()
    assert body["apiVersion"] == "admission.k8s.io/v1"
    assert body["kind"] == "AdmissionReview"
    assert body["response"] == {"uid": "req-42", "allowed": True}


def test_invalid_json_is_rejected(client: TestClient) -> None:
    response = client.post(
        VALIDATE_MACHINE, content=b"{not json", headers={"content-type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json() == {"error": "invalid_json"}


def test_review_without_request_is_rejected(client: TestClient) -> None:
    response = client.post(VALIDATE_MACHINE, json={"kind": "AdmissionReview"})

    assert response.status_code == 400
    assert response.json() == {"error": "missing_admission_request"}


def test_webhooks_only_accept_post(client: TestClient) -> None:
    assert client.get(VALIDATE_MACHINE).status_code == 405


def test_unknown_path_contract(client: TestClient) -> None:
    response = client.post("/validate-infrastructure-cluster-x-k8s-io-v1alpha4-gcpcluster", json=_review())

    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found"}


def test_denial_and_patch_are_encoded() -> None:
    patch = [{"op": "add", "path": "/spec/instanceType", "value": "n1-standard-2"}]
    registrations = [
        WebhookRegistration(
            GCP_MACHINE, WebhookType.MUTATE, handler=lambda request: AdmissionDecision(patch=patch)
        ),
        WebhookRegistration(
            GCP_MACHINE,
            WebhookType.VALIDATE,
            handler=lambda request: AdmissionDecision(
                allowed=False, message="spec.instanceType is immutable"
            ),
        ),
    ]
    client = TestClient(create_webhook_app(registrations))

    mutated = client.post(MUTATE_MACHINE, json=_review()).json()["response"]
    assert mutated["patchType"] == "JSONPatch"
    assert json.loads(base64.b64decode(mutated["patch"])) == patch

    denied = client.post(VALIDATE_MACHINE, json=_review()).json()["response"]
    assert denied["allowed"] is False
    assert denied["status"] == {"message": "spec.instanceType is immutable", "code": 403}


def test_handler_failure_returns_standard_error_body() -> None:
    def broken(request: Any) -> AdmissionDecision:
        raise RuntimeError("boom")

    client = TestClient(
        create_webhook_app([WebhookRegistration(GCP_MACHINE, WebhookType.VALIDATE, handler=broken)]),
        raise_server_exceptions=False,
    )

    response = client.post(VALIDATE_MACHINE, json=_review())

    assert response.status_code == 500
    assert response.json() == {
        "error": "internal_server_error",
        "detail": "An unexpected error occurred.",
    }


def test_duplicate_paths_are_rejected() -> None:
    registration = WebhookRegistration(GCP_MACHINE, WebhookType.VALIDATE)

    with pytest.raises(ValueError, match="registered twice"):
        create_webhook_app([registration, registration])
