from __future__ import annotations

import base64
import enum
import json
import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from manager.src.metrics import METRICS
from manager.src.reconcilers import GCP_MACHINE, INFRASTRUCTURE_GROUP, ResourceKind

LOGGER = logging.getLogger(__name__)

GCP_MACHINE_TEMPLATE = ResourceKind(
    "GCPMachineTemplate", INFRASTRUCTURE_GROUP, "v1alpha4", "gcpmachinetemplates"
)
WEBHOOK_RESOURCE_KINDS: tuple[ResourceKind, ...] = (GCP_MACHINE_TEMPLATE, GCP_MACHINE)


class WebhookType(enum.Enum):
    MUTATE = "mutate"
    VALIDATE = "validate"


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool = True
    message: str | None = None
    patch: list[dict[str, Any]] | None = None


AdmissionHandler = Callable[[Mapping[str, Any]], AdmissionDecision]


def allow(request: Mapping[str, Any]) -> AdmissionDecision:
    return AdmissionDecision(allowed=True)


@dataclass(frozen=True)
class WebhookRegistration:
    """One admission endpoint for one kind."""

    resource: ResourceKind
    webhook_type: WebhookType
    handler: AdmissionHandler = allow

    @property
    def name(self) -> str:
        return f"{self.webhook_type.value}-{self.resource.kind.lower()}"

    @property
    def path(self) -> str:
        group = self.resource.group.replace(".", "-")
        return (
            f"/{self.webhook_type.value}-{group}-{self.resource.version}-"
            f"{self.resource.kind.lower()}"
        )


def default_webhook_registrations(
    resources: Sequence[ResourceKind] = WEBHOOK_RESOURCE_KINDS,
) -> list[WebhookRegistration]:
    return [
        WebhookRegistration(resource=resource, webhook_type=webhook_type)
        for resource in resources
        for webhook_type in (WebhookType.MUTATE, WebhookType.VALIDATE)
    ]


def admission_review_response(
    review: Mapping[str, Any], decision: AdmissionDecision
) -> dict[str, Any]:
    """Wrap ``decision`` in an ``AdmissionReview`` answering ``review``'s request uid."""
    request = review.get("request") or {}
    response: dict[str, Any] = {"uid": request.get("uid", ""), "allowed": decision.allowed}
    if decision.message:
        response["status"] = {
            "message": decision.message,
            "code": 200 if decision.allowed else 403,
        }
    if decision.patch:
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(json.dumps(decision.patch).encode()).decode()
    return {
        "apiVersion": review.get("apiVersion", "admission.k8s.io/v1"),
        "kind": "AdmissionReview",
        "response": response,
    }


def create_webhook_app(registrations: Sequence[WebhookRegistration]) -> FastAPI:
    """Create the admission webhook application with one route per registration."""
    logger = logging.getLogger(__name__)
    app = FastAPI(title="capg-manager-webhooks")
    app.state.webhooks = [registration.name for registration in registrations]

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    def _add_route(registration: WebhookRegistration) -> None:
        async def admit(request: Request) -> JSONResponse:
            try:
                review = await request.json()
            except ValueError:
                return JSONResponse(status_code=400, content={"error": "invalid_json"})
            if not isinstance(review, dict) or not isinstance(review.get("request"), dict):
                return JSONResponse(
                    status_code=400, content={"error": "missing_admission_request"}
                )
            decision = registration.handler(review["request"])
            METRICS.webhook_requests_total.labels(
                webhook=registration.name, allowed=str(decision.allowed).lower()
            ).inc()
            return JSONResponse(content=admission_review_response(review, decision))

        app.add_api_route(registration.path, admit, methods=["POST"], name=registration.name)
        logger.info("Registered webhook %s at %s", registration.name, registration.path)

    seen: set[str] = set()
    for registration in registrations:
        if registration.path in seen:
            raise ValueError(f"webhook path {registration.path} registered twice")
        seen.add(registration.path)
        _add_route(registration)

    return app


class WebhookServer:
    """Serves the webhook app with uvicorn on a background thread.

    TLS is enabled when ``tls.crt`` and ``tls.key`` exist in ``cert_dir``.
    Signal handling stays with the manager's shutdown lifecycle.
    """

    def __init__(
        self,
        app: FastAPI,
        port: int,
        cert_dir: str,
        host: str = "0.0.0.0",  # noqa: S104
    ) -> None:
        self.app = app
        self.host = host
        self.port = port
        self.cert_dir = Path(cert_dir)
        self._server: Any = None
        self._thread: threading.Thread | None = None

    def _tls_files(self) -> tuple[str, str] | None:
        cert = self.cert_dir / "tls.crt"
        key = self.cert_dir / "tls.key"
        if cert.is_file() and key.is_file():
            return str(cert), str(key)
        return None

    def start(self, ready_timeout: float = 10.0) -> None:
        import uvicorn

        tls = self._tls_files()
        if tls is None:
            LOGGER.warning(
                "No serving certificate in %s; webhook server runs without TLS", self.cert_dir
            )
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            ssl_certfile=tls[0] if tls else None,
            ssl_keyfile=tls[1] if tls else None,
        )
        server = uvicorn.Server(config)
        server.install_signal_handlers = lambda: None
        self._server = server
        self._thread = threading.Thread(target=server.run, name="webhook-server", daemon=True)
        self._thread.start()

        deadline = time.monotonic() + ready_timeout
        while not server.started:
            if not self._thread.is_alive():
                raise RuntimeError(f"webhook server failed to start on port {self.port}")
            if time.monotonic() > deadline:
                raise RuntimeError(f"webhook server did not start within {ready_timeout}s")
            time.sleep(0.05)
        LOGGER.info("Webhook server listening on %s:%d", self.host, self.port)

    def stop(self, timeout: float) -> bool:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()
