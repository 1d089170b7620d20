from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlsplit

Checker = Callable[[], None]


def ping() -> None:
    """Always healthy: proves the server thread is accepting and answering."""


class HealthChecks:
    """Named liveness and readiness checkers.

    A checker returns normally when healthy and raises otherwise.  Checks can
    be added while the server is running.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._healthz: dict[str, Checker] = {}
        self._readyz: dict[str, Checker] = {}

    def add_healthz_check(self, name: str, checker: Checker) -> None:
        with self._lock:
            if name in self._healthz:
                raise ValueError(f"healthz check {name!r} already registered")
            self._healthz[name] = checker

    def add_readyz_check(self, name: str, checker: Checker) -> None:
        with self._lock:
            if name in self._readyz:
                raise ValueError(f"readyz check {name!r} already registered")
            self._readyz[name] = checker

    def checks_for(self, probe: str) -> dict[str, Checker]:
        with self._lock:
            return dict(self._healthz if probe == "healthz" else self._readyz)


def default_checks() -> HealthChecks:
    checks = HealthChecks()
    checks.add_healthz_check("ping", ping)
    checks.add_readyz_check("ping", ping)
    return checks


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness and leadership endpoints."""

    checks: HealthChecks
    leader_event: threading.Event | None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = "text/plain; charset=utf-8"
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _run_checks(self, probe: str, only: str | None, verbose: bool) -> None:
        checks = self.checks.checks_for(probe)
        if only is not None:
            if only not in checks:
                self._respond(404, f"no such {probe} check: {only}".encode())
                return
            checks = {only: checks[only]}

        lines: list[str] = []
        failed = False
        for name, checker in sorted(checks.items()):
            try:
                checker()
                lines.append(f"[+]{name} ok")
            except Exception as exc:
                failed = True
                lines.append(f"[-]{name} failed: {exc}")
                logging.getLogger("manager.health").warning(
                    "%s check %s failed: %s", probe, name, exc
                )

        if failed:
            lines.append(f"{probe} check failed")
            self._respond(500, "\n".join(lines).encode())
        elif verbose:
            lines.append(f"{probe} check passed")
            self._respond(200, "\n".join(lines).encode())
        else:
            self._respond(200, b"ok")

    def do_GET(self) -> None:
        parts = urlsplit(self.path)
        verbose = "verbose" in parts.query
        segments = [segment for segment in parts.path.split("/") if segment]
        if not segments:
            self._respond(404)
            return

        probe = segments[0]
        if probe in {"healthz", "readyz"} and len(segments) <= 2:
            self._run_checks(probe, segments[1] if len(segments) == 2 else None, verbose)
        elif probe == "leadz" and len(segments) == 1:
            if self.leader_event is None or self.leader_event.is_set():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("manager.health").debug(fmt, *args)


class _MetricsHandler(BaseHTTPRequestHandler):
    """HTTP handler exposing Prometheus metrics on ``/metrics``."""

    def do_GET(self) -> None:
        if urlsplit(self.path).path != "/metrics":
            self.send_response(404)
            self.end_headers()
            return
        from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

        output = generate_latest()
        self.send_response(200)
        self.send_header("Content-Type", CONTENT_TYPE_LATEST)
        self.send_header("Content-Length", str(len(output)))
        self.end_headers()
        self.wfile.write(output)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("manager.metrics").debug(fmt, *args)


def make_health_handler(
    checks: HealthChecks, leader: threading.Event | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given checks.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.checks = checks
    _BoundHealthHandler.leader_event = leader
    return _BoundHealthHandler


def _serve(
    address: tuple[str, int], handler_class: type[BaseHTTPRequestHandler], name: str
) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer(address, handler_class)
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name=name, daemon=True).start()
    host, port = server.server_address[:2]
    logging.getLogger(__name__).info("%s listening on %s:%d", name, host, port)
    return server


def start_health_server(
    address: tuple[str, int],
    checks: HealthChecks | None = None,
    leader: threading.Event | None = None,
) -> ThreadingHTTPServer:
    """Start the liveness/readiness server in a daemon thread and return it.

    Readiness never depends on leadership: a standby replica is ready to take
    over.  ``/leadz`` reports leadership for operators only.
    """
    handler_class = make_health_handler(checks or default_checks(), leader=leader)
    return _serve(address, handler_class, "health-server")


def start_metrics_server(address: tuple[str, int]) -> ThreadingHTTPServer:
    """Start the Prometheus metrics server in a daemon thread and return it."""
    return _serve(address, _MetricsHandler, "metrics-server")


def stop_server(server: ThreadingHTTPServer) -> None:
    server.shutdown()
    server.server_close()
