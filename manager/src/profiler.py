from __future__ import annotations

import logging
import sys
import threading
import traceback
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlsplit

LOGGER = logging.getLogger(__name__)


def dump_threads() -> str:
    """Return a stack trace of every live thread, newest frame last."""
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    sections: list[str] = []
    for ident, frame in sys._current_frames().items():  # noqa: SLF001
        header = f"Thread {names.get(ident, '<unknown>')} (ident={ident}):"
        sections.append(header + "\n" + "".join(traceback.format_stack(frame)))
    return "\n".join(sections)


class _ProfilerHandler(BaseHTTPRequestHandler):
    """Diagnostic endpoints, bound to a loopback address in production."""

    def do_GET(self) -> None:
        path = urlsplit(self.path).path
        if path == "/debug/threads":
            body = dump_threads().encode()
            self.send_response(200)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_profiler(address: tuple[str, int]) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer(address, _ProfilerHandler)
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="profiler", daemon=True).start()
    LOGGER.info("Profiler listening for requests on %s:%d", *server.server_address[:2])
    return server
