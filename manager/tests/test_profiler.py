from __future__ import annotations

import threading
import urllib.error
import urllib.request

from manager.src.health import stop_server
from manager.src.profiler import dump_threads, start_profiler


def test_dump_threads_includes_named_threads() -> None:
    release = threading.Event()
    thread = threading.Thread(target=release.wait, name="reconcile-gcpmachine-0")
    thread.start()
    try:
        dump = dump_threads()
    finally:
        release.set()
        thread.join(timeout=5)

    assert "Thread reconcile-gcpmachine-0" in dump
    assert "Thread MainThread" in dump


def test_profiler_serves_thread_dump() -> None:
    server = start_profiler(("127.0.0.1", 0))
    base_url = f"http://127.0.0.1:{server.server_address[1]}"
    try:
        with urllib.request.urlopen(f"{base_url}/debug/threads", timeout=2) as response:  # noqa: S310
            assert response.status == 200
            assert "Thread profiler" in response.read().decode()
        try:
            urllib.request.urlopen(f"{base_url}/debug/heap", timeout=2)  # noqa: S310
        except urllib.error.HTTPError as exc:
            assert exc.code == 404
        else:
            raise AssertionError("expected 404")
    finally:
        stop_server(server)
