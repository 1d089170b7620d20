from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from types import FrameType

LOGGER = logging.getLogger(__name__)

DrainCallback = Callable[[float], bool | None]


class ShutdownToken:
    """One-shot broadcast cancellation token.

    Quacks like a ``threading.Event`` (``is_set``/``wait``) so every loop can
    keep the ``stop.wait(timeout=...)`` idiom, but can only ever be set through
    :meth:`fire` and never cleared.  A token made by :meth:`derive` cannot
    fire before its parent has.
    """

    def __init__(self, parent: ShutdownToken | None = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    @property
    def reason(self) -> str | None:
        return self._reason

    def fire(self, reason: str) -> bool:
        """Set the token.  Returns True only for the call that actually fired it."""
        if self._parent is not None and not self._parent.is_set():
            LOGGER.warning("Ignoring early stop (%s): shutdown has not started", reason)
            return False
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def derive(self) -> ShutdownToken:
        """Return a token for a component that must outlive the first drain steps."""
        return ShutdownToken(parent=self)

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout=timeout)


class ShutdownLifecycle:
    """Owns the process-wide shutdown token and the ordered drain of components.

    Construct it before anything else and hand ``lifecycle.token`` to every
    component.  Components register a drain callback; :meth:`drain` invokes
    them newest-first with the time left in the grace period, so the things
    started last (watches, workers) stop before what they depend on (the
    lease, the health server).
    """

    def __init__(self) -> None:
        self.token = ShutdownToken()
        self.exit_code = 0
        self._drains: list[tuple[str, DrainCallback]] = []
        self._lock = threading.Lock()
        self._signals_received = 0

    def fire(self, reason: str) -> None:
        if self.token.fire(reason):
            LOGGER.info("Shutdown requested: %s", reason)

    def fail(self, reason: str) -> None:
        """Fire the token and make the process exit non-zero."""
        with self._lock:
            self.exit_code = 1
        if self.token.fire(reason):
            LOGGER.error("Shutting down after failure: %s", reason)
        else:
            LOGGER.error("Failure during shutdown: %s", reason)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        self._signals_received += 1
        if self._signals_received > 1:
            LOGGER.error("Received second signal %d, exiting immediately", signum)
            os._exit(1)
        LOGGER.info("Received signal %d, shutting down", signum)
        self.fire(f"signal {signum}")

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def register(self, name: str, drain: DrainCallback) -> None:
        """Register a callback that stops one component.

        The callback receives the seconds left in the grace period and may
        return ``False`` to report that it did not drain in time.
        """
        with self._lock:
            self._drains.append((name, drain))

    def wait(self, timeout: float | None = None) -> bool:
        return self.token.wait(timeout=timeout)

    def drain(self, grace_period: float) -> bool:
        """Fire the token (if nobody has yet) and stop every registered component.

        Returns True when every component reported drained within
        ``grace_period`` seconds.
        """
        self.fire("drain requested")
        deadline = time.monotonic() + grace_period
        with self._lock:
            drains = list(reversed(self._drains))

        drained = True
        for name, callback in drains:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                result = callback(remaining)
            except Exception:
                LOGGER.exception("Failed to stop %s during shutdown", name)
                drained = False
                continue
            if result is False:
                LOGGER.warning("%s did not drain within the grace period", name)
                drained = False
            else:
                LOGGER.debug("%s drained", name)
        return drained
