"""Server lifecycle state, cancellation tokens and handler thread tracking."""

import enum
import threading
import time
from typing import Callable, Optional

from basichttp.domain.correlation_id import get_logger
from basichttp.domain.errors import AlreadyStarted

LIFECYCLE_LOGGER = get_logger("lifecycle")


class ServerState(enum.Enum):
    STOPPED = "stopped"
    LISTENING = "listening"


class CancellationRegistration:
    """Handle returned by ``CancellationToken.register``."""

    def __init__(self, token: "CancellationToken", callback: Callable[[], None]):
        self._token = token
        self._callback = callback

    def unregister(self) -> None:
        self._token._remove(self._callback)  # pylint: disable=protected-access


class CancellationToken:
    """Cooperative cancellation signal shared between a host and a server.

    Callbacks run once, on the thread that calls ``cancel``. Registering on an
    already-cancelled token runs the callback immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def register(self, callback: Callable[[], None]) -> CancellationRegistration:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return CancellationRegistration(self, callback)
        callback()
        return CancellationRegistration(self, callback)

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pylint: disable=broad-except
                LIFECYCLE_LOGGER.exception(
                    "Cancellation callback failed",
                    extra={"event": "cancellation_callback_failed"},
                )

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


class ServerLifecycle:
    """Guards the Stopped/Listening transitions and tracks handler threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = ServerState.STOPPED
        self._workers: set[threading.Thread] = set()

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    def is_listening(self) -> bool:
        return self.state is ServerState.LISTENING

    def begin_listening(self) -> None:
        """Move to LISTENING, raising AlreadyStarted if already there."""
        with self._lock:
            if self._state is ServerState.LISTENING:
                raise AlreadyStarted("Server already started")
            self._state = ServerState.LISTENING
        LIFECYCLE_LOGGER.debug("State changed", extra={"event": "state_listening"})

    def mark_stopped(self) -> None:
        with self._lock:
            if self._state is ServerState.STOPPED:
                return
            self._state = ServerState.STOPPED
        LIFECYCLE_LOGGER.debug("State changed", extra={"event": "state_stopped"})

    def register_worker(self, thread: threading.Thread) -> None:
        with self._lock:
            self._workers.add(thread)

    def cleanup_worker(self, thread: threading.Thread) -> None:
        with self._lock:
            self._workers.discard(thread)

    def active_worker_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def wait_for_workers(self, timeout: float) -> bool:
        """Join tracked handler threads, returning False if the timeout expires.

        Workers are registered before they start and removed by their own
        cleanup, so a registered thread that has not started yet still counts.
        """
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                active_workers = list(self._workers)
            if not active_workers:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LIFECYCLE_LOGGER.warning(
                    "Shutdown timeout exceeded",
                    extra={
                        "event": "drain_timeout",
                        "active_handlers": len(active_workers),
                    },
                )
                return False
            for worker in active_workers:
                if worker.ident is None:
                    time.sleep(min(0.01, remaining))
                else:
                    worker.join(timeout=min(0.1, remaining))
                if time.monotonic() >= deadline:
                    break
