"""Request dispatcher: the bounded, cancellable accept loop."""

import logging
import threading
import time
from http import HTTPStatus
from typing import Callable, Optional

from basichttp.bootstrap.config import (
    ACCEPT_POLL_SECONDS,
    ALL_INTERFACES,
    DEFAULT_MAX_CONNECTIONS,
    DEFAULT_SOCKET_TIMEOUT,
    ServerSettings,
)
from basichttp.domain.correlation_id import (
    clear_correlation_id,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from basichttp.domain.errors import ListenerClosed
from basichttp.domain.http_types import (
    HttpListenerContext,
    HttpRequest,
    HttpResponse,
)
from basichttp.lifecycle.state import CancellationToken, ServerLifecycle
from basichttp.pipeline.validation import ensure_not_none
from basichttp.transport.listener import ClientConnection, HttpListener
from basichttp.transport.permit_pool import PermitPool

ACCEPT_LOGGER = get_logger("transport.accept")
WORKER_LOGGER = get_logger("transport.worker")

RequestHandler = Callable[[HttpRequest, HttpResponse], None]
ListenerFactory = Callable[[ServerSettings], HttpListener]


class HttpServer:
    """Embeddable HTTP server bounding how many handlers run at once.

    ``start`` runs the accept loop on the calling thread until ``stop`` is
    called, the cancellation token fires, or accepting fails. Each request is
    handed to ``handler(request, response)`` on its own thread; the handler
    owns the response and must close it.
    """

    def __init__(
        self,
        port: int,
        use_https: bool = False,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
        host: str = ALL_INTERFACES,
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
        socket_timeout: float = DEFAULT_SOCKET_TIMEOUT,
        listener_factory: ListenerFactory = HttpListener,
    ) -> None:
        # pylint: disable=too-many-arguments
        self.settings = ServerSettings(
            port=port,
            use_https=use_https,
            max_connections=max_connections,
            host=host,
            cert_file=cert_file,
            key_file=key_file,
            socket_timeout=socket_timeout,
        )
        self._listener_factory = listener_factory
        self._lifecycle = ServerLifecycle()
        self._state_lock = threading.RLock()
        self._cancellation: Optional[CancellationToken] = None
        self._listener: Optional[HttpListener] = None
        self._permits: Optional[PermitPool] = None

    @classmethod
    def from_settings(
        cls, settings: ServerSettings, listener_factory: ListenerFactory = HttpListener
    ) -> "HttpServer":
        return cls(
            port=settings.port,
            use_https=settings.use_https,
            max_connections=settings.max_connections,
            host=settings.host,
            cert_file=settings.cert_file,
            key_file=settings.key_file,
            socket_timeout=settings.socket_timeout,
            listener_factory=listener_factory,
        )

    @property
    def prefix(self) -> str:
        return self.settings.prefix

    @property
    def max_connections(self) -> int:
        return self.settings.max_connections

    @property
    def is_listening(self) -> bool:
        return self._lifecycle.is_listening()

    @property
    def address(self) -> Optional[tuple]:
        """Bound socket address while listening (useful with port 0)."""
        listener = self._listener
        return listener.address if listener is not None else None

    @property
    def active_handlers(self) -> int:
        return self._lifecycle.active_worker_count()

    @property
    def permits_in_use(self) -> int:
        permits = self._permits
        return permits.in_use if permits is not None else 0

    def start(
        self, handler: RequestHandler, cancellation: Optional[CancellationToken] = None
    ) -> None:
        """Bind and serve until stopped; accept failures propagate from here."""
        ensure_not_none(handler, "handler")
        token = cancellation if cancellation is not None else CancellationToken()
        with self._state_lock:
            self._lifecycle.begin_listening()
            self._cancellation = token
        listener = self._listener_factory(self.settings)
        try:
            listener.start()
        except BaseException:
            with self._state_lock:
                self._cancellation = None
            self._lifecycle.mark_stopped()
            raise

        permits = PermitPool(self.settings.max_connections)
        with self._state_lock:
            self._listener = listener
            self._permits = permits
        registration = token.register(listener.close)

        ACCEPT_LOGGER.info(
            "Server listening for connections",
            extra={
                "event": "server_listening",
                "prefix": self.settings.prefix,
                "max_connections": self.settings.max_connections,
                "tls": self.settings.use_https,
            },
        )
        try:
            self._accept_loop(listener, permits, handler, token)
        finally:
            registration.unregister()
            listener.close()
            with self._state_lock:
                self._cancellation = None
                self._listener = None
            self._lifecycle.mark_stopped()
            ACCEPT_LOGGER.info(
                "Server stopped accepting connections",
                extra={
                    "event": "server_stopped",
                    "active_handlers": self._lifecycle.active_worker_count(),
                },
            )

    def stop(self) -> None:
        """Request shutdown; a no-op when the server is not listening."""
        with self._state_lock:
            token = self._cancellation
        if token is None or token.is_cancelled:
            return
        ACCEPT_LOGGER.info("Stop requested", extra={"event": "stop_requested"})
        token.cancel()

    def wait_for_handlers(self, timeout: float) -> bool:
        """Wait for in-flight handlers; ``stop`` alone does not drain them."""
        return self._lifecycle.wait_for_workers(timeout)

    def _accept_loop(
        self,
        listener: HttpListener,
        permits: PermitPool,
        handler: RequestHandler,
        token: CancellationToken,
    ) -> None:
        while not token.is_cancelled:
            try:
                connection = listener.accept()
            except ListenerClosed:
                break
            except Exception:
                if token.is_cancelled:
                    break
                ACCEPT_LOGGER.error(
                    "Accepting connections failed",
                    extra={"event": "accept_error"},
                    exc_info=True,
                )
                raise

            if not self._acquire_permit(permits, token):
                connection.abort()
                break
            self._dispatch(handler, connection, permits)

    @staticmethod
    def _acquire_permit(permits: PermitPool, token: CancellationToken) -> bool:
        if permits.acquire(timeout=0):
            return True
        ACCEPT_LOGGER.debug(
            "All permits in use, waiting for a handler to finish",
            extra={"event": "permit_wait", "in_use": permits.in_use},
        )
        while not permits.acquire(timeout=ACCEPT_POLL_SECONDS):
            if token.is_cancelled:
                return False
        return True

    def _dispatch(
        self,
        handler: RequestHandler,
        connection: ClientConnection,
        permits: PermitPool,
    ) -> None:
        thread = threading.Thread(
            target=self._run_connection,
            args=(handler, connection, permits),
            daemon=False,
        )
        self._lifecycle.register_worker(thread)
        try:
            thread.start()
        except BaseException:
            self._lifecycle.cleanup_worker(thread)
            permits.release()
            connection.abort()
            raise

    def _run_connection(
        self,
        handler: RequestHandler,
        connection: ClientConnection,
        permits: PermitPool,
    ) -> None:
        set_correlation_id(generate_correlation_id())
        holding_permit = True
        try:
            context = connection.read_context()
            if context is None:
                return
            if context.request.is_upgrade_request:
                permits.release()
                holding_permit = False
                self._reject_upgrade(context, connection.client)
                return
            self._run_handler(handler, context, connection.client)
        finally:
            if holding_permit:
                permits.release()
            self._lifecycle.cleanup_worker(threading.current_thread())
            clear_correlation_id()

    @staticmethod
    def _reject_upgrade(context: HttpListenerContext, client: str) -> None:
        ACCEPT_LOGGER.info(
            "Protocol upgrade rejected",
            extra={
                "event": "upgrade_rejected",
                "client": client,
                "route": context.request.path,
            },
        )
        context.response.status_code = int(HTTPStatus.BAD_REQUEST)
        context.response.close()

    @staticmethod
    def _run_handler(
        handler: RequestHandler, context: HttpListenerContext, client: str
    ) -> None:
        request, response = context.request, context.response
        started = time.monotonic()
        if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
            WORKER_LOGGER.debug(
                "Request processing started",
                extra={
                    "event": "request_started",
                    "client": client,
                    "method": request.method,
                    "route": request.path,
                },
            )
        try:
            handler(request, response)
        except Exception as error:  # pylint: disable=broad-except
            WORKER_LOGGER.error(
                "Request handler failed",
                extra={
                    "event": "handler_failed",
                    "client": client,
                    "route": request.path,
                    "error_type": type(error).__name__,
                    "error": str(error),
                },
                exc_info=True,
            )
        finally:
            if not response.closed:
                WORKER_LOGGER.warning(
                    "Handler returned without closing the response",
                    extra={"event": "response_aborted", "client": client},
                )
                response.abort()
            WORKER_LOGGER.debug(
                "Request processing complete",
                extra={
                    "event": "request_complete",
                    "client": client,
                    "status_code": response.status_code,
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                },
            )
