"""Listener primitive: accepts connections and parses HTTP/1.x request heads."""

import io
import logging
import socket
import ssl
import threading
from http import HTTPStatus
from typing import BinaryIO, Callable, Optional

from basichttp.bootstrap.config import MAX_HEADER_BYTES, ServerSettings
from basichttp.bootstrap.socket_factory import create_server_socket
from basichttp.domain.correlation_id import get_logger
from basichttp.domain.errors import ListenerClosed
from basichttp.domain.http_types import (
    HttpHeaders,
    HttpListenerContext,
    HttpRequest,
    HttpResponse,
    RequestBodyStream,
)

LISTENER_LOGGER = get_logger("transport.listener")

SocketFactory = Callable[[ServerSettings], socket.socket]

CONTINUE_LINE = b"HTTP/1.1 100 Continue\r\n\r\n"


class HeaderTooLarge(ValueError):
    """Raised when a request head exceeds the configured byte limit."""


class LengthRequired(ValueError):
    """Raised for bodies without a Content-Length (chunked uploads)."""


def parse_request_line(request_line: str) -> tuple[str, str, str]:
    """Split a request line into method, target and protocol."""
    try:
        method, target, protocol = request_line.split(" ", 2)
    except ValueError as exc:
        raise ValueError("Invalid request line") from exc
    if not method.isalpha() or not method.isupper():
        raise ValueError("Invalid request method")
    if not protocol.startswith("HTTP/1."):
        raise ValueError("Unsupported protocol version")
    if not target:
        raise ValueError("Empty request target")
    return method, target, protocol


def parse_headers(lines: list[str]) -> HttpHeaders:
    """Build a header collection, ignoring lines without a colon."""
    headers = HttpHeaders()
    for line in lines:
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            continue
        headers.add(name.strip(), value.strip())
    return headers


def determine_content_length(headers: HttpHeaders) -> int:
    """Return the declared body length, rejecting chunked or invalid values."""
    if "chunked" in (headers.get("Transfer-Encoding") or "").lower():
        raise LengthRequired("Chunked request bodies are not supported")
    declared = headers.get_all("Content-Length")
    if not declared:
        return 0
    if len(set(declared)) > 1:
        raise ValueError("Conflicting Content-Length headers")
    try:
        content_length = int(declared[0])
    except ValueError as exc:
        raise ValueError("Invalid Content-Length") from exc
    if content_length < 0:
        raise ValueError("Negative Content-Length")
    return content_length


def read_request_head(
    stream: BinaryIO, limit: int = MAX_HEADER_BYTES
) -> Optional[list[str]]:
    """Read lines up to the blank separator; None if the peer hung up first."""
    lines: list[str] = []
    total = 0
    while True:
        raw = stream.readline(limit + 1)
        total += len(raw)
        if total > limit:
            raise HeaderTooLarge("Request head exceeds limit")
        if not raw.endswith(b"\n"):
            return None
        text = raw.decode("latin-1").rstrip("\r\n")
        if not text:
            if not lines:
                continue
            return lines
        lines.append(text)


def client_label(address: tuple) -> str:
    if len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address)


class ClientConnection:
    """An accepted socket whose request head has not been read yet.

    ``read_context`` runs the TLS handshake and reads the head under the
    socket timeout; it belongs on a worker thread, never on the accept loop.
    ``cancel`` unblocks a pending head read and is a no-op once the head is in.
    """

    def __init__(
        self,
        connection: socket.socket,
        address: tuple,
        settings: ServerSettings,
        on_settled: Callable[["ClientConnection"], None] = lambda _connection: None,
    ) -> None:
        self.connection = connection
        self.address = address
        self.client = client_label(address)
        self._settings = settings
        self._on_settled = on_settled
        self._lock = threading.Lock()
        self._head_read = False
        self._cancelled = False

    def read_context(self) -> Optional[HttpListenerContext]:
        """Return the request/response pair, or None if the connection was dropped.

        Malformed heads are answered here (400, 411 or 431) and give None.
        """
        try:
            return self._read_context()
        finally:
            self._on_settled(self)

    def cancel(self) -> None:
        with self._lock:
            if self._head_read:
                return
            self._cancelled = True
        try:
            self.connection.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def abort(self) -> None:
        """Close without reading or writing anything."""
        self._on_settled(self)
        try:
            self.connection.close()
        except OSError:
            pass

    def _mark_head_read(self) -> bool:
        with self._lock:
            if self._cancelled:
                return False
            self._head_read = True
            return True

    def _handshake(self) -> bool:
        if not isinstance(self.connection, ssl.SSLSocket):
            return True
        try:
            self.connection.do_handshake()
        except (ssl.SSLError, OSError) as error:
            LISTENER_LOGGER.warning(
                "TLS handshake failed",
                extra={
                    "event": "tls_handshake_failed",
                    "client": self.client,
                    "error": str(error),
                },
            )
            self.connection.close()
            return False
        return True

    def _read_context(self) -> Optional[HttpListenerContext]:
        connection, client = self.connection, self.client
        connection.settimeout(self._settings.socket_timeout)
        if not self._handshake():
            return None
        reader = connection.makefile("rb")
        try:
            lines = read_request_head(reader)
            if lines is None or not self._mark_head_read():
                if LISTENER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                    LISTENER_LOGGER.debug(
                        "Client disconnected before sending a request",
                        extra={"event": "client_disconnected", "client": client},
                    )
                _discard(connection, reader)
                return None
            method, target, protocol = parse_request_line(lines[0])
            headers = parse_headers(lines[1:])
            content_length = determine_content_length(headers)
            if (headers.get("Expect") or "").lower() == "100-continue":
                connection.sendall(CONTINUE_LINE)
        except HeaderTooLarge:
            _reject(
                connection, reader, HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE, client
            )
            return None
        except LengthRequired:
            _reject(connection, reader, HTTPStatus.LENGTH_REQUIRED, client)
            return None
        except ValueError:
            _reject(connection, reader, HTTPStatus.BAD_REQUEST, client)
            return None
        except OSError as error:
            LISTENER_LOGGER.debug(
                "Connection failed while reading request head",
                extra={
                    "event": "connection_error",
                    "client": client,
                    "error_type": type(error).__name__,
                },
            )
            _discard(connection, reader)
            return None

        body = io.BufferedReader(RequestBodyStream(reader, content_length))
        request = HttpRequest(method, target, headers, body, self.address, protocol)
        response = HttpResponse(connection, request_stream=body)
        return HttpListenerContext(request, response)


class HttpListener:
    """Owns one listening socket and hands out accepted client connections.

    ``close`` may be called from any thread: an ``accept`` blocked in the
    socket notices within one poll interval and raises ListenerClosed, and
    connections still waiting for their request head are cancelled.
    """

    def __init__(
        self,
        settings: ServerSettings,
        socket_factory: SocketFactory = create_server_socket,
    ) -> None:
        self._settings = settings
        self._socket_factory = socket_factory
        self._socket: Optional[socket.socket] = None
        self._closed = False
        self._lock = threading.Lock()
        self._pending: set[ClientConnection] = set()

    @property
    def is_listening(self) -> bool:
        return self._socket is not None and not self._closed

    @property
    def address(self) -> Optional[tuple]:
        if self._socket is None:
            return None
        return self._socket.getsockname()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def start(self) -> None:
        """Bind the listening socket; bind errors propagate to the caller."""
        with self._lock:
            if self._socket is not None:
                return
            self._closed = False
            self._socket = self._socket_factory(self._settings)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            server_socket, self._socket = self._socket, None
            pending, self._pending = list(self._pending), set()
        if server_socket is not None:
            try:
                server_socket.close()
            except OSError:
                pass
        for connection in pending:
            connection.cancel()

    def accept(self) -> ClientConnection:
        """Block until a client connects; the request head is not read here."""
        while True:
            server_socket = self._socket
            if self._closed or server_socket is None:
                raise ListenerClosed("Listener is closed")
            try:
                connection, address = server_socket.accept()
            except socket.timeout:
                continue
            except OSError as error:
                if self._closed:
                    raise ListenerClosed("Listener is closed") from error
                raise
            client = ClientConnection(connection, address, self._settings, self._forget)
            with self._lock:
                if self._closed:
                    connection.close()
                    raise ListenerClosed("Listener is closed")
                self._pending.add(client)
            if LISTENER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                LISTENER_LOGGER.debug(
                    "Accepted client connection",
                    extra={"event": "client_accepted", "client": client.client},
                )
            return client

    def _forget(self, connection: ClientConnection) -> None:
        with self._lock:
            self._pending.discard(connection)


def _reject(
    connection: socket.socket, reader: BinaryIO, status: HTTPStatus, client: str
) -> None:
    LISTENER_LOGGER.warning(
        "Malformed request rejected",
        extra={
            "event": "malformed_request",
            "client": client,
            "status_code": int(status),
        },
    )
    response = HttpResponse(connection, request_stream=reader)
    response.status_code = int(status)
    response.close()


def _discard(connection: socket.socket, reader: BinaryIO) -> None:
    reader.close()
    connection.close()
