"""Request and response types handed to host handlers."""

import codecs
import io
import logging
import socket
import urllib.parse
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import BinaryIO, Iterator, Optional

from basichttp.domain.correlation_id import get_correlation_id, get_logger
from basichttp.domain.errors import ClientDisconnected

TYPES_LOGGER = get_logger("http")

DEFAULT_CONTENT_ENCODING = "utf-8"

_DISCONNECT_ERRORS = (
    BrokenPipeError,
    ConnectionResetError,
    ConnectionAbortedError,
    TimeoutError,
)

# Statuses that never carry a body, so no Content-Length is emitted on close.
_BODYLESS_STATUSES = {HTTPStatus.NO_CONTENT, HTTPStatus.NOT_MODIFIED}


def parse_header_params(value: str) -> tuple[str, dict[str, str]]:
    """Split ``text/plain; charset=utf-8`` into the main value and parameters."""
    main, *params = value.split(";")
    parsed: dict[str, str] = {}
    for param in params:
        key, sep, raw = param.strip().partition("=")
        if not sep:
            continue
        raw = raw.strip()
        if len(raw) >= 2 and raw[0] == raw[-1] == '"':
            raw = raw[1:-1]
        parsed[key.strip().lower()] = raw
    return main.strip().lower(), parsed


class HttpHeaders:
    """Ordered, case-insensitive, multi-valued header collection."""

    def __init__(self, items: Optional[list[tuple[str, str]]] = None) -> None:
        self._items: list[tuple[str, str]] = list(items or [])

    def add(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Return the first value for ``name``."""
        lowered = name.lower()
        for key, value in self._items:
            if key.lower() == lowered:
                return value
        return default

    def get_all(self, name: str) -> list[str]:
        lowered = name.lower()
        return [value for key, value in self._items if key.lower() == lowered]

    def count(self, name: str) -> int:
        return len(self.get_all(name))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.count(name) > 0

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"HttpHeaders({self._items!r})"


class RequestBodyStream(io.RawIOBase):
    """Raw stream exposing exactly ``length`` body bytes of a connection."""

    def __init__(self, source: BinaryIO, length: int) -> None:
        super().__init__()
        self._source = source
        self._remaining = max(0, length)

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self._remaining <= 0:
            return 0
        size = min(len(buffer), self._remaining)
        reader = getattr(self._source, "read1", self._source.read)
        data = reader(size)
        if not data:
            self._remaining = 0
            return 0
        count = len(data)
        buffer[:count] = data
        self._remaining -= count
        return count

    def close(self) -> None:
        if not self.closed:
            self._source.close()
        super().close()


def empty_body() -> BinaryIO:
    return io.BufferedReader(RequestBodyStream(io.BytesIO(), 0))


@dataclass
class HttpRequest:
    """Represents a parsed request head plus its streaming body."""

    method: str
    target: str
    headers: HttpHeaders
    input_stream: BinaryIO = field(default_factory=empty_body)
    remote_address: tuple[str, int] = ("", 0)
    protocol: str = "HTTP/1.1"

    @property
    def path(self) -> str:
        return urllib.parse.unquote(urllib.parse.urlsplit(self.target).path)

    @property
    def query(self) -> dict[str, list[str]]:
        return urllib.parse.parse_qs(urllib.parse.urlsplit(self.target).query)

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("Content-Type")

    @property
    def content_encoding(self) -> str:
        """Charset declared by Content-Type, falling back to UTF-8."""
        if not self.content_type:
            return DEFAULT_CONTENT_ENCODING
        _, params = parse_header_params(self.content_type)
        charset = params.get("charset")
        if not charset:
            return DEFAULT_CONTENT_ENCODING
        try:
            return codecs.lookup(charset).name
        except LookupError:
            return DEFAULT_CONTENT_ENCODING

    @property
    def content_length(self) -> Optional[int]:
        value = self.headers.get("Content-Length")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    @property
    def has_entity_body(self) -> bool:
        return (self.content_length or 0) > 0

    @property
    def is_upgrade_request(self) -> bool:
        """True for protocol switch requests such as WebSocket handshakes."""
        if "Upgrade" not in self.headers:
            return False
        tokens = {
            token.strip().lower()
            for value in self.headers.get_all("Connection")
            for token in value.split(",")
        }
        return "upgrade" in tokens


class HttpResponse:
    """Response bound to one client connection.

    The head is sent lazily on the first body write (or on close), so status
    and headers stay mutable until then. ``close`` is safe to call twice.
    """

    def __init__(
        self,
        connection: socket.socket,
        protocol: str = "HTTP/1.1",
        request_stream: Optional[BinaryIO] = None,
    ) -> None:
        self.status_code = int(HTTPStatus.OK)
        self.headers: dict[str, str] = {}
        self.content_type: Optional[str] = None
        self.content_length: Optional[int] = None
        self.keep_alive = False
        self.protocol = protocol
        self.bytes_written = 0
        self._connection = connection
        self._request_stream = request_stream
        self._headers_sent = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    def status_line(self) -> str:
        try:
            phrase = HTTPStatus(self.status_code).phrase
        except ValueError:
            phrase = ""
        return f"{self.protocol} {self.status_code} {phrase}".rstrip()

    def _head(self) -> bytes:
        headers: dict[str, str] = {}
        if self.content_type is not None:
            headers["Content-Type"] = self.content_type
        if self.content_length is not None:
            headers["Content-Length"] = str(self.content_length)
        headers.update(self.headers)
        correlation_id = get_correlation_id()
        if correlation_id:
            headers.setdefault("X-Request-ID", correlation_id)
        if not self.keep_alive:
            headers["Connection"] = "close"
        lines = [self.status_line()]
        lines.extend(f"{name}: {value}" for name, value in headers.items())
        return "\r\n".join(lines).encode("latin-1") + b"\r\n\r\n"

    def _send(self, payload: bytes) -> None:
        try:
            self._connection.sendall(payload)
        except _DISCONNECT_ERRORS as error:
            raise ClientDisconnected(str(error) or type(error).__name__) from error

    def send_headers(self) -> None:
        """Send the status line and headers; later changes are ignored."""
        if self._closed:
            raise ValueError("Response is closed")
        if self._headers_sent:
            return
        self._headers_sent = True
        self._send(self._head())

    def write(self, data: bytes) -> None:
        """Write body bytes, raising ClientDisconnected if the peer is gone."""
        if self._closed:
            raise ValueError("Response is closed")
        if not self._headers_sent:
            if self.content_length is None and not data:
                return
            self.send_headers()
        if data:
            self._send(data)
            self.bytes_written += len(data)

    def close(self) -> None:
        """Flush the head if nothing was written and close the connection."""
        if self._closed:
            return
        try:
            if not self._headers_sent:
                if self.content_length is None and (
                    self.status_code not in _BODYLESS_STATUSES
                ):
                    self.content_length = 0
                self.send_headers()
        except ClientDisconnected:
            if TYPES_LOGGER.logger.isEnabledFor(logging.DEBUG):
                TYPES_LOGGER.debug(
                    "Client gone before response head was sent",
                    extra={"event": "client_disconnected"},
                )
        finally:
            self._release_connection()

    def abort(self) -> None:
        """Close the connection without writing anything further."""
        if self._closed:
            return
        self._release_connection()

    def _release_connection(self) -> None:
        self._closed = True
        if self._request_stream is not None:
            self._request_stream.close()
        try:
            self._connection.shutdown(socket.SHUT_WR)
        except OSError:
            pass
        self._connection.close()


@dataclass
class HttpListenerContext:
    """A request/response pair produced by one accepted connection."""

    request: HttpRequest
    response: HttpResponse
