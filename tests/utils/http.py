"""Utilities for interacting with raw HTTP over sockets in tests."""

from __future__ import annotations

import os
import socket
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

HEADER_DELIMITER = b"\r\n\r\n"


@dataclass(slots=True)
class RawHttpResponse:
    """Structured view of an HTTP response captured from a socket."""

    status_line: str
    headers: Dict[str, str]
    body: bytes

    @property
    def status_code(self) -> int:
        return int(self.status_line.split()[1])


def reserve_port(host: str = "127.0.0.1") -> int:
    """Return an available TCP port bound to the given host without listening."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def wait_for_port(host: str, port: int, timeout: float = 5.0) -> None:
    """Block until a TCP connection to host:port succeeds or timeout elapses."""

    deadline = time.perf_counter() + timeout
    while time.perf_counter() < deadline:
        try:
            with socket.create_connection((host, port), timeout=0.1):
                return
        except OSError:
            time.sleep(0.05)
    raise RuntimeError(f"Server did not start on {host}:{port} within {timeout}s")


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it returns true or ``timeout`` elapses."""

    deadline = time.perf_counter() + timeout
    while time.perf_counter() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def read_http_response(sock: socket.socket) -> RawHttpResponse:
    """Read and parse an HTTP response from an open socket."""

    buffer = b""
    while HEADER_DELIMITER not in buffer:
        chunk = sock.recv(4096)
        if not chunk:
            raise RuntimeError("Connection closed before headers were received")
        buffer += chunk
    header_block, remainder = buffer.split(HEADER_DELIMITER, 1)
    header_lines = header_block.decode("latin-1").split("\r\n")
    status_line = header_lines[0]
    headers = _parse_headers(header_lines[1:])
    if "content-length" in headers:
        body = _read_fixed_body(sock, remainder, int(headers["content-length"]))
    else:
        body = _read_until_close(sock, remainder)
    return RawHttpResponse(status_line, headers, body)


def send_raw_request(
    host: str, port: int, payload: bytes, timeout: float = 5.0
) -> RawHttpResponse:
    """Send ``payload`` on a fresh connection and read one response."""

    with socket.create_connection((host, port), timeout=timeout) as sock:
        sock.sendall(payload)
        return read_http_response(sock)


def _parse_headers(lines: List[str]) -> Dict[str, str]:
    """Convert header lines into a normalized dictionary."""

    parsed: Dict[str, str] = {}
    for line in lines:
        if ": " not in line:
            continue
        name, value = line.split(": ", 1)
        parsed[name.lower()] = value
    return parsed


def _read_fixed_body(sock: socket.socket, buffer: bytes, length: int) -> bytes:
    """Read a body with a declared content-length."""

    data = buffer
    while len(data) < length:
        chunk = sock.recv(4096)
        if not chunk:
            raise RuntimeError("Connection closed before body completed")
        data += chunk
    return data[:length]


def _read_until_close(sock: socket.socket, buffer: bytes) -> bytes:
    data = buffer
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk


def wait_for_healthz_status(
    host: str, port: int, expected_status: int, timeout: float = 5.0
) -> bool:
    """Poll /healthz endpoint until it returns the expected status code."""
    deadline = time.perf_counter() + timeout
    while time.perf_counter() < deadline:
        try:
            response = send_raw_request(
                host, port, b"GET /healthz HTTP/1.1\r\nHost: localhost\r\n\r\n", 0.5
            )
            if response.status_code == expected_status:
                return True
        except (OSError, RuntimeError, ValueError):
            pass
        time.sleep(0.1)
    return False


def send_signal_to_process(pid: int, sig: int) -> None:
    """Send a signal to a process by PID."""
    os.kill(pid, sig)


class ServerThread:
    """Runs ``HttpServer.start`` on a background thread for in-process tests."""

    def __init__(self, server, handler, cancellation=None) -> None:
        self.server = server
        self.error: Optional[BaseException] = None
        self._thread = threading.Thread(
            target=self._run, args=(handler, cancellation), daemon=True
        )

    def _run(self, handler, cancellation) -> None:
        try:
            self.server.start(handler, cancellation)
        except BaseException as error:  # pylint: disable=broad-except
            self.error = error

    def __enter__(self) -> "ServerThread":
        self._thread.start()
        if not wait_until(lambda: self.server.address is not None or self.error):
            raise RuntimeError("Server did not start listening")
        if self.error is not None:
            raise self.error
        return self

    @property
    def port(self) -> int:
        return self.server.address[1]

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def join(self, timeout: float = 5.0) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def __exit__(self, *exc_info) -> None:
        self.server.stop()
        self.join()
        self.server.wait_for_handlers(5.0)
