"""Server settings, environment defaults and CLI argument parsing."""

import argparse
import os
from dataclasses import dataclass
from typing import Optional

from basichttp.domain.errors import InvalidConfiguration
from basichttp.pipeline.validation import ensure_in_range, ensure_prefix


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value is not None else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


MAX_PORT = 65535
MAX_CONNECTIONS_LIMIT = 32

DEFAULT_PORT = _env_int("BASICHTTP_PORT", 8080)
DEFAULT_USE_HTTPS = _env_bool("BASICHTTP_USE_HTTPS", False)
DEFAULT_MAX_CONNECTIONS = _env_int("BASICHTTP_MAX_CONNECTIONS", MAX_CONNECTIONS_LIMIT)
DEFAULT_SOCKET_TIMEOUT = _env_int("BASICHTTP_SOCKET_TIMEOUT", 60)
DEFAULT_SHUTDOWN_GRACE_SECONDS = _env_int("BASICHTTP_SHUTDOWN_GRACE_SECONDS", 30)
MAX_HEADER_BYTES = _env_int("BASICHTTP_MAX_HEADER_BYTES", 64 * 1024)

# How often a blocked accept wakes up to notice that its listener was closed.
ACCEPT_POLL_SECONDS = 0.25

ALL_INTERFACES = "+"


@dataclass(frozen=True)
class ServerSettings:
    """Immutable listening configuration for one server instance."""

    port: int = DEFAULT_PORT
    use_https: bool = DEFAULT_USE_HTTPS
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    host: str = ALL_INTERFACES
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    socket_timeout: float = DEFAULT_SOCKET_TIMEOUT

    def __post_init__(self) -> None:
        ensure_in_range(self.port, 0, MAX_PORT, "port")
        ensure_in_range(
            self.max_connections, 0, MAX_CONNECTIONS_LIMIT, "max_connections"
        )
        if self.socket_timeout is not None and self.socket_timeout <= 0:
            raise InvalidConfiguration("'socket_timeout' must be positive")
        if self.use_https and not (self.cert_file and self.key_file):
            raise InvalidConfiguration(
                "HTTPS requires both a certificate and a private key file"
            )
        ensure_prefix(self.prefix)

    @property
    def scheme(self) -> str:
        return "https" if self.use_https else "http"

    @property
    def prefix(self) -> str:
        """Listener prefix, for example ``http://+:8080/``."""
        return f"{self.scheme}://{self.host}:{self.port}/"

    @property
    def bind_host(self) -> str:
        """Host handed to the socket layer; ``+`` and ``*`` mean every interface."""
        if self.host in {ALL_INTERFACES, "*"}:
            return ""
        return self.host.strip("[]")


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Return parsed CLI arguments for the demo file server."""
    parser = argparse.ArgumentParser(description="Embeddable HTTP server")
    parser.add_argument("--directory", default=".")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument(
        "--https",
        action=argparse.BooleanOptionalAction,
        default=DEFAULT_USE_HTTPS,
        help="Serve over TLS (requires --cert and --key)",
    )
    parser.add_argument("--cert", help="Path to TLS certificate file")
    parser.add_argument("--key", help="Path to TLS private key file")
    default_log_level = os.getenv("BASICHTTP_LOG_LEVEL", "INFO").upper()
    default_destination = os.getenv("BASICHTTP_LOG_DESTINATION", "stdout")
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
    )
    parser.add_argument(
        "--log-destination",
        default=default_destination,
        help="stdout or a file path",
    )
    parser.add_argument(
        "--max-connections",
        type=int,
        default=DEFAULT_MAX_CONNECTIONS,
        help=f"Maximum concurrent handlers, 0 to {MAX_CONNECTIONS_LIMIT} "
        "(0 for unlimited)",
    )
    parser.add_argument(
        "--socket-timeout",
        type=int,
        default=DEFAULT_SOCKET_TIMEOUT,
        help="Socket timeout in seconds for request processing",
    )
    parser.add_argument(
        "--shutdown-grace-seconds",
        type=int,
        default=DEFAULT_SHUTDOWN_GRACE_SECONDS,
        help="Grace period in seconds for in-flight handlers on shutdown",
    )
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> ServerSettings:
    """Build validated settings from parsed CLI arguments."""
    return ServerSettings(
        port=args.port,
        use_https=args.https,
        max_connections=args.max_connections,
        host=args.host,
        cert_file=args.cert,
        key_file=args.key,
        socket_timeout=args.socket_timeout,
    )
