"""Listening socket creation, TLS wrapping and bind error translation."""

import errno
import platform
import socket
import ssl

from basichttp.bootstrap.config import ACCEPT_POLL_SECONDS, ServerSettings
from basichttp.domain.correlation_id import get_logger
from basichttp.domain.errors import AccessDenied, InvalidConfiguration

SOCKET_LOGGER = get_logger("socket")

_ACCESS_ERRNOS = {errno.EACCES, errno.EADDRINUSE, errno.EPERM}


def reservation_remediation(settings: ServerSettings, system: str = "") -> str:
    """Return the command that frees or grants the address for this OS."""
    system = system or platform.system()
    port = settings.port
    if system == "Windows":
        return (
            "On Windows run: "
            f"'netsh http add urlacl url={settings.scheme}://+:{port}/ "
            "user=\"Everyone\"' or, if a stale reservation exists, "
            f"'netsh http delete urlacl url={settings.scheme}://+:{port}/'."
        )
    if system == "Darwin":
        return (
            f"On macOS run: 'lsof -nP -iTCP:{port} -sTCP:LISTEN' to find the owner "
            "of the port, or choose a port above 1023."
        )
    return (
        f"On Linux run: 'ss -ltnp sport = :{port}' to find the owner of the port, "
        "or grant the interpreter low-port binding with "
        "'sudo setcap cap_net_bind_service=+ep $(readlink -f $(which python3))'."
    )


def _bind_family(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def create_server_socket(settings: ServerSettings) -> socket.socket:
    """Bind the listening socket for ``settings``, wrapping it in TLS if asked."""
    host = settings.bind_host
    try:
        server_socket = socket.create_server(
            (host, settings.port), family=_bind_family(host), backlog=128
        )
    except OSError as error:
        if error.errno in _ACCESS_ERRNOS:
            SOCKET_LOGGER.error(
                "Listening address is not available",
                extra={
                    "event": "bind_denied",
                    "prefix": settings.prefix,
                    "errno": error.errno,
                },
            )
            raise AccessDenied(
                f"HTTP server can not start on {settings.prefix}: {error.strerror}.",
                reservation_remediation(settings),
            ) from error
        raise
    server_socket.settimeout(ACCEPT_POLL_SECONDS)

    if settings.use_https:
        try:
            tls_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            tls_context.load_cert_chain(settings.cert_file, settings.key_file)
        except (ssl.SSLError, OSError) as error:
            server_socket.close()
            SOCKET_LOGGER.critical(
                "Failed to load TLS certificates",
                extra={"event": "tls_config_failed", "error": str(error)},
            )
            raise InvalidConfiguration(
                f"Unable to load TLS material: {error}"
            ) from error
        server_socket = tls_context.wrap_socket(
            server_socket, server_side=True, do_handshake_on_connect=False
        )
    return server_socket
