"""Demo file server built on the embeddable basichttp server."""

import signal
import sys
from typing import Optional

from basichttp.bootstrap.config import parse_cli_args, settings_from_args
from basichttp.bootstrap.logging_setup import configure_logging
from basichttp.domain.errors import AccessDenied, InvalidConfiguration
from basichttp.handlers.file_handler import FileHost
from basichttp.transport.accept_loop import HttpServer


def main(argv: Optional[list[str]] = None) -> int:
    """Serve ``--directory`` until SIGTERM or SIGINT, then drain handlers."""
    args = parse_cli_args(sys.argv[1:] if argv is None else argv)
    logger = configure_logging(args.log_level, args.log_destination)

    try:
        server = HttpServer.from_settings(settings_from_args(args))
    except InvalidConfiguration as error:
        logger.error(
            "Invalid server configuration",
            extra={"event": "invalid_configuration", "error": str(error)},
        )
        return 2

    def shutdown_handler(signum: int, _frame) -> None:
        logger.info(
            "Received shutdown signal",
            extra={"event": "shutdown_signal", "signal": signum},
        )
        server.stop()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    logger.info(
        "Starting HTTP server",
        extra={
            "event": "server_starting",
            "prefix": server.prefix,
            "directory": args.directory,
            "log_destination": args.log_destination,
            "log_level": args.log_level,
            "tls": args.https,
            "max_connections": server.max_connections,
        },
    )
    host = FileHost(args.directory, is_draining=lambda: not server.is_listening)
    try:
        server.start(host)
    except AccessDenied as error:
        logger.error(
            "Unable to bind the listening socket",
            extra={"event": "bind_failed", "error": error.remediation},
        )
        return 1
    except InvalidConfiguration as error:
        logger.error(
            "Invalid server configuration",
            extra={"event": "invalid_configuration", "error": str(error)},
        )
        return 2

    drained = server.wait_for_handlers(args.shutdown_grace_seconds)
    logger.info(
        "Server shutdown complete",
        extra={
            "event": "shutdown_complete",
            "drained": drained,
            "grace_seconds": args.shutdown_grace_seconds,
        },
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
