"""Per-request correlation ids carried through log records."""

import contextvars
import logging
import uuid
from typing import Any, MutableMapping, Optional

LOGGER_ROOT = "basichttp"

_correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "basichttp_correlation_id", default=None
)


def generate_correlation_id() -> str:
    """Return a fresh UUID4 string."""
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    """Return the correlation id bound to the current thread, if any."""
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)


def get_logger(component: str) -> "CorrelationLoggerAdapter":
    """Return an adapter for the ``basichttp.<component>`` logger."""
    return CorrelationLoggerAdapter(logging.getLogger(f"{LOGGER_ROOT}.{component}"), {})


class CorrelationLoggerAdapter(logging.LoggerAdapter):
    """Injects ``correlation_id`` and ``component`` into every record."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        correlation_id = get_correlation_id()
        extra["correlation_id"] = correlation_id if correlation_id is not None else "-"

        logger_name = self.logger.name
        prefix = f"{LOGGER_ROOT}."
        if logger_name.startswith(prefix):
            logger_name = logger_name[len(prefix) :]
        extra["component"] = logger_name
        kwargs["extra"] = extra
        return msg, kwargs
