"""Argument validation helpers used at construction and entry points."""

import re
from typing import Any, Optional

from basichttp.domain.errors import InvalidConfiguration

PREFIX_PATTERN = re.compile(
    r"^(?P<scheme>https?)://"
    r"(?P<host>\+|\*|[\w.\-]+|\[[0-9a-fA-F:]+\])"
    r":(?P<port>\d{1,5})/$"
)


def ensure_not_none(value: Any, name: str) -> Any:
    """Return value, raising TypeError when it is None."""
    if value is None:
        raise TypeError(f"'{name}' must not be None")
    return value


def ensure_in_range(value: int, low: int, high: int, name: str) -> int:
    """Return value when low <= value <= high, else raise InvalidConfiguration."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfiguration(f"'{name}' must be an integer, got {value!r}")
    if not low <= value <= high:
        raise InvalidConfiguration(
            f"'{name}' must be between {low} and {high}, got {value}"
        )
    return value


def ensure_prefix(prefix: str) -> re.Match:
    """Validate a listener prefix of the form http(s)://host:port/."""
    match: Optional[re.Match] = PREFIX_PATTERN.match(prefix)
    if match is None:
        raise InvalidConfiguration(
            f"Invalid prefix {prefix!r}. Format must be 'http(s)://+:(port)/'"
        )
    ensure_in_range(int(match.group("port")), 0, 65535, "port")
    return match
