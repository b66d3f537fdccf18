"""Writes resources to a response honouring Range and conditional headers."""

import io
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime
from http import HTTPStatus
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

from basichttp.domain.correlation_id import get_logger
from basichttp.domain.errors import (
    ClientDisconnected,
    ResourceNotFound,
    UnsupportedMediaType,
)
from basichttp.domain.http_types import HttpRequest, HttpResponse
from basichttp.domain.mime_types import DEFAULT_MIME_TYPE, get_mime_type
from basichttp.pipeline.validation import ensure_not_none

WRITER_LOGGER = get_logger("pipeline.range")

MAX_BUFFER_SIZE = 8 * 1024 * 1024
RANGE_UNIT = "bytes"
# 100 ns ticks between 0001-01-01 and the Unix epoch.
TICKS_AT_UNIX_EPOCH = 621_355_968_000_000_000
TEXT_MIME_TYPE = "text/plain; charset=utf-8"


class RangeNotSatisfiable(ValueError):
    """Raised for a Range header that is malformed or outside the resource."""


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte interval of a resource."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total: int) -> str:
        return f"{RANGE_UNIT} {self.start}-{self.end}/{total}"


@dataclass(frozen=True)
class Validators:
    etag: str
    last_modified: str
    modified: datetime


def compute_validators(path: Union[str, Path]) -> Validators:
    """ETag (hex ticks of the last write) and Last-Modified for a file."""
    stat = os.stat(path)
    ticks = stat.st_mtime_ns // 100 + TICKS_AT_UNIX_EPOCH
    return Validators(
        etag=format(ticks, "x"),
        last_modified=formatdate(stat.st_mtime, usegmt=True),
        modified=datetime.fromtimestamp(int(stat.st_mtime), tz=timezone.utc),
    )


def _normalize_etag(tag: str) -> str:
    tag = tag.strip()
    if tag.startswith("W/"):
        tag = tag[2:]
    return tag.strip('"')


def is_not_modified(request: HttpRequest, validators: Validators) -> bool:
    if_none_match = request.headers.get("If-None-Match")
    if if_none_match:
        tags = {_normalize_etag(tag) for tag in if_none_match.split(",")}
        if "*" in tags or validators.etag in tags:
            return True

    if_modified_since = request.headers.get("If-Modified-Since")
    if not if_modified_since:
        return False
    try:
        since = parsedate_to_datetime(if_modified_since)
    except (TypeError, ValueError):
        return False
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return validators.modified <= since


def _parse_position(text: str, default: int) -> int:
    text = text.strip()
    if not text:
        return default
    if not text.isdigit():
        raise RangeNotSatisfiable(f"Invalid range position {text!r}")
    return int(text)


def parse_range(header: str, length: int) -> ByteRange:
    """Parse a single ``bytes=start-end`` range against a resource length.

    Missing bounds default to the first and last byte; ``end`` is clamped to
    the resource.
    """
    unit, sep, positions = header.partition("=")
    if not sep or unit.strip().lower() != RANGE_UNIT:
        raise RangeNotSatisfiable(f"Unsupported range {header!r}")
    if "," in positions:
        raise UnsupportedMediaType("Multiple ranges are not supported")
    start_text, dash, end_text = positions.partition("-")
    if not dash:
        raise RangeNotSatisfiable(f"Invalid range {header!r}")
    start = _parse_position(start_text, 0)
    end = min(_parse_position(end_text, length - 1), length - 1)
    if start >= length or start > end:
        raise RangeNotSatisfiable(f"Range {header!r} outside {length} bytes")
    return ByteRange(start, end)


def _stream_length(stream: BinaryIO) -> int:
    length = stream.seek(0, io.SEEK_END)
    stream.seek(0)
    return length


def _copy(stream: BinaryIO, response: HttpResponse, count: int) -> None:
    remaining = count
    while remaining > 0:
        chunk = stream.read(min(remaining, MAX_BUFFER_SIZE))
        if not chunk:
            WRITER_LOGGER.warning(
                "Resource ended before the announced length",
                extra={"event": "short_resource", "missing_bytes": remaining},
            )
            return
        response.write(chunk)
        remaining -= len(chunk)


def write_stream(
    request: HttpRequest,
    response: HttpResponse,
    stream: BinaryIO,
    mime_type: str = DEFAULT_MIME_TYPE,
    validators: Optional[Validators] = None,
) -> None:
    """Send a seekable stream, whole or as the requested single range.

    Takes ownership of ``stream`` and ``response``: both are closed when this
    returns. A client that disconnects mid-body leaves status 204 behind.
    """
    ensure_not_none(request, "request")
    ensure_not_none(response, "response")
    ensure_not_none(stream, "stream")

    range_headers = request.headers.get_all("Range")
    if len(range_headers) > 1 or (range_headers and "," in range_headers[0]):
        stream.close()
        raise UnsupportedMediaType("Multiple ranges are not supported")

    try:
        length = _stream_length(stream)
        if range_headers:
            try:
                byte_range = parse_range(range_headers[0], length)
            except RangeNotSatisfiable as error:
                WRITER_LOGGER.info(
                    "Range not satisfiable",
                    extra={
                        "event": "range_not_satisfiable",
                        "range": range_headers[0],
                        "length": length,
                        "reason": str(error),
                    },
                )
                response.status_code = int(HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE)
                response.headers["Content-Range"] = f"{RANGE_UNIT} */{length}"
                return
            response.status_code = int(HTTPStatus.PARTIAL_CONTENT)
            response.headers["Accept-Ranges"] = RANGE_UNIT
            response.headers["Content-Range"] = byte_range.content_range(length)
            response.keep_alive = True
            if WRITER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                WRITER_LOGGER.debug(
                    "Serving byte range",
                    extra={
                        "event": "range_served",
                        "start": byte_range.start,
                        "end": byte_range.end,
                        "length": length,
                    },
                )
        else:
            if validators is not None:
                response.headers["ETag"] = validators.etag
                response.headers["Last-Modified"] = validators.last_modified
                if is_not_modified(request, validators):
                    response.status_code = int(HTTPStatus.NOT_MODIFIED)
                    if WRITER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                        WRITER_LOGGER.debug(
                            "Resource not modified",
                            extra={"event": "not_modified", "etag": validators.etag},
                        )
                    return
            byte_range = ByteRange(0, length - 1)

        response.content_type = mime_type
        response.content_length = byte_range.length
        stream.seek(byte_range.start)
        try:
            response.send_headers()
            _copy(stream, response, byte_range.length)
        except ClientDisconnected as error:
            WRITER_LOGGER.info(
                "Client disconnected during body transfer",
                extra={
                    "event": "client_disconnected",
                    "bytes_written": response.bytes_written,
                    "error": str(error),
                },
            )
            response.status_code = int(HTTPStatus.NO_CONTENT)
    finally:
        stream.close()
        response.close()


def write_bytes(
    request: HttpRequest,
    response: HttpResponse,
    data: bytes,
    mime_type: str = DEFAULT_MIME_TYPE,
) -> None:
    write_stream(request, response, io.BytesIO(data), mime_type)


def write_text(
    request: HttpRequest,
    response: HttpResponse,
    text: str,
    mime_type: str = TEXT_MIME_TYPE,
    encoding: str = "utf-8",
) -> None:
    write_stream(request, response, io.BytesIO(text.encode(encoding)), mime_type)


def write_file(
    request: HttpRequest,
    response: HttpResponse,
    path: Union[str, Path],
    mime_resolver: Callable[[str], str] = get_mime_type,
) -> None:
    """Serve a file with validators; a missing file leaves 404 and raises."""
    ensure_not_none(response, "response")
    target = Path(path)
    if not target.is_file():
        response.status_code = int(HTTPStatus.NOT_FOUND)
        raise ResourceNotFound(f"No file at {target}")
    validators = compute_validators(target)
    stream = open(target, "rb")  # pylint: disable=consider-using-with
    write_stream(request, response, stream, mime_resolver(target.suffix), validators)
