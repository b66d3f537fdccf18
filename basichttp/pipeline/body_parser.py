"""Parsing of url-encoded and multipart/form-data request bodies."""

import io
import logging
import re
import shutil
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

from basichttp.domain.correlation_id import get_logger
from basichttp.domain.errors import (
    BodyParseError,
    InvalidFileSink,
    UnsupportedMediaType,
)
from basichttp.domain.http_types import HttpRequest, parse_header_params
from basichttp.pipeline.boundary import BoundaryScanner
from basichttp.pipeline.validation import ensure_not_none

PARSER_LOGGER = get_logger("pipeline.body")

URLENCODED = "application/x-www-form-urlencoded"
MULTIPART = "multipart/form-data"
UTF8_FILENAME_PREFIX = "utf-8''"
MAX_SECTION_HEADER_LINE = 16 * 1024

NAME_PATTERN = re.compile(
    r'(?<![\w*])name=(?:"(?P<quoted>[^"]*)"|(?P<bare>[^";\s]*))'
)
FILENAME_PATTERN = re.compile(
    r'filename(?P<star>\*)?=(?:"(?P<quoted>[^"]*)"|(?P<bare>[^";\s]*))'
)

OnFile = Callable[[str, str, Optional[str]], Optional[BinaryIO]]


class HttpFile:
    """A file part of a multipart body; owns its data stream."""

    def __init__(
        self, file_name: str, value: BinaryIO, content_type: Optional[str]
    ) -> None:
        self.file_name = file_name
        self.content_type = content_type
        self.value: Optional[BinaryIO] = value

    @property
    def closed(self) -> bool:
        return self.value is None

    def read(self) -> bytes:
        """Return the whole part; the stream must be seekable and readable."""
        stream = self._require_stream()
        stream.seek(0)
        return stream.read()

    def save(self, path: Union[str, Path], overwrite: bool = False) -> bool:
        """Copy the data to ``path``, creating parent directories.

        Returns False without writing when the file exists and ``overwrite``
        is not set.
        """
        stream = self._require_stream()
        target = Path(path)
        if target.exists() and not overwrite:
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        stream.seek(0)
        with open(target, "wb") as handle:
            shutil.copyfileobj(stream, handle)
        return True

    def close(self) -> None:
        if self.value is not None:
            stream, self.value = self.value, None
            stream.close()

    def _require_stream(self) -> BinaryIO:
        if self.value is None:
            raise ValueError(f"File part {self.file_name!r} is closed")
        return self.value

    def __enter__(self) -> "HttpFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"HttpFile(file_name={self.file_name!r}, "
            f"content_type={self.content_type!r}, closed={self.closed})"
        )


@dataclass
class ParsedBody:
    """Fields and file parts of a request body; closing it closes every file."""

    fields: dict[str, str] = field(default_factory=dict)
    files: dict[str, HttpFile] = field(default_factory=dict)

    def close(self) -> None:
        for part in self.files.values():
            part.close()

    def __enter__(self) -> "ParsedBody":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class _NullSink:  # pylint: disable=too-few-public-methods
    """Write target for the multipart preamble."""

    def write(self, data: bytes) -> int:
        return len(data)


def memory_sink(
    _field_name: str, _file_name: str, _content_type: Optional[str]
) -> BinaryIO:
    return io.BytesIO()


def parse_body(
    request: HttpRequest,
    fields: Optional[dict[str, str]] = None,
    on_file: Optional[OnFile] = None,
) -> ParsedBody:
    """Parse a url-encoded or multipart request body.

    ``fields`` is filled in place when given. ``on_file`` is called once per
    file part and must return the stream its bytes are copied into; file
    parts are buffered in memory when it is omitted.
    """
    ensure_not_none(request, "request")
    content_type = request.content_type or ""
    media_type, params = parse_header_params(content_type)
    body = ParsedBody(fields=fields if fields is not None else {})

    if media_type == URLENCODED:
        _parse_urlencoded(request, body.fields)
    elif media_type == MULTIPART:
        _parse_multipart(request.input_stream, params, body, on_file or memory_sink)
    else:
        raise UnsupportedMediaType(
            f"The body content-type {content_type!r} is not supported"
        )
    return body


def _add_unique(target: dict, name: str, value) -> None:
    if name in target:
        raise BodyParseError(f"Duplicate form field {name!r}")
    target[name] = value


def _parse_urlencoded(request: HttpRequest, fields: dict[str, str]) -> None:
    if not request.has_entity_body:
        return
    encoding = request.content_encoding
    try:
        text = request.input_stream.read().decode(encoding)
    except UnicodeDecodeError as error:
        raise BodyParseError(f"Form body is not valid {encoding}") from error

    for pair in text.split("&"):
        name_value = pair.split("=")
        if len(name_value) != 2:
            continue
        name, value = name_value
        _add_unique(fields, name, urllib.parse.unquote_plus(value, encoding=encoding))


def _parse_multipart(
    stream: BinaryIO, params: dict[str, str], body: ParsedBody, on_file: OnFile
) -> None:
    boundary = params.get("boundary")
    if not boundary:
        raise BodyParseError("multipart/form-data body without a boundary parameter")
    delimiter = b"--" + boundary.encode("latin-1")
    section_scanner = BoundaryScanner(b"\r\n" + delimiter)

    sink: Optional[BinaryIO] = None
    try:
        BoundaryScanner(delimiter).copy_until(stream, _NullSink())
        while True:
            name, file_name, content_type = _read_section_headers(stream)
            if not name:
                break

            if file_name:
                sink = on_file(name, file_name, content_type)
                if sink is None:
                    raise InvalidFileSink(
                        "The on_file callback must return a writable stream"
                    )
            else:
                sink = io.BytesIO()

            found = section_scanner.copy_until(stream, sink)
            if PARSER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                PARSER_LOGGER.debug(
                    "Multipart section parsed",
                    extra={
                        "event": "multipart_section",
                        "field": name,
                        "file_name": file_name,
                        "content_type": content_type,
                    },
                )

            if file_name:
                if sink.seekable():
                    sink.seek(0)
                part = HttpFile(file_name, sink, content_type)
                sink = None
                if name in body.files:
                    part.close()
                _add_unique(body.files, name, part)
            else:
                value = sink.getvalue().decode("latin-1")
                sink = None
                _add_unique(body.fields, name, value)

            if not found:
                break
    except BaseException:
        if sink is not None:
            sink.close()
        body.close()
        raise


def _read_header_line(stream: BinaryIO) -> Optional[str]:
    raw = stream.readline(MAX_SECTION_HEADER_LINE)
    if not raw:
        return None
    if not raw.endswith(b"\n") and len(raw) >= MAX_SECTION_HEADER_LINE:
        raise BodyParseError("Multipart section header line is too long")
    raw = raw.rstrip(b"\r\n")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def _read_section_headers(
    stream: BinaryIO,
) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Read one section's headers; a section without a name ends the body."""
    disposition: Optional[str] = None
    content_type: Optional[str] = None
    while True:
        line = _read_header_line(stream)
        if not line:
            break
        key, _, value = line.partition(":")
        key = key.strip().lower()
        if key == "content-disposition":
            disposition = value.strip()
        elif key == "content-type":
            content_type = value.strip()

    if disposition is None:
        return None, None, None
    name_match = NAME_PATTERN.search(disposition)
    name = _group_value(name_match) if name_match else None
    return name, _extract_file_name(disposition), content_type


def _extract_file_name(disposition: str) -> Optional[str]:
    matches = list(FILENAME_PATTERN.finditer(disposition))
    if not matches:
        return None
    # filename* carries the exact (RFC 5987) spelling when both are sent.
    match = next((m for m in matches if m.group("star")), matches[0])
    file_name = _group_value(match)
    if file_name.lower().startswith(UTF8_FILENAME_PREFIX):
        file_name = urllib.parse.unquote(file_name[len(UTF8_FILENAME_PREFIX) :])
    return file_name


def _group_value(match: re.Match) -> str:
    quoted = match.group("quoted")
    return quoted if quoted is not None else match.group("bare")
