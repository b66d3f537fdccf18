"""Demo host: serves and stores files below one directory."""

import logging
from http import HTTPStatus
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from basichttp.domain.correlation_id import get_logger
from basichttp.domain.errors import (
    BodyParseError,
    InvalidFileSink,
    ResourceNotFound,
    UnsupportedMediaType,
)
from basichttp.domain.http_types import HttpRequest, HttpResponse
from basichttp.domain.sandbox import ForbiddenPath, resolve_sandbox_path, upload_target
from basichttp.pipeline.body_parser import parse_body
from basichttp.pipeline.range_writer import write_file, write_text

FILE_LOGGER = get_logger("handlers.file")

FILES_ENDPOINT_PREFIX = "/files/"
UPLOAD_ENDPOINT = "/upload"
HEALTHZ_ENDPOINT = "/healthz"


def _finish(response: HttpResponse, status: HTTPStatus) -> None:
    response.status_code = int(status)
    response.close()


def _remove_partial_uploads(stored: list[tuple[str, Path]]) -> None:
    for field_name, target in stored:
        FILE_LOGGER.info(
            "Removing partial upload",
            extra={
                "event": "upload_discarded",
                "field": field_name,
                "path": target.as_posix(),
            },
        )
        target.unlink(missing_ok=True)


class FileHost:
    """Request handler for the demo server.

    ``GET /files/<name>`` serves a file with range and validator support,
    ``POST /files/`` or ``POST /upload`` stores multipart file parts, and
    ``GET /healthz`` reports 503 once ``is_draining`` turns true.
    """

    def __init__(
        self, directory: str, is_draining: Optional[Callable[[], bool]] = None
    ) -> None:
        self.directory = directory
        self._is_draining = is_draining or (lambda: False)

    def __call__(self, request: HttpRequest, response: HttpResponse) -> None:
        path = request.path
        if path == HEALTHZ_ENDPOINT:
            self.handle_healthz(request, response)
        elif path in (UPLOAD_ENDPOINT, FILES_ENDPOINT_PREFIX):
            if request.method != "POST":
                response.headers["Allow"] = "POST"
                _finish(response, HTTPStatus.METHOD_NOT_ALLOWED)
                return
            self.handle_upload(request, response)
        elif path.startswith(FILES_ENDPOINT_PREFIX):
            if request.method != "GET":
                response.headers["Allow"] = "GET"
                _finish(response, HTTPStatus.METHOD_NOT_ALLOWED)
                return
            self.handle_download(request, response)
        else:
            _finish(response, HTTPStatus.NOT_FOUND)

    def handle_healthz(self, request: HttpRequest, response: HttpResponse) -> None:
        draining = self._is_draining()
        FILE_LOGGER.info(
            "Health check performed",
            extra={"event": "healthz_check", "draining": draining},
        )
        if draining:
            response.status_code = int(HTTPStatus.SERVICE_UNAVAILABLE)
            write_text(request, response, "draining")
        else:
            write_text(request, response, "ok")

    def handle_download(self, request: HttpRequest, response: HttpResponse) -> None:
        name = request.path[len(FILES_ENDPOINT_PREFIX) :]
        try:
            target = resolve_sandbox_path(self.directory, name)
        except ForbiddenPath:
            FILE_LOGGER.warning(
                "Forbidden path access blocked",
                extra={"event": "forbidden_path", "path": name},
            )
            _finish(response, HTTPStatus.FORBIDDEN)
            return

        try:
            write_file(request, response, target)
        except ResourceNotFound:
            FILE_LOGGER.info(
                "File not found",
                extra={"event": "file_not_found", "path": target.as_posix()},
            )
            response.close()
        except UnsupportedMediaType:
            _finish(response, HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE)

    def handle_upload(self, request: HttpRequest, response: HttpResponse) -> None:
        stored: list[tuple[str, Path]] = []

        def open_target(
            field_name: str, file_name: str, content_type: Optional[str]
        ) -> BinaryIO:
            target = upload_target(self.directory, file_name)
            if FILE_LOGGER.logger.isEnabledFor(logging.DEBUG):
                FILE_LOGGER.debug(
                    "File write started",
                    extra={
                        "event": "file_write_started",
                        "field": field_name,
                        "path": target.as_posix(),
                        "content_type": content_type,
                    },
                )
            target.parent.mkdir(parents=True, exist_ok=True)
            stored.append((field_name, target))
            return open(target, "wb")  # pylint: disable=consider-using-with

        try:
            body = parse_body(request, on_file=open_target)
        except ForbiddenPath as error:
            _remove_partial_uploads(stored)
            FILE_LOGGER.warning(
                "Forbidden upload name rejected",
                extra={"event": "forbidden_path", "path": str(error)},
            )
            _finish(response, HTTPStatus.FORBIDDEN)
            return
        except UnsupportedMediaType:
            _remove_partial_uploads(stored)
            _finish(response, HTTPStatus.UNSUPPORTED_MEDIA_TYPE)
            return
        except (BodyParseError, InvalidFileSink) as error:
            _remove_partial_uploads(stored)
            FILE_LOGGER.warning(
                "Request body rejected",
                extra={"event": "body_rejected", "error": str(error)},
            )
            _finish(response, HTTPStatus.BAD_REQUEST)
            return
        except BaseException:
            _remove_partial_uploads(stored)
            raise

        with body:
            lines = [f"field {name}={value}" for name, value in body.fields.items()]
            lines.extend(
                f"file {name}={part.file_name}" for name, part in body.files.items()
            )
        for field_name, target in stored:
            FILE_LOGGER.info(
                "File write complete",
                extra={
                    "event": "file_write_complete",
                    "field": field_name,
                    "path": target.as_posix(),
                    "bytes_out": target.stat().st_size,
                },
            )
        response.status_code = int(HTTPStatus.CREATED)
        write_text(request, response, "\n".join(lines) + "\n")
