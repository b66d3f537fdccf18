"""Integration tests exercising the demo file host over HTTP."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import requests

from tests.utils.http import send_raw_request

pytestmark = pytest.mark.integration

if TYPE_CHECKING:
    from tests.conftest import ServerProcessInfo


def test_healthz_reports_ok(base_url: str) -> None:
    """Health endpoint answers while the server is listening."""

    response = requests.get(f"{base_url}/healthz", timeout=5)
    assert response.status_code == 200
    assert response.text == "ok"


def test_upload_then_download(
    base_url: str, server_process: ServerProcessInfo
) -> None:
    """Uploaded files land in the served directory and can be fetched back."""

    payload = bytes(range(256)) * 64
    response = requests.post(
        f"{base_url}/upload",
        data={"owner": "tests"},
        files={"blob": ("blob.bin", payload, "application/octet-stream")},
        timeout=5,
    )
    assert response.status_code == 201
    assert "field owner=tests" in response.text
    assert "file blob=blob.bin" in response.text
    assert (server_process["directory"] / "blob.bin").read_bytes() == payload

    download = requests.get(f"{base_url}/files/blob.bin", timeout=5)
    assert download.status_code == 200
    assert download.content == payload
    assert download.headers["Content-Type"] == "application/octet-stream"


def test_download_honours_range_and_validators(
    base_url: str, server_process: ServerProcessInfo
) -> None:
    """Ranges give 206; a matching ETag gives 304."""

    (server_process["directory"] / "page.html").write_text(
        "<p>hello</p>", encoding="utf-8"
    )
    url = f"{base_url}/files/page.html"

    first = requests.get(url, timeout=5)
    assert first.status_code == 200
    assert first.headers["Content-Type"] == "text/html"
    etag = first.headers["ETag"]

    partial = requests.get(url, headers={"Range": "bytes=3-7"}, timeout=5)
    assert partial.status_code == 206
    assert partial.content == b"hello"
    assert partial.headers["Content-Range"] == "bytes 3-7/12"

    cached = requests.get(url, headers={"If-None-Match": etag}, timeout=5)
    assert cached.status_code == 304
    assert cached.content == b""

    unsatisfiable = requests.get(url, headers={"Range": "bytes=50-60"}, timeout=5)
    assert unsatisfiable.status_code == 416
    assert unsatisfiable.headers["Content-Range"] == "bytes */12"


def test_missing_file_is_not_found(base_url: str) -> None:
    """Unknown names give 404."""

    response = requests.get(f"{base_url}/files/absent.txt", timeout=5)
    assert response.status_code == 404


def test_traversal_is_forbidden(server_process: ServerProcessInfo) -> None:
    """Encoded parent segments cannot escape the served directory."""

    response = send_raw_request(
        server_process["host"],
        server_process["port"],
        b"GET /files/%2e%2e/%2e%2e/etc/passwd HTTP/1.1\r\nHost: localhost\r\n\r\n",
    )
    assert response.status_code == 403


def test_wrong_method_is_rejected(base_url: str) -> None:
    """Downloads only accept GET."""

    response = requests.delete(f"{base_url}/files/anything.txt", timeout=5)
    assert response.status_code == 405
    assert response.headers["Allow"] == "GET"


def test_unsupported_upload_type(base_url: str) -> None:
    """JSON bodies are not a form upload."""

    response = requests.post(f"{base_url}/upload", json={"a": 1}, timeout=5)
    assert response.status_code == 415
