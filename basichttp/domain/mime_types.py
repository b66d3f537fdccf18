"""Extension to mime-type lookup used by the file-serving entry point."""

import mimetypes

DEFAULT_MIME_TYPE = "application/octet-stream"

# Types the platform registry is known to miss or get wrong.
_OVERRIDES = {
    ".js": "text/javascript",
    ".mjs": "text/javascript",
    ".json": "application/json",
    ".wasm": "application/wasm",
    ".webp": "image/webp",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".md": "text/markdown",
}


def get_mime_type(extension: str) -> str:
    """Return the mime type for a file extension such as ``.txt`` or ``txt``."""
    if not extension:
        return DEFAULT_MIME_TYPE
    normalized = extension.lower()
    if not normalized.startswith("."):
        normalized = f".{normalized}"
    if normalized in _OVERRIDES:
        return _OVERRIDES[normalized]
    mime_type, _ = mimetypes.guess_type(f"file{normalized}", strict=False)
    return mime_type or DEFAULT_MIME_TYPE
