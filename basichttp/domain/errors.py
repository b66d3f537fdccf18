"""Exception taxonomy shared by the dispatcher, body parser and range writer."""


class InvalidConfiguration(ValueError):
    """Raised when server settings are out of range or malformed."""


class AlreadyStarted(RuntimeError):
    """Raised when start is called on a server that is already listening."""


class AccessDenied(PermissionError):
    """Raised when the operating system refuses to bind the listening socket."""

    def __init__(self, message: str, remediation: str) -> None:
        super().__init__(f"{message}\n{remediation}")
        self.remediation = remediation


class UnsupportedMediaType(ValueError):
    """Raised for bodies or Range requests the server does not handle."""


class BodyParseError(ValueError):
    """Raised when a request body is structurally invalid."""


class InvalidFileSink(TypeError):
    """Raised when an on_file callback does not return a writable stream."""


class ResourceNotFound(FileNotFoundError):
    """Raised when a file requested for serving does not exist."""


class ClientDisconnected(ConnectionError):
    """Raised when the peer goes away while a response is being written."""


class ListenerClosed(OSError):
    """Raised by a pending accept once its listener has been closed."""
