"""Resolution of client-supplied names inside the served directory."""

from pathlib import Path


class ForbiddenPath(Exception):
    """Raised when a requested name escapes the served directory."""


def resolve_sandbox_path(directory: str, user_path: str) -> Path:
    """Resolve an already percent-decoded client path below ``directory``."""
    if "\x00" in user_path or "\\" in user_path:
        raise ForbiddenPath(user_path)

    directory_root = Path(directory).resolve()
    relative_part = user_path.lstrip("/")
    if not relative_part or ".." in Path(relative_part).parts:
        raise ForbiddenPath(user_path)

    target = (directory_root / relative_part).resolve()
    if directory_root not in target.parents:
        raise ForbiddenPath(user_path)
    return target


def upload_target(directory: str, file_name: str) -> Path:
    """Place an uploaded file in ``directory`` under its base name only."""
    base_name = Path(file_name.replace("\\", "/")).name
    if base_name in {"", ".", ".."}:
        raise ForbiddenPath(file_name)
    return resolve_sandbox_path(directory, base_name)
