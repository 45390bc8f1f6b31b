"""
Utilities for handling package folders, local paths and remote file URLs.
"""

from pathlib import Path

from pathvalidate import sanitize_filename


def package_folder_name(package_name: str) -> str:
    """A directory name for the package that is valid on every platform."""
    return sanitize_filename(package_name, platform="auto") or "_"


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def join_url(host_server: str, file_name: str) -> str:
    """Joins a server root and a file name with exactly one slash between them."""
    return f"{host_server.rstrip('/')}/{file_name.lstrip('/')}"


def resolve_local_path(path: str | Path) -> Path:
    """Expands `~` in a user-supplied path; relative paths stay relative to the cwd."""
    return Path(path).expanduser()
