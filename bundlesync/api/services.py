"""
Collaborator interfaces the engine consumes, plus the simple implementations
used when an application does not supply its own.
"""

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from bundlesync.exceptions import ContractViolationError
from bundlesync.models.bundle_info import DeliveryFileInfo
from bundlesync.utils.path import package_folder_name

log = logging.getLogger(__name__)


@runtime_checkable
class RemoteServices(Protocol):
    """Knows where a package's files live on the content server."""

    def get_remote_main_url(self, file_name: str) -> str: ...

    def get_remote_fallback_url(self, file_name: str) -> str: ...

    async def query_latest_version(
        self, package_name: str, append_time_ticks: bool, timeout: float, try_again: int
    ) -> str:
        """Returns the latest version string or raises RemoteServiceError."""
        ...


@runtime_checkable
class BuildinQueryServices(Protocol):
    """Answers whether a file ships inside the application's read-only store."""

    def query_buildin_files(self, package_name: str, file_name: str) -> bool: ...


@runtime_checkable
class DeliveryQueryServices(Protocol):
    """An out-of-band channel that outranks both cache and built-in storage."""

    def query_delivery_files(self, package_name: str, file_name: str) -> bool: ...

    def get_delivery_file_info(
        self, package_name: str, file_name: str
    ) -> DeliveryFileInfo: ...


class DirectoryBuildinQuery:
    """Treats `<buildin_root>/<package>/` as the built-in store."""

    def __init__(self, buildin_root: Path | str):
        self.buildin_root = Path(buildin_root)
        self._known: dict[tuple[str, str], bool] = {}

    def query_buildin_files(self, package_name: str, file_name: str) -> bool:
        key = (package_name, file_name)
        if key not in self._known:
            folder = self.buildin_root / package_folder_name(package_name)
            self._known[key] = (folder / file_name).is_file()
        return self._known[key]


class NoDeliveryQuery:
    """Used when the application has no delivery channel."""

    def query_delivery_files(self, package_name: str, file_name: str) -> bool:
        return False

    def get_delivery_file_info(
        self, package_name: str, file_name: str
    ) -> DeliveryFileInfo:
        raise ContractViolationError(
            f"No delivery channel is configured, cannot locate '{file_name}'."
        )


class MappedDeliveryQuery:
    """A delivery channel described by an explicit file-name to location map."""

    def __init__(self, files: dict[str, DeliveryFileInfo]):
        self._files = dict(files)

    def query_delivery_files(self, package_name: str, file_name: str) -> bool:
        return file_name in self._files

    def get_delivery_file_info(
        self, package_name: str, file_name: str
    ) -> DeliveryFileInfo:
        try:
            return self._files[file_name]
        except KeyError:
            raise ContractViolationError(
                f"File '{file_name}' is not part of the delivery channel."
            ) from None
