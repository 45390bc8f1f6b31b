"""
Operations that bring a package to a new version: version query, manifest
activation and pre-download of a version that is not yet active.
"""

import logging
from enum import Enum, auto
from typing import TYPE_CHECKING

from bundlesync.models.manifest import PackageManifest

from .base import AsyncOperation
from .download import ResourceDownloaderOperation
from .manifest_ops import (
    DownloadManifestOperation,
    LoadCacheManifestOperation,
    LoadRemoteManifestOperation,
    QueryRemotePackageVersionOperation,
)

if TYPE_CHECKING:
    from bundlesync.core.play_mode import PlayModeServices

log = logging.getLogger(__name__)


def _check_params(package_name: str, package_version: str) -> str:
    if not package_name:
        return "Package name is null or empty."
    if not package_version:
        return "Package version is null or empty."
    return ""


class UpdatePackageVersionOperation(AsyncOperation):
    """Result holder: `package_version` is set on success."""

    def __init__(self) -> None:
        super().__init__()
        self.package_version = ""


class ImmediateUpdatePackageVersionOperation(UpdatePackageVersionOperation):
    """Reports a version known locally without any I/O."""

    def __init__(self, package_version: str, error: str = ""):
        super().__init__()
        self._known_version = package_version
        self._error = error

    def _start(self) -> None:
        if self._error:
            self._fail(self._error)
        else:
            self.package_version = self._known_version
            self._succeed()

    def _update(self) -> None:
        pass


class RemoteUpdatePackageVersionOperation(UpdatePackageVersionOperation):
    class _Steps(Enum):
        NONE = auto()
        QUERY_REMOTE_PACKAGE_VERSION = auto()
        DONE = auto()

    def __init__(
        self,
        play_mode: "PlayModeServices",
        append_time_ticks: bool,
        timeout: float,
        try_again: int = 0,
    ):
        super().__init__()
        self._play_mode = play_mode
        self._append_time_ticks = append_time_ticks
        self._timeout = timeout
        self._try_again = try_again
        self._query_op: QueryRemotePackageVersionOperation | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.QUERY_REMOTE_PACKAGE_VERSION

    def _update(self) -> None:
        if self._step == self._Steps.QUERY_REMOTE_PACKAGE_VERSION:
            if self._query_op is None:
                self._query_op = QueryRemotePackageVersionOperation(
                    self._play_mode.remote_services,
                    self._play_mode.package_name,
                    self._append_time_ticks,
                    self._timeout,
                    self._try_again,
                )
                self._start_child(self._query_op)
            if not self._query_op.is_done:
                return

            self._step = self._Steps.DONE
            if self._query_op.succeeded:
                self.package_version = self._query_op.package_version
                self._succeed()
            else:
                self._fail(self._query_op.error)

    def _on_abort(self) -> None:
        if self._query_op is not None:
            self._query_op.abort()


class UpdatePackageManifestOperation(AsyncOperation):
    """Activates the manifest of a given version."""

    def save_package_version(self) -> None:
        """Persists the active version so the next start selects it."""
        log.debug(f"{type(self).__name__} keeps no version record.")


class ImmediateUpdatePackageManifestOperation(UpdatePackageManifestOperation):
    """Offline and simulated packages already hold their only manifest."""

    def _start(self) -> None:
        self._succeed()

    def _update(self) -> None:
        pass


class HostUpdatePackageManifestOperation(UpdatePackageManifestOperation):
    """
    Loads the requested manifest from the sandbox, downloading it first if it
    is not cached, and activates it.

    The downloaded file is always re-read from the sandbox so the next start
    sees the identical bytes.
    """

    class _Steps(Enum):
        NONE = auto()
        CHECK_PARAMS = auto()
        CHECK_ACTIVE_MANIFEST = auto()
        TRY_LOAD_CACHE_MANIFEST = auto()
        DOWNLOAD_MANIFEST = auto()
        LOAD_CACHE_MANIFEST = auto()
        DONE = auto()

    def __init__(
        self,
        play_mode: "PlayModeServices",
        package_version: str,
        auto_save_version: bool,
        timeout: float,
        try_again: int = 0,
    ):
        super().__init__()
        self._play_mode = play_mode
        self.package_name = play_mode.package_name
        self.package_version = package_version
        self.auto_save_version = auto_save_version
        self.timeout = timeout
        self.try_again = try_again
        self._try_load_op: LoadCacheManifestOperation | None = None
        self._download_op: DownloadManifestOperation | None = None
        self._load_op: LoadCacheManifestOperation | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.CHECK_PARAMS

    def _update(self) -> None:
        if self._step == self._Steps.CHECK_PARAMS:
            error = _check_params(self.package_name, self.package_version)
            if error:
                self._step = self._Steps.DONE
                self._fail(error)
                return
            self._step = self._Steps.CHECK_ACTIVE_MANIFEST

        if self._step == self._Steps.CHECK_ACTIVE_MANIFEST:
            active = self._play_mode.active_manifest
            if active is not None and active.package_version == self.package_version:
                log.debug(f"Manifest {self.package_version} is already active.")
                self._step = self._Steps.DONE
                self._succeed()
                return
            self._step = self._Steps.TRY_LOAD_CACHE_MANIFEST

        if self._step == self._Steps.TRY_LOAD_CACHE_MANIFEST:
            if self._try_load_op is None:
                self._try_load_op = LoadCacheManifestOperation(
                    self._play_mode.persistent, self.package_version
                )
                self._start_child(self._try_load_op)
            if not self._try_load_op.is_done:
                return
            if self._try_load_op.succeeded:
                self._activate(self._try_load_op.manifest)
                return
            log.debug(f"No usable cached manifest: {self._try_load_op.error}")
            self._step = self._Steps.DOWNLOAD_MANIFEST

        if self._step == self._Steps.DOWNLOAD_MANIFEST:
            if self._download_op is None:
                self._download_op = DownloadManifestOperation(
                    self._play_mode.persistent,
                    self._play_mode.remote_services,
                    self._play_mode.transfer,
                    self.package_version,
                    self.timeout,
                    self.try_again,
                )
                self._start_child(self._download_op)
            self.progress = self._download_op.progress
            if not self._download_op.is_done:
                return
            if not self._download_op.succeeded:
                self._step = self._Steps.DONE
                self._fail(self._download_op.error)
                return
            self._step = self._Steps.LOAD_CACHE_MANIFEST

        if self._step == self._Steps.LOAD_CACHE_MANIFEST:
            if self._load_op is None:
                self._load_op = LoadCacheManifestOperation(
                    self._play_mode.persistent, self.package_version
                )
                self._start_child(self._load_op)
            if not self._load_op.is_done:
                return
            if self._load_op.succeeded:
                self._activate(self._load_op.manifest)
            else:
                self._step = self._Steps.DONE
                self._fail(self._load_op.error)

    def _activate(self, manifest: PackageManifest) -> None:
        self._play_mode.activate_manifest(manifest)
        if self.auto_save_version:
            self.save_package_version()
        self._step = self._Steps.DONE
        self._succeed()

    def save_package_version(self) -> None:
        active = self._play_mode.active_manifest
        if active is None:
            log.warning("[yellow]No active manifest, version record not saved.[/yellow]")
            return
        self._play_mode.persistent.save_sandbox_package_version_file(
            active.package_version
        )

    def _on_abort(self) -> None:
        for op in (self._try_load_op, self._download_op, self._load_op):
            if op is not None:
                op.abort()


class WebUpdatePackageManifestOperation(UpdatePackageManifestOperation):
    """Fetches the requested manifest into memory and activates it."""

    class _Steps(Enum):
        NONE = auto()
        CHECK_PARAMS = auto()
        CHECK_ACTIVE_MANIFEST = auto()
        LOAD_REMOTE_MANIFEST = auto()
        DONE = auto()

    def __init__(
        self,
        play_mode: "PlayModeServices",
        package_version: str,
        timeout: float,
        try_again: int = 0,
    ):
        super().__init__()
        self._play_mode = play_mode
        self.package_name = play_mode.package_name
        self.package_version = package_version
        self.timeout = timeout
        self.try_again = try_again
        self._load_op: LoadRemoteManifestOperation | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.CHECK_PARAMS

    def _update(self) -> None:
        if self._step == self._Steps.CHECK_PARAMS:
            error = _check_params(self.package_name, self.package_version)
            if error:
                self._step = self._Steps.DONE
                self._fail(error)
                return
            self._step = self._Steps.CHECK_ACTIVE_MANIFEST

        if self._step == self._Steps.CHECK_ACTIVE_MANIFEST:
            active = self._play_mode.active_manifest
            if active is not None and active.package_version == self.package_version:
                self._step = self._Steps.DONE
                self._succeed()
                return
            self._step = self._Steps.LOAD_REMOTE_MANIFEST

        if self._step == self._Steps.LOAD_REMOTE_MANIFEST:
            if self._load_op is None:
                self._load_op = LoadRemoteManifestOperation(
                    self._play_mode.remote_services,
                    self._play_mode.transfer,
                    self.package_name,
                    self.package_version,
                    self.timeout,
                    self.try_again,
                )
                self._start_child(self._load_op)
            if not self._load_op.is_done:
                return
            self._step = self._Steps.DONE
            if self._load_op.succeeded:
                self._play_mode.activate_manifest(self._load_op.manifest)
                self._succeed()
            else:
                self._fail(self._load_op.error)

    def _on_abort(self) -> None:
        if self._load_op is not None:
            self._load_op.abort()


class PreDownloadContentOperation(AsyncOperation):
    """
    Makes the manifest of some version available without activating it, so
    its bundles can be fetched ahead of the switch.

    The base class finishes immediately and hands out empty downloaders; it
    serves play modes that have nothing to pre-download.
    """

    def __init__(self, play_mode: "PlayModeServices"):
        super().__init__()
        self._play_mode = play_mode
        self.manifest: PackageManifest | None = None

    def _start(self) -> None:
        self._succeed()

    def _update(self) -> None:
        pass

    def _empty_unless_ready(self) -> ResourceDownloaderOperation | None:
        if self.manifest is None:
            if self.succeeded:
                log.debug("Nothing to pre-download in this play mode.")
            else:
                log.warning(
                    "[yellow]Pre-download content is not ready, "
                    "returning an empty downloader.[/yellow]"
                )
            return self._play_mode.create_empty_downloader()
        return None

    def create_resource_downloader(
        self, max_concurrency: int, max_retry: int, timeout: float = 60
    ) -> ResourceDownloaderOperation:
        empty = self._empty_unless_ready()
        if empty is not None:
            return empty
        return self._play_mode.create_resource_downloader_for(
            self.manifest, None, max_concurrency, max_retry, timeout
        )

    def create_resource_downloader_by_tags(
        self, tags: list[str] | str, max_concurrency: int, max_retry: int, timeout: float = 60
    ) -> ResourceDownloaderOperation:
        empty = self._empty_unless_ready()
        if empty is not None:
            return empty
        if isinstance(tags, str):
            tags = [tags]
        return self._play_mode.create_resource_downloader_for(
            self.manifest, tags, max_concurrency, max_retry, timeout
        )

    def create_bundle_downloader(
        self, locations: list[str], max_concurrency: int, max_retry: int, timeout: float = 60
    ) -> ResourceDownloaderOperation:
        empty = self._empty_unless_ready()
        if empty is not None:
            return empty
        asset_infos = [
            self.manifest.convert_location_to_asset_info(location)
            for location in locations
        ]
        return self._play_mode.create_bundle_downloader_for(
            self.manifest, asset_infos, max_concurrency, max_retry, timeout
        )


class HostPreDownloadContentOperation(PreDownloadContentOperation):
    class _Steps(Enum):
        NONE = auto()
        CHECK_PARAMS = auto()
        CHECK_ACTIVE_MANIFEST = auto()
        TRY_LOAD_CACHE_MANIFEST = auto()
        DOWNLOAD_MANIFEST = auto()
        LOAD_CACHE_MANIFEST = auto()
        DONE = auto()

    def __init__(
        self,
        play_mode: "PlayModeServices",
        package_version: str,
        timeout: float,
        try_again: int = 0,
    ):
        super().__init__(play_mode)
        self.package_version = package_version
        self.timeout = timeout
        self.try_again = try_again
        self._try_load_op: LoadCacheManifestOperation | None = None
        self._download_op: DownloadManifestOperation | None = None
        self._load_op: LoadCacheManifestOperation | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.CHECK_PARAMS

    def _update(self) -> None:
        if self._step == self._Steps.CHECK_PARAMS:
            error = _check_params(self._play_mode.package_name, self.package_version)
            if error:
                self._step = self._Steps.DONE
                self._fail(error)
                return
            self._step = self._Steps.CHECK_ACTIVE_MANIFEST

        if self._step == self._Steps.CHECK_ACTIVE_MANIFEST:
            active = self._play_mode.active_manifest
            if active is not None and active.package_version == self.package_version:
                self._done_with(active)
                return
            self._step = self._Steps.TRY_LOAD_CACHE_MANIFEST

        if self._step == self._Steps.TRY_LOAD_CACHE_MANIFEST:
            if self._try_load_op is None:
                self._try_load_op = LoadCacheManifestOperation(
                    self._play_mode.persistent, self.package_version
                )
                self._start_child(self._try_load_op)
            if not self._try_load_op.is_done:
                return
            if self._try_load_op.succeeded:
                self._done_with(self._try_load_op.manifest)
                return
            self._step = self._Steps.DOWNLOAD_MANIFEST

        if self._step == self._Steps.DOWNLOAD_MANIFEST:
            if self._download_op is None:
                self._download_op = DownloadManifestOperation(
                    self._play_mode.persistent,
                    self._play_mode.remote_services,
                    self._play_mode.transfer,
                    self.package_version,
                    self.timeout,
                    self.try_again,
                )
                self._start_child(self._download_op)
            if not self._download_op.is_done:
                return
            if not self._download_op.succeeded:
                self._step = self._Steps.DONE
                self._fail(self._download_op.error)
                return
            self._step = self._Steps.LOAD_CACHE_MANIFEST

        if self._step == self._Steps.LOAD_CACHE_MANIFEST:
            if self._load_op is None:
                self._load_op = LoadCacheManifestOperation(
                    self._play_mode.persistent, self.package_version
                )
                self._start_child(self._load_op)
            if not self._load_op.is_done:
                return
            if self._load_op.succeeded:
                self._done_with(self._load_op.manifest)
            else:
                self._step = self._Steps.DONE
                self._fail(self._load_op.error)

    def _done_with(self, manifest: PackageManifest) -> None:
        self.manifest = manifest
        self._step = self._Steps.DONE
        self._succeed()

    def _on_abort(self) -> None:
        for op in (self._try_load_op, self._download_op, self._load_op):
            if op is not None:
                op.abort()
