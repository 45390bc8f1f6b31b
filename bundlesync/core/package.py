"""
The public entry point for one managed package.

`ResourcePackage` selects a play mode at initialisation and exposes the
asynchronous update and download operations plus synchronous asset queries.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path

from bundlesync.api.client import HttpRemoteServices
from bundlesync.api.services import (
    BuildinQueryServices,
    DeliveryQueryServices,
    DirectoryBuildinQuery,
    RemoteServices,
)
from bundlesync.exceptions import ContractViolationError
from bundlesync.models.asset_info import AssetInfo
from bundlesync.models.bundle_info import BundleInfo
from bundlesync.models.config import PackageConfig, PlayMode, VerifyLevel
from bundlesync.models.manifest import PackageManifest
from bundlesync.operations.base import AsyncOperation
from bundlesync.operations.download import (
    ResourceDownloaderOperation,
    ResourceUnpackerOperation,
)
from bundlesync.operations.initialize import InitializationOperation
from bundlesync.operations.system import OperationSystem
from bundlesync.operations.update import (
    PreDownloadContentOperation,
    UpdatePackageManifestOperation,
    UpdatePackageVersionOperation,
)
from bundlesync.storage.cache import CacheIndex
from bundlesync.storage.persistent import PackagePersistent
from bundlesync.transfer.downloader import FileTransfer, HttpFileTransfer, LocalFileTransfer
from bundlesync.utils.path import resolve_local_path

from .play_mode import (
    HostPlayMode,
    OfflinePlayMode,
    PlayModeServices,
    SimulatePlayMode,
    WebPlayMode,
)

log = logging.getLogger(__name__)


@dataclass
class InitializeParameters:
    buildin_root: Path | str = "buildin"
    sandbox_root: Path | str = "sandbox"
    verify_level: VerifyLevel = VerifyLevel.MIDDLE
    delivery_query: DeliveryQueryServices | None = None


@dataclass
class EditorSimulateModeParameters(InitializeParameters):
    simulate_manifest_path: Path | str = ""


@dataclass
class OfflinePlayModeParameters(InitializeParameters):
    unpack_transfer: FileTransfer | None = None


@dataclass
class HostPlayModeParameters(InitializeParameters):
    remote_services: RemoteServices | None = None
    buildin_query: BuildinQueryServices | None = None
    transfer: FileTransfer | None = None
    unpack_transfer: FileTransfer | None = None


@dataclass
class WebPlayModeParameters(InitializeParameters):
    remote_services: RemoteServices | None = None
    buildin_query: BuildinQueryServices | None = None
    transfer: FileTransfer | None = None


def create_parameters(config: PackageConfig) -> InitializeParameters:
    """Builds the initialisation parameters a configuration describes."""
    common = {
        "buildin_root": resolve_local_path(config.buildin_root),
        "sandbox_root": resolve_local_path(config.sandbox_root),
        "verify_level": config.verify_level,
    }
    if config.play_mode == PlayMode.SIMULATE:
        return EditorSimulateModeParameters(
            **common, simulate_manifest_path=resolve_local_path(config.simulate_manifest_path)
        )
    if config.play_mode == PlayMode.OFFLINE:
        return OfflinePlayModeParameters(**common)

    remote = HttpRemoteServices(
        config.host_server,
        config.effective_fallback_server,
        max_workers=config.max_concurrency,
    )
    transfer = HttpFileTransfer(max_workers=config.max_concurrency)
    if config.play_mode == PlayMode.WEB:
        return WebPlayModeParameters(**common, remote_services=remote, transfer=transfer)
    return HostPlayModeParameters(**common, remote_services=remote, transfer=transfer)


class ResourcePackage:
    """
    One named package and its active manifest.

    All asynchronous methods return operations registered with `system`; the
    caller drives them with `system.update()` or `await system.wait(op)`.
    """

    def __init__(
        self,
        package_name: str,
        system: OperationSystem | None = None,
        cache_index: CacheIndex | None = None,
    ):
        if not package_name:
            raise ContractViolationError("Package name is null or empty.")
        self.package_name = package_name
        self.system = system or OperationSystem()
        self.cache_index = cache_index or CacheIndex()
        self.play_mode: PlayModeServices | None = None
        self.persistent: PackagePersistent | None = None
        self._init_op: InitializationOperation | None = None

    def __repr__(self) -> str:
        return f"<ResourcePackage {self.package_name!r} version={self._version_or_none()}>"

    def _version_or_none(self) -> str | None:
        manifest = self.play_mode.active_manifest if self.play_mode else None
        return manifest.package_version if manifest else None

    # Initialisation
    @property
    def initialize_status(self) -> str:
        return self._init_op.status.value if self._init_op else "none"

    def initialize_async(self, parameters: InitializeParameters) -> InitializationOperation:
        self._check_initialize_parameters(parameters)
        self.persistent = PackagePersistent(
            self.package_name, Path(parameters.buildin_root), Path(parameters.sandbox_root)
        )
        self.play_mode = self._create_play_mode(parameters)
        self._init_op = self.play_mode.create_initialization_operation()
        self.system.start_operation(self._init_op)
        return self._init_op

    def _check_initialize_parameters(self, parameters: InitializeParameters) -> None:
        if self._init_op is not None and not (
            self._init_op.is_done and not self._init_op.succeeded
        ):
            raise ContractViolationError(
                f"Package '{self.package_name}' is initialized yet."
            )
        if isinstance(parameters, (HostPlayModeParameters, WebPlayModeParameters)):
            if parameters.remote_services is None:
                raise ContractViolationError("Remote services is null.")
        if isinstance(parameters, EditorSimulateModeParameters):
            if not parameters.simulate_manifest_path:
                raise ContractViolationError("Simulate manifest path is null or empty.")

    def _create_play_mode(self, parameters: InitializeParameters) -> PlayModeServices:
        common = (self.package_name, self.system, self.persistent, self.cache_index)
        buildin_root = Path(parameters.buildin_root)

        if isinstance(parameters, EditorSimulateModeParameters):
            return SimulatePlayMode(*common, Path(parameters.simulate_manifest_path))
        if isinstance(parameters, OfflinePlayModeParameters):
            return OfflinePlayMode(
                *common,
                parameters.verify_level,
                parameters.unpack_transfer or LocalFileTransfer(),
                parameters.delivery_query,
            )
        if isinstance(parameters, HostPlayModeParameters):
            return HostPlayMode(
                *common,
                parameters.verify_level,
                parameters.remote_services,
                parameters.buildin_query or DirectoryBuildinQuery(buildin_root),
                parameters.transfer or HttpFileTransfer(),
                parameters.unpack_transfer or LocalFileTransfer(),
                parameters.delivery_query,
            )
        if isinstance(parameters, WebPlayModeParameters):
            return WebPlayMode(
                *common,
                parameters.remote_services,
                parameters.buildin_query or DirectoryBuildinQuery(buildin_root),
                parameters.transfer or HttpFileTransfer(),
            )
        raise ContractViolationError(
            f"Unsupported initialize parameters: {type(parameters).__name__}"
        )

    def _require_play_mode(self) -> PlayModeServices:
        if self._init_op is None or self.play_mode is None:
            raise ContractViolationError(
                f"Package '{self.package_name}' is not initialized. "
                "Call initialize_async first."
            )
        if not self._init_op.is_done:
            raise ContractViolationError(
                f"Package '{self.package_name}' is still initializing."
            )
        if not self._init_op.succeeded:
            raise ContractViolationError(
                f"Package '{self.package_name}' failed to initialize: {self._init_op.error}"
            )
        return self.play_mode

    def _require_manifest(self) -> PackageManifest:
        manifest = self._require_play_mode().active_manifest
        if manifest is None:
            raise ContractViolationError(
                f"Package '{self.package_name}' has no active manifest. "
                "Update the manifest first."
            )
        return manifest

    def is_ready(self) -> bool:
        return (
            self._init_op is not None
            and self._init_op.succeeded
            and self.play_mode is not None
            and self.play_mode.active_manifest is not None
        )

    def destroy(self) -> None:
        """Aborts in-flight work and forgets the play mode."""
        self.system.clear()
        self.play_mode = None
        self._init_op = None

    # Updates
    def update_package_version_async(
        self, append_time_ticks: bool = True, timeout: float = 60
    ) -> UpdatePackageVersionOperation:
        op = self._require_play_mode().update_package_version_async(
            append_time_ticks, timeout
        )
        self.system.start_operation(op)
        return op

    def update_package_manifest_async(
        self, package_version: str, auto_save_version: bool = True, timeout: float = 60
    ) -> UpdatePackageManifestOperation:
        play_mode = self._require_play_mode()
        retained = self.cache_index.retained_count(self.package_name)
        if retained:
            log.warning(
                f"[yellow]Updating the manifest of '{self.package_name}' while "
                f"{retained} bundles are still in use.[/yellow]"
            )
        op = play_mode.update_package_manifest_async(
            package_version, auto_save_version, timeout
        )
        self.system.start_operation(op)
        return op

    def pre_download_content_async(
        self, package_version: str, timeout: float = 60
    ) -> PreDownloadContentOperation:
        op = self._require_play_mode().pre_download_content_async(package_version, timeout)
        self.system.start_operation(op)
        return op

    def clear_unused_cache_files_async(self) -> AsyncOperation:
        op = self._require_play_mode().clear_unused_cache_files_async()
        self.system.start_operation(op)
        return op

    def clear_all_cache_files_async(self) -> AsyncOperation:
        op = self._require_play_mode().clear_all_cache_files_async()
        self.system.start_operation(op)
        return op

    # Package info
    def get_package_version(self) -> str:
        return self._require_manifest().package_version

    def get_package_buildin_root(self) -> Path:
        self._require_play_mode()
        return self.persistent.buildin_package_root

    def get_package_sandbox_root(self) -> Path:
        self._require_play_mode()
        return self.persistent.sandbox_package_root

    def clear_package_sandbox(self) -> None:
        """Deletes the package's sandbox folder and drops its cache index entries."""
        self._require_play_mode()
        self.persistent.delete_sandbox_package_folder()
        removed = self.cache_index.clear_package(self.package_name)
        log.debug(f"Dropped {removed} cache index entries of '{self.package_name}'.")

    # Asset queries
    def get_asset_info(self, location: str, asset_type: str | None = None) -> AssetInfo:
        return self._require_manifest().convert_location_to_asset_info(location, asset_type)

    def get_asset_info_by_guid(self, asset_guid: str, asset_type: str | None = None) -> AssetInfo:
        return self._require_manifest().convert_asset_guid_to_asset_info(
            asset_guid, asset_type
        )

    def get_asset_infos(self, tags: list[str] | str) -> list[AssetInfo]:
        if isinstance(tags, str):
            tags = [tags]
        return self._require_manifest().get_assets_info_by_tags(tags)

    def check_location_valid(self, location: str) -> bool:
        return bool(self._require_manifest().try_mapping_to_asset_path(location))

    def is_need_download_from_remote(self, location: str | AssetInfo) -> bool:
        asset_info = location if isinstance(location, AssetInfo) else self.get_asset_info(location)
        return self._require_play_mode().is_need_download_from_remote(asset_info)

    # Resolution
    def resolve(self, asset_info: AssetInfo) -> BundleInfo:
        return self._require_play_mode().get_bundle_info(asset_info)

    def resolve_dependencies(self, asset_info: AssetInfo) -> list[BundleInfo]:
        return self._require_play_mode().get_dependent_bundle_infos(asset_info)

    def bundle_name(self, bundle_id: int) -> str:
        return self._require_manifest().get_bundle_name(bundle_id)

    # Retention
    def _asset_guids(self, asset_info: AssetInfo) -> list[str]:
        manifest = self._require_manifest()
        if asset_info.is_invalid:
            raise ContractViolationError(asset_info.error)
        main = manifest.get_main_package_bundle(asset_info.asset_path)
        deps = manifest.get_all_dependencies(asset_info.asset_path)
        return list(dict.fromkeys(b.cache_guid for b in [main, *deps]))

    def retain_asset(self, asset_info: AssetInfo) -> None:
        """Marks the asset's bundles as in use so cache clears keep them."""
        for guid in self._asset_guids(asset_info):
            self.cache_index.retain(self.package_name, guid)

    def release_asset(self, asset_info: AssetInfo) -> None:
        for guid in self._asset_guids(asset_info):
            self.cache_index.release(self.package_name, guid)

    # Downloaders
    def create_resource_downloader(
        self,
        tags: list[str] | str | None = None,
        max_concurrency: int = 10,
        max_retry: int = 3,
        timeout: float = 60,
    ) -> ResourceDownloaderOperation:
        """Everything not available locally, or only what `tags` select."""
        play_mode = self._require_play_mode()
        self._require_manifest()
        if tags is None:
            return play_mode.create_resource_downloader_by_all(
                max_concurrency, max_retry, timeout
            )
        if isinstance(tags, str):
            tags = [tags]
        return play_mode.create_resource_downloader_by_tags(
            tags, max_concurrency, max_retry, timeout
        )

    def create_bundle_downloader(
        self,
        targets: list[str] | list[AssetInfo] | str | AssetInfo,
        max_concurrency: int = 10,
        max_retry: int = 3,
        timeout: float = 60,
    ) -> ResourceDownloaderOperation:
        """The bundles (main plus dependencies) of specific assets."""
        play_mode = self._require_play_mode()
        if isinstance(targets, (str, AssetInfo)):
            targets = [targets]
        asset_infos = [
            t if isinstance(t, AssetInfo) else self.get_asset_info(t) for t in targets
        ]
        return play_mode.create_resource_downloader_by_paths(
            asset_infos, max_concurrency, max_retry, timeout
        )

    def create_resource_unpacker(
        self,
        tags: list[str] | str | None = None,
        max_concurrency: int = 10,
        max_retry: int = 3,
        timeout: float = 60,
    ) -> ResourceUnpackerOperation:
        play_mode = self._require_play_mode()
        self._require_manifest()
        if tags is None:
            return play_mode.create_resource_unpacker_by_all(
                max_concurrency, max_retry, timeout
            )
        if isinstance(tags, str):
            tags = [tags]
        return play_mode.create_resource_unpacker_by_tags(
            tags, max_concurrency, max_retry, timeout
        )

    def get_load_mode_counts(self) -> Counter:
        """How many bundles of the active manifest each storage tier would serve."""
        manifest = self._require_manifest()
        resolver = self._require_play_mode().resolver
        return Counter(resolver.resolve(bundle).load_mode for bundle in manifest.bundle_list)
