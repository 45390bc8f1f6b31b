"""
The four play modes. Each one independently implements the same contract of
operation factories and bundle queries; a package picks one at initialisation.
"""

import logging
from pathlib import Path
from typing import Protocol

from bundlesync.api.services import (
    BuildinQueryServices,
    DeliveryQueryServices,
    RemoteServices,
)
from bundlesync.exceptions import ContractViolationError
from bundlesync.models.asset_info import AssetInfo
from bundlesync.models.bundle_info import BundleInfo, LoadMode
from bundlesync.models.config import VerifyLevel
from bundlesync.models.manifest import PackageBundle, PackageManifest
from bundlesync.operations.base import AsyncOperation, CompletedOperation
from bundlesync.operations.cache_ops import (
    ClearAllCacheFilesOperation,
    ClearUnusedCacheFilesOperation,
)
from bundlesync.operations.download import (
    ResourceDownloaderOperation,
    ResourceUnpackerOperation,
)
from bundlesync.operations.initialize import (
    HostInitializationOperation,
    InitializationOperation,
    OfflineInitializationOperation,
    SimulateInitializationOperation,
    WebInitializationOperation,
)
from bundlesync.operations.system import OperationSystem
from bundlesync.operations.update import (
    HostPreDownloadContentOperation,
    HostUpdatePackageManifestOperation,
    ImmediateUpdatePackageManifestOperation,
    ImmediateUpdatePackageVersionOperation,
    PreDownloadContentOperation,
    RemoteUpdatePackageVersionOperation,
    UpdatePackageManifestOperation,
    UpdatePackageVersionOperation,
    WebUpdatePackageManifestOperation,
)
from bundlesync.storage.cache import CacheIndex
from bundlesync.storage.persistent import PackagePersistent
from bundlesync.transfer.downloader import FileTransfer

from .download_list import (
    collect_asset_bundles,
    get_download_list_by_all,
    get_download_list_by_paths,
    get_download_list_by_tags,
    get_unpack_list_by_all,
    get_unpack_list_by_tags,
)
from .resolver import BundleResolver

log = logging.getLogger(__name__)

DEFAULT_TRY_AGAIN = 2


class PlayModeServices(Protocol):
    """The contract every play mode implements."""

    package_name: str
    system: OperationSystem
    persistent: PackagePersistent
    cache_index: CacheIndex
    resolver: BundleResolver
    remote_services: RemoteServices | None
    transfer: FileTransfer | None
    active_manifest: PackageManifest | None

    def activate_manifest(self, manifest: PackageManifest) -> None: ...

    def create_initialization_operation(self) -> InitializationOperation: ...

    def update_package_version_async(
        self, append_time_ticks: bool, timeout: float
    ) -> UpdatePackageVersionOperation: ...

    def update_package_manifest_async(
        self, package_version: str, auto_save_version: bool, timeout: float
    ) -> UpdatePackageManifestOperation: ...

    def pre_download_content_async(
        self, package_version: str, timeout: float
    ) -> PreDownloadContentOperation: ...

    def clear_unused_cache_files_async(self) -> AsyncOperation: ...

    def clear_all_cache_files_async(self) -> AsyncOperation: ...

    def create_empty_downloader(self) -> ResourceDownloaderOperation: ...

    def create_resource_downloader_by_all(
        self, max_concurrency: int, max_retry: int, timeout: float
    ) -> ResourceDownloaderOperation: ...

    def create_resource_downloader_by_tags(
        self, tags: list[str], max_concurrency: int, max_retry: int, timeout: float
    ) -> ResourceDownloaderOperation: ...

    def create_resource_downloader_by_paths(
        self, asset_infos: list[AssetInfo], max_concurrency: int, max_retry: int, timeout: float
    ) -> ResourceDownloaderOperation: ...

    def create_resource_downloader_for(
        self,
        manifest: PackageManifest,
        tags: list[str] | None,
        max_concurrency: int,
        max_retry: int,
        timeout: float,
    ) -> ResourceDownloaderOperation: ...

    def create_bundle_downloader_for(
        self,
        manifest: PackageManifest,
        asset_infos: list[AssetInfo],
        max_concurrency: int,
        max_retry: int,
        timeout: float,
    ) -> ResourceDownloaderOperation: ...

    def create_resource_unpacker_by_all(
        self, max_concurrency: int, max_retry: int, timeout: float
    ) -> ResourceUnpackerOperation: ...

    def create_resource_unpacker_by_tags(
        self, tags: list[str], max_concurrency: int, max_retry: int, timeout: float
    ) -> ResourceUnpackerOperation: ...

    def get_bundle_info(self, asset_info: AssetInfo) -> BundleInfo: ...

    def get_dependent_bundle_infos(self, asset_info: AssetInfo) -> list[BundleInfo]: ...

    def is_need_download_from_remote(self, asset_info: AssetInfo) -> bool: ...


# Shared queries
def _require_manifest(manifest: PackageManifest | None, package_name: str) -> PackageManifest:
    if manifest is None:
        raise ContractViolationError(f"Package '{package_name}' has no active manifest.")
    return manifest


def _check_asset(asset_info: AssetInfo) -> None:
    if asset_info.is_invalid:
        raise ContractViolationError(asset_info.error)


def resolve_main_bundle(
    manifest: PackageManifest, resolver: BundleResolver, asset_info: AssetInfo
) -> BundleInfo:
    _check_asset(asset_info)
    return resolver.resolve(manifest.get_main_package_bundle(asset_info.asset_path))


def resolve_dependencies(
    manifest: PackageManifest, resolver: BundleResolver, asset_info: AssetInfo
) -> list[BundleInfo]:
    _check_asset(asset_info)
    main_guid = manifest.get_main_package_bundle(asset_info.asset_path).cache_guid
    seen = {main_guid}
    infos = []
    for bundle in manifest.get_all_dependencies(asset_info.asset_path):
        if bundle.cache_guid in seen:
            continue
        seen.add(bundle.cache_guid)
        infos.append(resolver.resolve(bundle))
    return infos


def needs_remote(
    manifest: PackageManifest, resolver: BundleResolver, asset_info: AssetInfo
) -> bool:
    if asset_info.is_invalid:
        log.warning(f"[yellow]{asset_info.error}[/yellow]")
        return False
    return any(
        resolver.resolve(bundle).load_mode == LoadMode.LOAD_FROM_REMOTE
        for bundle in collect_asset_bundles(manifest, [asset_info])
    )


def _build_batch(
    cls: type[ResourceDownloaderOperation] | type[ResourceUnpackerOperation],
    play_mode: "PlayModeServices",
    bundle_infos: list[BundleInfo],
    transfer: FileTransfer | None,
    max_concurrency: int,
    max_retry: int,
    timeout: float,
):
    return cls(
        play_mode.system,
        play_mode.package_name,
        bundle_infos,
        transfer,
        play_mode.persistent,
        play_mode.cache_index,
        max_concurrency,
        max_retry,
        timeout,
    )


class SimulatePlayMode:
    """Reads a simulated build's manifest; every bundle is read in place."""

    def __init__(
        self,
        package_name: str,
        system: OperationSystem,
        persistent: PackagePersistent,
        cache_index: CacheIndex,
        simulate_manifest_path: Path,
    ):
        self.package_name = package_name
        self.system = system
        self.persistent = persistent
        self.cache_index = cache_index
        self.simulate_manifest_path = Path(simulate_manifest_path)
        self.remote_services = None
        self.transfer = None
        self.active_manifest: PackageManifest | None = None
        self.resolver = BundleResolver(
            package_name,
            persistent,
            streaming_root=self.simulate_manifest_path.parent,
        )

    def activate_manifest(self, manifest: PackageManifest) -> None:
        self.active_manifest = manifest

    def create_initialization_operation(self) -> InitializationOperation:
        return SimulateInitializationOperation(self, self.simulate_manifest_path)

    def update_package_version_async(self, append_time_ticks, timeout):
        manifest = self.active_manifest
        if manifest is None:
            return ImmediateUpdatePackageVersionOperation(
                "", f"Package '{self.package_name}' has no active manifest."
            )
        return ImmediateUpdatePackageVersionOperation(manifest.package_version)

    def update_package_manifest_async(self, package_version, auto_save_version, timeout):
        return ImmediateUpdatePackageManifestOperation()

    def pre_download_content_async(self, package_version, timeout):
        return PreDownloadContentOperation(self)

    def clear_unused_cache_files_async(self) -> AsyncOperation:
        return CompletedOperation()

    def clear_all_cache_files_async(self) -> AsyncOperation:
        return CompletedOperation()

    def create_empty_downloader(self) -> ResourceDownloaderOperation:
        return ResourceDownloaderOperation.create_empty(self.system, self.package_name)

    def create_resource_downloader_by_all(self, max_concurrency, max_retry, timeout):
        return self.create_empty_downloader()

    def create_resource_downloader_by_tags(self, tags, max_concurrency, max_retry, timeout):
        return self.create_empty_downloader()

    def create_resource_downloader_by_paths(
        self, asset_infos, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def create_resource_downloader_for(
        self, manifest, tags, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def create_bundle_downloader_for(
        self, manifest, asset_infos, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def create_resource_unpacker_by_all(self, max_concurrency, max_retry, timeout):
        return ResourceUnpackerOperation.create_empty(self.system, self.package_name)

    def create_resource_unpacker_by_tags(self, tags, max_concurrency, max_retry, timeout):
        return ResourceUnpackerOperation.create_empty(self.system, self.package_name)

    def get_bundle_info(self, asset_info: AssetInfo) -> BundleInfo:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return resolve_main_bundle(manifest, self.resolver, asset_info)

    def get_dependent_bundle_infos(self, asset_info: AssetInfo) -> list[BundleInfo]:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return resolve_dependencies(manifest, self.resolver, asset_info)

    def is_need_download_from_remote(self, asset_info: AssetInfo) -> bool:
        return False


class OfflinePlayMode:
    """Serves the built-in manifest; bundles come from the cache or the built-in store."""

    def __init__(
        self,
        package_name: str,
        system: OperationSystem,
        persistent: PackagePersistent,
        cache_index: CacheIndex,
        verify_level: VerifyLevel,
        unpack_transfer: FileTransfer,
        delivery_query: DeliveryQueryServices | None = None,
    ):
        self.package_name = package_name
        self.system = system
        self.persistent = persistent
        self.cache_index = cache_index
        self.verify_level = verify_level
        self.unpack_transfer = unpack_transfer
        self.remote_services = None
        self.transfer = None
        self.active_manifest: PackageManifest | None = None
        self.resolver = BundleResolver(
            package_name,
            persistent,
            cache_index=cache_index,
            delivery_query=delivery_query,
        )

    def activate_manifest(self, manifest: PackageManifest) -> None:
        self.active_manifest = manifest

    def create_initialization_operation(self) -> InitializationOperation:
        return OfflineInitializationOperation(self, self.verify_level)

    def update_package_version_async(self, append_time_ticks, timeout):
        manifest = self.active_manifest
        if manifest is None:
            return ImmediateUpdatePackageVersionOperation(
                "", f"Package '{self.package_name}' has no active manifest."
            )
        return ImmediateUpdatePackageVersionOperation(manifest.package_version)

    def update_package_manifest_async(self, package_version, auto_save_version, timeout):
        return ImmediateUpdatePackageManifestOperation()

    def pre_download_content_async(self, package_version, timeout):
        return PreDownloadContentOperation(self)

    def clear_unused_cache_files_async(self) -> AsyncOperation:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return ClearUnusedCacheFilesOperation(self.persistent, self.cache_index, manifest)

    def clear_all_cache_files_async(self) -> AsyncOperation:
        return ClearAllCacheFilesOperation(self.persistent, self.cache_index)

    def create_empty_downloader(self) -> ResourceDownloaderOperation:
        return ResourceDownloaderOperation.create_empty(self.system, self.package_name)

    def create_resource_downloader_by_all(self, max_concurrency, max_retry, timeout):
        return self.create_empty_downloader()

    def create_resource_downloader_by_tags(self, tags, max_concurrency, max_retry, timeout):
        return self.create_empty_downloader()

    def create_resource_downloader_by_paths(
        self, asset_infos, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def create_resource_downloader_for(
        self, manifest, tags, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def create_bundle_downloader_for(
        self, manifest, asset_infos, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def _unpacker(self, bundles: list[PackageBundle], max_concurrency, max_retry, timeout):
        infos = [self.resolver.to_unpack_info(b) for b in bundles]
        return _build_batch(
            ResourceUnpackerOperation,
            self,
            infos,
            self.unpack_transfer,
            max_concurrency,
            max_retry,
            timeout,
        )

    def create_resource_unpacker_by_all(self, max_concurrency, max_retry, timeout):
        manifest = _require_manifest(self.active_manifest, self.package_name)
        bundles = get_unpack_list_by_all(manifest, self.resolver)
        return self._unpacker(bundles, max_concurrency, max_retry, timeout)

    def create_resource_unpacker_by_tags(self, tags, max_concurrency, max_retry, timeout):
        manifest = _require_manifest(self.active_manifest, self.package_name)
        bundles = get_unpack_list_by_tags(manifest, self.resolver, tags)
        return self._unpacker(bundles, max_concurrency, max_retry, timeout)

    def get_bundle_info(self, asset_info: AssetInfo) -> BundleInfo:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return resolve_main_bundle(manifest, self.resolver, asset_info)

    def get_dependent_bundle_infos(self, asset_info: AssetInfo) -> list[BundleInfo]:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return resolve_dependencies(manifest, self.resolver, asset_info)

    def is_need_download_from_remote(self, asset_info: AssetInfo) -> bool:
        return False


class HostPlayMode:
    """Networked mode: all four tiers, with remote content cached in the sandbox."""

    def __init__(
        self,
        package_name: str,
        system: OperationSystem,
        persistent: PackagePersistent,
        cache_index: CacheIndex,
        verify_level: VerifyLevel,
        remote_services: RemoteServices,
        buildin_query: BuildinQueryServices,
        transfer: FileTransfer,
        unpack_transfer: FileTransfer,
        delivery_query: DeliveryQueryServices | None = None,
    ):
        self.package_name = package_name
        self.system = system
        self.persistent = persistent
        self.cache_index = cache_index
        self.verify_level = verify_level
        self.remote_services = remote_services
        self.transfer = transfer
        self.unpack_transfer = unpack_transfer
        self.active_manifest: PackageManifest | None = None
        self.resolver = BundleResolver(
            package_name,
            persistent,
            cache_index=cache_index,
            delivery_query=delivery_query,
            buildin_query=buildin_query,
            remote_services=remote_services,
        )

    def activate_manifest(self, manifest: PackageManifest) -> None:
        previous = self.active_manifest
        self.active_manifest = manifest
        if previous is None or previous.package_version != manifest.package_version:
            log.info(
                f"Activated manifest '{self.package_name}' {manifest.package_version}."
            )

    def create_initialization_operation(self) -> InitializationOperation:
        return HostInitializationOperation(self, self.verify_level)

    def update_package_version_async(self, append_time_ticks, timeout):
        return RemoteUpdatePackageVersionOperation(
            self, append_time_ticks, timeout, DEFAULT_TRY_AGAIN
        )

    def update_package_manifest_async(self, package_version, auto_save_version, timeout):
        return HostUpdatePackageManifestOperation(
            self, package_version, auto_save_version, timeout, DEFAULT_TRY_AGAIN
        )

    def pre_download_content_async(self, package_version, timeout):
        return HostPreDownloadContentOperation(
            self, package_version, timeout, DEFAULT_TRY_AGAIN
        )

    def clear_unused_cache_files_async(self) -> AsyncOperation:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return ClearUnusedCacheFilesOperation(self.persistent, self.cache_index, manifest)

    def clear_all_cache_files_async(self) -> AsyncOperation:
        return ClearAllCacheFilesOperation(self.persistent, self.cache_index)

    def create_empty_downloader(self) -> ResourceDownloaderOperation:
        return ResourceDownloaderOperation.create_empty(self.system, self.package_name)

    def _downloader(self, bundles: list[PackageBundle], max_concurrency, max_retry, timeout):
        infos = [self.resolver.to_remote_info(b) for b in bundles]
        return _build_batch(
            ResourceDownloaderOperation,
            self,
            infos,
            self.transfer,
            max_concurrency,
            max_retry,
            timeout,
        )

    def create_resource_downloader_by_all(self, max_concurrency, max_retry, timeout):
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return self.create_resource_downloader_for(
            manifest, None, max_concurrency, max_retry, timeout
        )

    def create_resource_downloader_by_tags(self, tags, max_concurrency, max_retry, timeout):
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return self.create_resource_downloader_for(
            manifest, tags, max_concurrency, max_retry, timeout
        )

    def create_resource_downloader_by_paths(
        self, asset_infos, max_concurrency, max_retry, timeout
    ):
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return self.create_bundle_downloader_for(
            manifest, asset_infos, max_concurrency, max_retry, timeout
        )

    def create_resource_downloader_for(
        self, manifest, tags, max_concurrency, max_retry, timeout
    ):
        if tags is None:
            bundles = get_download_list_by_all(manifest, self.resolver)
        else:
            bundles = get_download_list_by_tags(manifest, self.resolver, tags)
        return self._downloader(bundles, max_concurrency, max_retry, timeout)

    def create_bundle_downloader_for(
        self, manifest, asset_infos, max_concurrency, max_retry, timeout
    ):
        bundles = get_download_list_by_paths(manifest, self.resolver, asset_infos)
        return self._downloader(bundles, max_concurrency, max_retry, timeout)

    def _unpacker(self, bundles: list[PackageBundle], max_concurrency, max_retry, timeout):
        infos = [self.resolver.to_unpack_info(b) for b in bundles]
        return _build_batch(
            ResourceUnpackerOperation,
            self,
            infos,
            self.unpack_transfer,
            max_concurrency,
            max_retry,
            timeout,
        )

    def create_resource_unpacker_by_all(self, max_concurrency, max_retry, timeout):
        manifest = _require_manifest(self.active_manifest, self.package_name)
        bundles = get_unpack_list_by_all(manifest, self.resolver)
        return self._unpacker(bundles, max_concurrency, max_retry, timeout)

    def create_resource_unpacker_by_tags(self, tags, max_concurrency, max_retry, timeout):
        manifest = _require_manifest(self.active_manifest, self.package_name)
        bundles = get_unpack_list_by_tags(manifest, self.resolver, tags)
        return self._unpacker(bundles, max_concurrency, max_retry, timeout)

    def get_bundle_info(self, asset_info: AssetInfo) -> BundleInfo:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return resolve_main_bundle(manifest, self.resolver, asset_info)

    def get_dependent_bundle_infos(self, asset_info: AssetInfo) -> list[BundleInfo]:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return resolve_dependencies(manifest, self.resolver, asset_info)

    def is_need_download_from_remote(self, asset_info: AssetInfo) -> bool:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return needs_remote(manifest, self.resolver, asset_info)


class WebPlayMode:
    """No sandbox: bundles are built-in or read from the server on demand."""

    def __init__(
        self,
        package_name: str,
        system: OperationSystem,
        persistent: PackagePersistent,
        cache_index: CacheIndex,
        remote_services: RemoteServices,
        buildin_query: BuildinQueryServices,
        transfer: FileTransfer,
    ):
        self.package_name = package_name
        self.system = system
        self.persistent = persistent
        self.cache_index = cache_index
        self.remote_services = remote_services
        self.transfer = transfer
        self.active_manifest: PackageManifest | None = None
        self.resolver = BundleResolver(
            package_name,
            persistent,
            buildin_query=buildin_query,
            remote_services=remote_services,
        )

    def activate_manifest(self, manifest: PackageManifest) -> None:
        self.active_manifest = manifest
        log.info(f"Activated manifest '{self.package_name}' {manifest.package_version}.")

    def create_initialization_operation(self) -> InitializationOperation:
        return WebInitializationOperation(self)

    def update_package_version_async(self, append_time_ticks, timeout):
        return RemoteUpdatePackageVersionOperation(
            self, append_time_ticks, timeout, DEFAULT_TRY_AGAIN
        )

    def update_package_manifest_async(self, package_version, auto_save_version, timeout):
        if auto_save_version:
            log.debug("Web packages keep no version record; auto save is ignored.")
        return WebUpdatePackageManifestOperation(
            self, package_version, timeout, DEFAULT_TRY_AGAIN
        )

    def pre_download_content_async(self, package_version, timeout):
        return PreDownloadContentOperation(self)

    def clear_unused_cache_files_async(self) -> AsyncOperation:
        return CompletedOperation()

    def clear_all_cache_files_async(self) -> AsyncOperation:
        return CompletedOperation()

    def create_empty_downloader(self) -> ResourceDownloaderOperation:
        return ResourceDownloaderOperation.create_empty(self.system, self.package_name)

    def create_resource_downloader_by_all(self, max_concurrency, max_retry, timeout):
        return self.create_empty_downloader()

    def create_resource_downloader_by_tags(self, tags, max_concurrency, max_retry, timeout):
        return self.create_empty_downloader()

    def create_resource_downloader_by_paths(
        self, asset_infos, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def create_resource_downloader_for(
        self, manifest, tags, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def create_bundle_downloader_for(
        self, manifest, asset_infos, max_concurrency, max_retry, timeout
    ):
        return self.create_empty_downloader()

    def create_resource_unpacker_by_all(self, max_concurrency, max_retry, timeout):
        return ResourceUnpackerOperation.create_empty(self.system, self.package_name)

    def create_resource_unpacker_by_tags(self, tags, max_concurrency, max_retry, timeout):
        return ResourceUnpackerOperation.create_empty(self.system, self.package_name)

    def get_bundle_info(self, asset_info: AssetInfo) -> BundleInfo:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return resolve_main_bundle(manifest, self.resolver, asset_info)

    def get_dependent_bundle_infos(self, asset_info: AssetInfo) -> list[BundleInfo]:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return resolve_dependencies(manifest, self.resolver, asset_info)

    def is_need_download_from_remote(self, asset_info: AssetInfo) -> bool:
        manifest = _require_manifest(self.active_manifest, self.package_name)
        return needs_remote(manifest, self.resolver, asset_info)
