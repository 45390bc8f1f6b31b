"""
Decides where a bundle can currently be read from.

Tiers are checked in a fixed order and the first match wins: delivery, cache,
built-in, remote.
"""

import logging
from pathlib import Path

from bundlesync.api.services import (
    BuildinQueryServices,
    DeliveryQueryServices,
    RemoteServices,
)
from bundlesync.exceptions import ContractViolationError
from bundlesync.models.bundle_info import BundleInfo, LoadMode
from bundlesync.models.manifest import PackageBundle
from bundlesync.storage.cache import CacheIndex
from bundlesync.storage.persistent import PackagePersistent

log = logging.getLogger(__name__)


class BundleResolver:
    """
    Resolves bundles of one package against the tiers its play mode has.

    A missing collaborator disables its tier, except the built-in query: with
    no query every bundle counts as built-in, which is how offline and
    simulated packages read straight from their local store.
    """

    def __init__(
        self,
        package_name: str,
        persistent: PackagePersistent,
        *,
        cache_index: CacheIndex | None = None,
        delivery_query: DeliveryQueryServices | None = None,
        buildin_query: BuildinQueryServices | None = None,
        remote_services: RemoteServices | None = None,
        streaming_root: Path | None = None,
    ):
        self.package_name = package_name
        self.persistent = persistent
        self.cache_index = cache_index
        self.delivery_query = delivery_query
        self.buildin_query = buildin_query
        self.remote_services = remote_services
        self.streaming_root = Path(streaming_root or persistent.buildin_package_root)

    # Tier predicates
    def is_delivery(self, bundle: PackageBundle) -> bool:
        if self.delivery_query is None:
            return False
        return self.delivery_query.query_delivery_files(self.package_name, bundle.file_name)

    def is_cached(self, bundle: PackageBundle) -> bool:
        if self.cache_index is None:
            return False
        return self.cache_index.is_cached(self.package_name, bundle.cache_guid)

    def is_buildin(self, bundle: PackageBundle) -> bool:
        if self.buildin_query is None:
            return True
        return self.buildin_query.query_buildin_files(self.package_name, bundle.file_name)

    def is_local(self, bundle: PackageBundle) -> bool:
        return self.is_delivery(bundle) or self.is_cached(bundle) or self.is_buildin(bundle)

    # Resolution
    def resolve(self, bundle: PackageBundle | None) -> BundleInfo:
        if bundle is None:
            raise ContractViolationError(
                "Cannot resolve a missing bundle; the asset lookup should have failed first."
            )

        if self.is_delivery(bundle):
            info = self.delivery_query.get_delivery_file_info(
                self.package_name, bundle.file_name
            )
            return BundleInfo(
                bundle,
                LoadMode.LOAD_FROM_DELIVERY,
                file_path=info.path,
                delivery_offset=info.offset,
            )

        if self.is_cached(bundle):
            return self._to_cache_info(bundle)

        if self.is_buildin(bundle):
            return self.to_streaming_info(bundle)

        return self.to_remote_info(bundle)

    def _to_cache_info(self, bundle: PackageBundle) -> BundleInfo:
        path = self.persistent.get_cache_data_path(bundle.cache_guid)
        return BundleInfo(bundle, LoadMode.LOAD_FROM_CACHE, file_path=str(path))

    def to_streaming_info(self, bundle: PackageBundle) -> BundleInfo:
        path = self.streaming_root / bundle.file_name
        return BundleInfo(bundle, LoadMode.LOAD_FROM_STREAMING, file_path=str(path))

    def to_remote_info(self, bundle: PackageBundle) -> BundleInfo:
        if self.remote_services is None:
            raise ContractViolationError(
                f"Bundle '{bundle.bundle_name}' is not local and package "
                f"'{self.package_name}' has no remote services."
            )
        return BundleInfo(
            bundle,
            LoadMode.LOAD_FROM_REMOTE,
            remote_main_url=self.remote_services.get_remote_main_url(bundle.file_name),
            remote_fallback_url=self.remote_services.get_remote_fallback_url(
                bundle.file_name
            ),
        )

    def to_unpack_info(self, bundle: PackageBundle) -> BundleInfo:
        """The built-in copy of a bundle, as a source for the unpacker."""
        return self.to_streaming_info(bundle)
