"""
Turns a manifest and a selection (everything, tags, or asset requests) into
the de-duplicated list of bundles a downloader or unpacker should process.
"""

import logging
from collections.abc import Iterable

from bundlesync.models.asset_info import AssetInfo
from bundlesync.models.manifest import PackageBundle, PackageManifest

from .resolver import BundleResolver

log = logging.getLogger(__name__)


def _unique(bundles: Iterable[PackageBundle]) -> list[PackageBundle]:
    """Keeps the first occurrence of every cache GUID, in order."""
    seen: set[str] = set()
    result = []
    for bundle in bundles:
        if bundle.cache_guid not in seen:
            seen.add(bundle.cache_guid)
            result.append(bundle)
    return result


def is_tag_eligible(bundle: PackageBundle, tags: list[str]) -> bool:
    """Untagged bundles are shared content and belong to every tag selection."""
    return not bundle.has_any_tags() or bundle.has_tag(tags)


def get_download_list_by_all(
    manifest: PackageManifest, resolver: BundleResolver
) -> list[PackageBundle]:
    return [b for b in _unique(manifest.bundle_list) if not resolver.is_local(b)]


def get_download_list_by_tags(
    manifest: PackageManifest, resolver: BundleResolver, tags: list[str]
) -> list[PackageBundle]:
    return [
        b
        for b in _unique(manifest.bundle_list)
        if not resolver.is_local(b) and is_tag_eligible(b, tags)
    ]


def collect_asset_bundles(
    manifest: PackageManifest, asset_infos: Iterable[AssetInfo]
) -> list[PackageBundle]:
    """Main bundles plus dependencies of every valid request, each bundle once."""
    bundles: list[PackageBundle] = []
    for asset_info in asset_infos:
        if asset_info.is_invalid:
            log.warning(f"[yellow]Skipping invalid asset request: {asset_info.error}[/yellow]")
            continue
        bundles.append(manifest.get_main_package_bundle(asset_info.asset_path))
        bundles.extend(manifest.get_all_dependencies(asset_info.asset_path))
    return _unique(bundles)


def get_download_list_by_paths(
    manifest: PackageManifest, resolver: BundleResolver, asset_infos: Iterable[AssetInfo]
) -> list[PackageBundle]:
    return [
        b for b in collect_asset_bundles(manifest, asset_infos) if not resolver.is_local(b)
    ]


def get_unpack_list_by_all(
    manifest: PackageManifest, resolver: BundleResolver
) -> list[PackageBundle]:
    return [
        b
        for b in _unique(manifest.bundle_list)
        if not resolver.is_cached(b) and resolver.is_buildin(b)
    ]


def get_unpack_list_by_tags(
    manifest: PackageManifest, resolver: BundleResolver, tags: list[str]
) -> list[PackageBundle]:
    """Unlike downloads, unpacking by tag only takes bundles that carry a tag."""
    return [
        b
        for b in _unique(manifest.bundle_list)
        if not resolver.is_cached(b) and resolver.is_buildin(b) and b.has_tag(tags)
    ]
