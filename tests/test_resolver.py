"""Tests for storage tier resolution and download list construction."""

import pytest

from bundlesync.api.services import MappedDeliveryQuery
from bundlesync.core.download_list import (
    collect_asset_bundles,
    get_download_list_by_all,
    get_download_list_by_paths,
    get_download_list_by_tags,
    get_unpack_list_by_all,
    get_unpack_list_by_tags,
)
from bundlesync.core.resolver import BundleResolver
from bundlesync.exceptions import ContractViolationError
from bundlesync.models.bundle_info import DeliveryFileInfo, LoadMode
from bundlesync.storage.cache import CacheIndex, CacheRecord

from conftest import FakeBuildinQuery, FakeRemoteServices


def _cache(cache_index, persistent, bundle):
    cache_index.record(
        "Demo",
        bundle.cache_guid,
        CacheRecord(
            bundle.file_hash,
            bundle.file_size,
            persistent.get_cache_data_path(bundle.cache_guid),
            persistent.get_cache_info_path(bundle.cache_guid),
        ),
    )


@pytest.fixture
def manifest(demo_builder):
    return demo_builder.build()


@pytest.fixture
def cache_index():
    return CacheIndex()


def _host_resolver(persistent, cache_index, buildin=(), delivery=None):
    return BundleResolver(
        "Demo",
        persistent,
        cache_index=cache_index,
        delivery_query=delivery,
        buildin_query=FakeBuildinQuery(buildin),
        remote_services=FakeRemoteServices("1.2.0"),
    )


class TestBundleResolver:
    def test_remote_when_nothing_is_local(self, manifest, persistent, cache_index):
        resolver = _host_resolver(persistent, cache_index)
        bundle = manifest.bundle_list[0]
        info = resolver.resolve(bundle)
        assert info.load_mode == LoadMode.LOAD_FROM_REMOTE
        assert info.remote_main_url == f"mem://main/{bundle.file_name}"
        assert info.remote_fallback_url == f"mem://fallback/{bundle.file_name}"
        assert info.sources == (info.remote_main_url, info.remote_fallback_url)

    def test_buildin_outranks_remote(self, manifest, persistent, cache_index):
        bundle = manifest.bundle_list[0]
        resolver = _host_resolver(persistent, cache_index, buildin=[bundle.file_name])
        info = resolver.resolve(bundle)
        assert info.load_mode == LoadMode.LOAD_FROM_STREAMING
        assert info.file_path == str(persistent.buildin_package_root / bundle.file_name)

    def test_cache_outranks_buildin(self, manifest, persistent, cache_index):
        bundle = manifest.bundle_list[0]
        _cache(cache_index, persistent, bundle)
        resolver = _host_resolver(persistent, cache_index, buildin=[bundle.file_name])
        info = resolver.resolve(bundle)
        assert info.load_mode == LoadMode.LOAD_FROM_CACHE
        assert info.file_path == str(persistent.get_cache_data_path(bundle.cache_guid))

    def test_delivery_outranks_cache(self, manifest, persistent, cache_index):
        bundle = manifest.bundle_list[0]
        _cache(cache_index, persistent, bundle)
        delivery = MappedDeliveryQuery(
            {bundle.file_name: DeliveryFileInfo("/obb/main.pak", offset=4096)}
        )
        resolver = _host_resolver(persistent, cache_index, delivery=delivery)
        info = resolver.resolve(bundle)
        assert info.load_mode == LoadMode.LOAD_FROM_DELIVERY
        assert info.file_path == "/obb/main.pak"
        assert info.delivery_offset == 4096

    def test_resolving_none_is_contract_violation(self, persistent, cache_index):
        with pytest.raises(ContractViolationError):
            _host_resolver(persistent, cache_index).resolve(None)

    def test_remote_without_services_is_contract_violation(self, manifest, persistent):
        resolver = BundleResolver(
            "Demo", persistent, buildin_query=FakeBuildinQuery()
        )
        with pytest.raises(ContractViolationError):
            resolver.resolve(manifest.bundle_list[0])

    def test_no_buildin_query_treats_everything_as_buildin(self, manifest, persistent):
        resolver = BundleResolver("Demo", persistent)
        assert all(
            resolver.resolve(b).load_mode == LoadMode.LOAD_FROM_STREAMING
            for b in manifest.bundle_list
        )

    def test_fresh_result_after_caching(self, manifest, persistent, cache_index):
        resolver = _host_resolver(persistent, cache_index)
        bundle = manifest.bundle_list[1]
        assert resolver.resolve(bundle).load_mode == LoadMode.LOAD_FROM_REMOTE
        _cache(cache_index, persistent, bundle)
        assert resolver.resolve(bundle).load_mode == LoadMode.LOAD_FROM_CACHE


def _names(bundles):
    return [b.bundle_name for b in bundles]


class TestDownloadLists:
    def test_all_skips_local_bundles(self, manifest, persistent, cache_index):
        _cache(cache_index, persistent, manifest.bundle_list[0])
        resolver = _host_resolver(
            persistent, cache_index, buildin=[manifest.bundle_list[2].file_name]
        )
        assert _names(get_download_list_by_all(manifest, resolver)) == ["dlc1.bundle"]

    def test_tags_include_untagged_bundles(self, manifest, persistent, cache_index):
        resolver = _host_resolver(persistent, cache_index)
        bundles = get_download_list_by_tags(manifest, resolver, ["dlc1"])
        assert _names(bundles) == ["core.bundle", "dlc1.bundle"]

    def test_unknown_tag_still_selects_untagged(self, manifest, persistent, cache_index):
        resolver = _host_resolver(persistent, cache_index)
        assert _names(get_download_list_by_tags(manifest, resolver, ["nope"])) == [
            "core.bundle"
        ]

    def test_paths_collect_main_and_dependencies_once(self, manifest, persistent, cache_index):
        resolver = _host_resolver(persistent, cache_index)
        infos = [
            manifest.convert_location_to_asset_info("Assets/Dlc2/Shield.prefab"),
            manifest.convert_location_to_asset_info("Assets/Dlc1/Sword.prefab"),
        ]
        bundles = get_download_list_by_paths(manifest, resolver, infos)
        assert _names(bundles) == ["dlc2.bundle", "core.bundle", "dlc1.bundle"]

    def test_invalid_requests_are_skipped_with_warning(self, manifest, caplog):
        infos = [
            manifest.convert_location_to_asset_info("Assets/Missing.prefab"),
            manifest.convert_location_to_asset_info("Assets/Hero.prefab"),
        ]
        with caplog.at_level("WARNING"):
            bundles = collect_asset_bundles(manifest, infos)
        assert _names(bundles) == ["core.bundle"]
        assert "Assets/Missing.prefab" in caplog.text

    def test_unpack_all_takes_uncached_buildin(self, manifest, persistent, cache_index):
        names = [b.file_name for b in manifest.bundle_list]
        _cache(cache_index, persistent, manifest.bundle_list[1])
        resolver = _host_resolver(persistent, cache_index, buildin=names)
        assert _names(get_unpack_list_by_all(manifest, resolver)) == [
            "core.bundle",
            "dlc2.bundle",
        ]

    def test_unpack_by_tags_excludes_untagged(self, manifest, persistent, cache_index):
        names = [b.file_name for b in manifest.bundle_list]
        resolver = _host_resolver(persistent, cache_index, buildin=names)
        assert _names(get_unpack_list_by_tags(manifest, resolver, ["dlc2"])) == [
            "dlc2.bundle"
        ]
