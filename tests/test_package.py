"""End-to-end tests of a networked package against in-memory collaborators."""

import asyncio

import pytest

from bundlesync.core.package import HostPlayModeParameters, ResourcePackage
from bundlesync.exceptions import ContractViolationError
from bundlesync.models.bundle_info import LoadMode
from bundlesync.storage.persistent import get_manifest_file_name

from conftest import FakeBuildinQuery, FakeRemoteServices, FakeTransfer, ManifestBuilder


async def run(package, op):
    await package.system.wait(op)
    return op


async def open_host_package(tmp_path, remote, transfer, buildin=()):
    package = ResourcePackage("Demo")
    params = HostPlayModeParameters(
        buildin_root=tmp_path / "buildin",
        sandbox_root=tmp_path / "sandbox",
        remote_services=remote,
        buildin_query=FakeBuildinQuery(buildin),
        transfer=transfer,
    )
    init = await run(package, package.initialize_async(params))
    assert init.succeeded, init.error
    return package


async def activate(package, version="1.2.0", auto_save=True):
    op = await run(package, package.update_package_manifest_async(version, auto_save))
    assert op.succeeded, op.error
    return op


class TestHostInitialization:
    @pytest.mark.asyncio
    async def test_first_start_has_no_manifest(self, tmp_path):
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), FakeTransfer())
        assert not package.is_ready()
        with pytest.raises(ContractViolationError):
            package.get_package_version()

    @pytest.mark.asyncio
    async def test_initialize_twice_is_rejected(self, tmp_path):
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), FakeTransfer())
        with pytest.raises(ContractViolationError):
            package.initialize_async(
                HostPlayModeParameters(remote_services=FakeRemoteServices("1.2.0"))
            )

    def test_host_mode_requires_remote_services(self, tmp_path):
        package = ResourcePackage("Demo")
        with pytest.raises(ContractViolationError):
            package.initialize_async(HostPlayModeParameters(sandbox_root=tmp_path))

    def test_queries_before_initialization(self):
        package = ResourcePackage("Demo")
        with pytest.raises(ContractViolationError):
            package.update_package_version_async()

    def test_empty_package_name(self):
        with pytest.raises(ContractViolationError):
            ResourcePackage("")


class TestVersionAndManifestUpdates:
    @pytest.mark.asyncio
    async def test_query_latest_version(self, tmp_path):
        remote = FakeRemoteServices("1.2.0")
        package = await open_host_package(tmp_path, remote, FakeTransfer())
        op = await run(package, package.update_package_version_async(False, 5))
        assert op.succeeded
        assert op.package_version == "1.2.0"
        assert remote.query_count == 1

    @pytest.mark.asyncio
    async def test_version_query_failure(self, tmp_path):
        package = await open_host_package(
            tmp_path, FakeRemoteServices(fail=True), FakeTransfer()
        )
        op = await run(package, package.update_package_version_async())
        assert not op.succeeded
        assert "No version published" in op.error

    @pytest.mark.asyncio
    async def test_update_downloads_and_activates(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)

        assert package.is_ready()
        assert package.get_package_version() == "1.2.0"
        assert package.persistent.read_sandbox_package_version_file() == "1.2.0"
        assert package.persistent.get_sandbox_manifest_path("1.2.0").is_file()
        assert package.persistent.list_sandbox_manifest_versions() == ["1.2.0"]

    @pytest.mark.asyncio
    async def test_same_version_needs_no_network(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)
        requests = len(transfer.requests)

        await activate(package)
        assert len(transfer.requests) == requests

    @pytest.mark.asyncio
    async def test_unwritable_version_record_fails_the_update(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        package.persistent.get_sandbox_package_version_path().mkdir(parents=True)

        op = await run(package, package.update_package_manifest_async("1.2.0", True))
        assert not op.succeeded
        assert "Error" in op.error
        assert list(package.persistent.sandbox_manifest_root.glob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_empty_version_fails_without_network(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        op = await run(package, package.update_package_manifest_async(""))
        assert not op.succeeded
        assert op.error == "Package version is null or empty."
        assert transfer.requests == []

    @pytest.mark.asyncio
    async def test_without_auto_save_no_version_record(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        op = await activate(package, auto_save=False)
        assert package.persistent.read_sandbox_package_version_file() == ""
        op.save_package_version()
        assert package.persistent.read_sandbox_package_version_file() == "1.2.0"

    @pytest.mark.asyncio
    async def test_manifest_hash_mismatch_fails(self, tmp_path, demo_builder):
        files = demo_builder.server_files()
        manifest_name = get_manifest_file_name("Demo", "1.2.0")
        files[manifest_name] = files[manifest_name] + b" "
        transfer = FakeTransfer(files)
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)

        op = await run(package, package.update_package_manifest_async("1.2.0"))
        assert not op.succeeded
        assert "hash mismatch" in op.error
        # One attempt plus the default two retries.
        assert transfer.requested(manifest_name) == 3
        assert not package.is_ready()

    @pytest.mark.asyncio
    async def test_missing_manifest_on_server(self, tmp_path):
        transfer = FakeTransfer()
        package = await open_host_package(tmp_path, FakeRemoteServices("9.9.9"), transfer)
        op = await run(package, package.update_package_manifest_async("9.9.9"))
        assert not op.succeeded
        assert "Failed to fetch" in op.error

    @pytest.mark.asyncio
    async def test_corrupted_cached_manifest_is_downloaded_again(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)
        manifest_path = package.persistent.get_sandbox_manifest_path("1.2.0")
        manifest_path.write_bytes(b"{}")

        restarted = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        assert not restarted.is_ready()
        assert not manifest_path.exists()

        await activate(restarted)
        assert restarted.get_package_version() == "1.2.0"
        assert transfer.requested(get_manifest_file_name("Demo", "1.2.0")) == 2


class TestDownloads:
    @pytest.mark.asyncio
    async def test_tag_download_scenario(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)

        downloader = package.create_resource_downloader("dlc1")
        names = [info.bundle.bundle_name for info in downloader.bundle_infos]
        assert names == ["core.bundle", "dlc1.bundle"]
        assert downloader.total_download_bytes == len(b"core content") + len(
            b"first expansion"
        )

        await run(package, downloader.begin_download())
        assert downloader.succeeded
        assert downloader.current_download_count == 2

        again = package.create_resource_downloader("dlc1")
        assert again.total_download_count == 0
        await run(package, again.begin_download())
        assert again.succeeded

        sword = package.get_asset_info("Assets/Dlc1/Sword.prefab")
        assert package.resolve(sword).load_mode == LoadMode.LOAD_FROM_CACHE
        assert not package.is_need_download_from_remote(sword)
        assert package.is_need_download_from_remote("Assets/Dlc2/Shield.prefab")

    @pytest.mark.asyncio
    async def test_restart_keeps_cache_and_version(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)
        await run(package, package.create_resource_downloader().begin_download())

        restarted = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        assert restarted.get_package_version() == "1.2.0"
        assert restarted.create_resource_downloader().total_download_count == 0
        counts = restarted.get_load_mode_counts()
        assert counts[LoadMode.LOAD_FROM_CACHE] == 3

    @pytest.mark.asyncio
    async def test_bundle_downloader_by_location(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)

        downloader = package.create_bundle_downloader(
            ["Assets/Dlc1/Sword.prefab", "Assets/Unknown.prefab"]
        )
        names = [info.bundle.bundle_name for info in downloader.bundle_infos]
        assert names == ["dlc1.bundle", "core.bundle"]

    @pytest.mark.asyncio
    async def test_buildin_bundles_are_not_downloaded(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        core = demo_builder.build().bundle_list[0]
        package = await open_host_package(
            tmp_path, FakeRemoteServices("1.2.0"), transfer, buildin=[core.file_name]
        )
        await activate(package)

        names = [i.bundle.bundle_name for i in package.create_resource_downloader().bundle_infos]
        assert names == ["dlc1.bundle", "dlc2.bundle"]
        counts = package.get_load_mode_counts()
        assert counts[LoadMode.LOAD_FROM_STREAMING] == 1
        assert counts[LoadMode.LOAD_FROM_REMOTE] == 2

    @pytest.mark.asyncio
    async def test_dependencies_resolve_without_main_bundle(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)
        shield = package.get_asset_info("Assets/Dlc2/Shield.prefab")
        deps = package.resolve_dependencies(shield)
        assert [d.bundle.bundle_name for d in deps] == ["core.bundle", "dlc1.bundle"]

    @pytest.mark.asyncio
    async def test_resolving_invalid_asset_is_contract_violation(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)
        with pytest.raises(ContractViolationError):
            package.resolve(package.get_asset_info("Assets/Unknown.prefab"))


def _next_version_builder() -> ManifestBuilder:
    builder = ManifestBuilder("Demo", "1.3.0")
    core = builder.add_bundle("core.bundle", b"core content")
    builder.add_bundle("dlc3.bundle", b"third expansion", tags=["dlc3"])
    builder.add_asset("Assets/Hero.prefab", core, address="hero")
    return builder


class TestPreDownloadAndCleanup:
    @pytest.mark.asyncio
    async def test_pre_download_does_not_activate(self, tmp_path, demo_builder):
        transfer = FakeTransfer({**demo_builder.server_files(), **_next_version_builder().server_files()})
        package = await open_host_package(tmp_path, FakeRemoteServices("1.3.0"), transfer)
        await activate(package)
        await run(package, package.create_resource_downloader().begin_download())

        pre = await run(package, package.pre_download_content_async("1.3.0"))
        assert pre.succeeded
        assert pre.manifest.package_version == "1.3.0"
        assert package.get_package_version() == "1.2.0"

        downloader = pre.create_resource_downloader(4, 0)
        assert [i.bundle.bundle_name for i in downloader.bundle_infos] == ["dlc3.bundle"]
        await run(package, downloader.begin_download())
        assert downloader.succeeded

        await activate(package, "1.3.0")
        assert package.create_resource_downloader().total_download_count == 0

    @pytest.mark.asyncio
    async def test_pre_download_by_single_tag(self, tmp_path):
        builder = _next_version_builder()
        builder.add_bundle("letters.bundle", b"one letter tag", tags=["c"])
        transfer = FakeTransfer(builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.3.0"), transfer)

        pre = await run(package, package.pre_download_content_async("1.3.0"))
        downloader = pre.create_resource_downloader_by_tags("dlc3", 4, 0)
        names = sorted(i.bundle.bundle_name for i in downloader.bundle_infos)
        assert names == ["core.bundle", "dlc3.bundle"]

    @pytest.mark.asyncio
    async def test_clear_unused_keeps_retained_bundles(self, tmp_path, demo_builder):
        transfer = FakeTransfer({**demo_builder.server_files(), **_next_version_builder().server_files()})
        package = await open_host_package(tmp_path, FakeRemoteServices("1.3.0"), transfer)
        await activate(package)
        await run(package, package.create_resource_downloader().begin_download())
        sword = package.get_asset_info("Assets/Dlc1/Sword.prefab")
        package.retain_asset(sword)

        await activate(package, "1.3.0")
        op = await run(package, package.clear_unused_cache_files_async())
        assert op.succeeded
        # dlc2 is unused; dlc1 is unused but still retained.
        assert op.cleared_count == 1
        cached = set(package.cache_index.cached_guids("Demo"))
        manifest = demo_builder.build()
        assert manifest.bundle_list[1].cache_guid in cached
        assert manifest.bundle_list[2].cache_guid not in cached

        package.release_asset(sword)
        op = await run(package, package.clear_unused_cache_files_async())
        assert op.cleared_count == 1

    @pytest.mark.asyncio
    async def test_clear_all_and_sandbox(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)
        await run(package, package.create_resource_downloader().begin_download())

        op = await run(package, package.clear_all_cache_files_async())
        assert op.cleared_count == 3
        assert package.create_resource_downloader().total_download_count == 3

        package.clear_package_sandbox()
        assert not package.get_package_sandbox_root().exists()

    @pytest.mark.asyncio
    async def test_destroy_aborts_in_flight_work(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        transfer.stalled.add(demo_builder.build().bundle_list[0].file_name)
        transfer.stall_seconds = 0.05
        package = await open_host_package(tmp_path, FakeRemoteServices("1.2.0"), transfer)
        await activate(package)
        downloader = package.create_resource_downloader().begin_download()
        for _ in range(3):
            package.system.update()
        package.destroy()
        assert downloader.error == "user abort"
        with pytest.raises(ContractViolationError):
            package.get_package_version()
        # Let the abandoned transfer run out before the loop closes.
        await asyncio.sleep(0.1)
