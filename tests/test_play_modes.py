"""Tests for the offline, simulate and web play modes."""

import pytest

from bundlesync.core.package import (
    EditorSimulateModeParameters,
    OfflinePlayModeParameters,
    ResourcePackage,
    WebPlayModeParameters,
)
from bundlesync.exceptions import ContractViolationError
from bundlesync.models.bundle_info import LoadMode

from conftest import FakeBuildinQuery, FakeRemoteServices, FakeTransfer, ManifestBuilder


async def run(package, op):
    await package.system.wait(op)
    return op


class TestOfflinePlayMode:
    @pytest.mark.asyncio
    async def test_serves_buildin_manifest(self, tmp_path, demo_builder):
        demo_builder.write_buildin(tmp_path / "buildin")
        package = ResourcePackage("Demo")
        init = await run(
            package,
            package.initialize_async(
                OfflinePlayModeParameters(
                    buildin_root=tmp_path / "buildin", sandbox_root=tmp_path / "sandbox"
                )
            ),
        )
        assert init.succeeded, init.error
        assert init.package_version == "1.2.0"
        assert package.get_package_version() == "1.2.0"

        hero = package.get_asset_info("Assets/Hero.prefab")
        info = package.resolve(hero)
        assert info.load_mode == LoadMode.LOAD_FROM_STREAMING
        assert info.file_path.startswith(str(tmp_path / "buildin" / "Demo"))
        assert not package.is_need_download_from_remote(hero)
        assert package.create_resource_downloader().total_download_count == 0

    @pytest.mark.asyncio
    async def test_version_ops_report_active_version(self, tmp_path, demo_builder):
        demo_builder.write_buildin(tmp_path / "buildin")
        package = ResourcePackage("Demo")
        await run(
            package,
            package.initialize_async(
                OfflinePlayModeParameters(
                    buildin_root=tmp_path / "buildin", sandbox_root=tmp_path / "sandbox"
                )
            ),
        )
        version = await run(package, package.update_package_version_async())
        assert version.package_version == "1.2.0"
        manifest = await run(package, package.update_package_manifest_async("9.9.9"))
        assert manifest.succeeded
        assert package.get_package_version() == "1.2.0"

    @pytest.mark.asyncio
    async def test_unpack_copies_into_cache(self, tmp_path, demo_builder):
        demo_builder.write_buildin(tmp_path / "buildin")
        package = ResourcePackage("Demo")
        await run(
            package,
            package.initialize_async(
                OfflinePlayModeParameters(
                    buildin_root=tmp_path / "buildin", sandbox_root=tmp_path / "sandbox"
                )
            ),
        )
        by_tag = package.create_resource_unpacker("dlc2")
        assert [i.bundle.bundle_name for i in by_tag.bundle_infos] == ["dlc2.bundle"]

        unpacker = package.create_resource_unpacker()
        assert unpacker.total_download_count == 3
        await run(package, unpacker.begin_download())
        assert unpacker.succeeded, unpacker.error

        counts = package.get_load_mode_counts()
        assert counts[LoadMode.LOAD_FROM_CACHE] == 3
        assert package.create_resource_unpacker().total_download_count == 0

    @pytest.mark.asyncio
    async def test_missing_buildin_manifest_fails(self, tmp_path):
        package = ResourcePackage("Demo")
        init = await run(
            package,
            package.initialize_async(
                OfflinePlayModeParameters(
                    buildin_root=tmp_path / "buildin", sandbox_root=tmp_path / "sandbox"
                )
            ),
        )
        assert not init.succeeded
        assert "buildin package version file" in init.error
        with pytest.raises(ContractViolationError):
            package.get_package_version()

    @pytest.mark.asyncio
    async def test_failed_initialization_can_be_retried(self, tmp_path, demo_builder):
        package = ResourcePackage("Demo")
        params = OfflinePlayModeParameters(
            buildin_root=tmp_path / "buildin", sandbox_root=tmp_path / "sandbox"
        )
        first = await run(package, package.initialize_async(params))
        assert not first.succeeded

        demo_builder.write_buildin(tmp_path / "buildin")
        second = await run(package, package.initialize_async(params))
        assert second.succeeded
        assert package.initialize_status == "succeed"


class TestSimulatePlayMode:
    @pytest.mark.asyncio
    async def test_reads_bundles_next_to_the_manifest(self, tmp_path, demo_builder):
        build_dir = tmp_path / "simulate"
        build_dir.mkdir()
        manifest_path = build_dir / "PackageManifest_Demo_1.2.0.json"
        manifest_path.write_bytes(demo_builder.to_json())

        package = ResourcePackage("Demo")
        init = await run(
            package,
            package.initialize_async(
                EditorSimulateModeParameters(
                    sandbox_root=tmp_path / "sandbox", simulate_manifest_path=manifest_path
                )
            ),
        )
        assert init.succeeded, init.error
        sword = package.get_asset_info("Assets/Dlc1/Sword.prefab")
        info = package.resolve(sword)
        assert info.load_mode == LoadMode.LOAD_FROM_STREAMING
        assert info.file_path == str(build_dir / info.bundle.file_name)
        assert package.create_resource_downloader().total_download_count == 0

    @pytest.mark.asyncio
    async def test_wrong_package_manifest_fails(self, tmp_path):
        other = ManifestBuilder("Other", "1.0.0")
        manifest_path = tmp_path / "other.json"
        manifest_path.write_bytes(other.to_json())

        package = ResourcePackage("Demo")
        init = await run(
            package,
            package.initialize_async(
                EditorSimulateModeParameters(
                    sandbox_root=tmp_path / "sandbox", simulate_manifest_path=manifest_path
                )
            ),
        )
        assert not init.succeeded
        assert "Other" in init.error

    def test_manifest_path_is_required(self, tmp_path):
        package = ResourcePackage("Demo")
        with pytest.raises(ContractViolationError):
            package.initialize_async(EditorSimulateModeParameters(sandbox_root=tmp_path))


class TestWebPlayMode:
    @pytest.mark.asyncio
    async def test_manifest_is_kept_in_memory(self, tmp_path, demo_builder):
        transfer = FakeTransfer(demo_builder.server_files())
        core = demo_builder.build().bundle_list[0]
        package = ResourcePackage("Demo")
        init = await run(
            package,
            package.initialize_async(
                WebPlayModeParameters(
                    buildin_root=tmp_path / "buildin",
                    sandbox_root=tmp_path / "sandbox",
                    remote_services=FakeRemoteServices("1.2.0"),
                    buildin_query=FakeBuildinQuery([core.file_name]),
                    transfer=transfer,
                )
            ),
        )
        assert init.succeeded
        assert not package.is_ready()

        op = await run(package, package.update_package_manifest_async("1.2.0"))
        assert op.succeeded, op.error
        assert package.get_package_version() == "1.2.0"
        assert not (tmp_path / "sandbox").exists()

        hero = package.resolve(package.get_asset_info("Assets/Hero.prefab"))
        assert hero.load_mode == LoadMode.LOAD_FROM_STREAMING
        sword = package.resolve(package.get_asset_info("Assets/Dlc1/Sword.prefab"))
        assert sword.load_mode == LoadMode.LOAD_FROM_REMOTE
        assert package.create_resource_downloader().total_download_count == 0
