"""Shared fakes and fixtures for the bundlesync tests."""

import asyncio
import hashlib
import json
from pathlib import Path

import pytest

from bundlesync.exceptions import RemoteServiceError
from bundlesync.models.manifest import PackageManifest
from bundlesync.operations.manifest_ops import FileFetchOperation
from bundlesync.storage.persistent import (
    PackagePersistent,
    get_manifest_file_name,
    get_package_hash_file_name,
    get_package_version_file_name,
)


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class ManifestBuilder:
    """Assembles manifest JSON together with the bundle payloads it describes."""

    def __init__(self, package_name: str = "Demo", package_version: str = "1.2.0", **options):
        self.package_name = package_name
        self.package_version = package_version
        self.options = options
        self.bundles: list[dict] = []
        self.assets: list[dict] = []
        self.contents: dict[str, bytes] = {}

    def add_bundle(self, bundle_name: str, content: bytes, tags=()) -> int:
        self.bundles.append(
            {
                "bundle_name": bundle_name,
                "file_hash": md5(content),
                "file_size": len(content),
                "tags": list(tags),
            }
        )
        self.contents[bundle_name] = content
        return len(self.bundles) - 1

    def add_asset(self, asset_path: str, bundle_id: int, depend_ids=(), **fields) -> None:
        self.assets.append(
            {
                "asset_path": asset_path,
                "bundle_id": bundle_id,
                "depend_ids": list(depend_ids),
                **fields,
            }
        )

    def to_dict(self) -> dict:
        return {
            "package_name": self.package_name,
            "package_version": self.package_version,
            "asset_list": self.assets,
            "bundle_list": self.bundles,
            **self.options,
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    def build(self) -> PackageManifest:
        return PackageManifest.from_json(self.to_json())

    def bundle_files(self) -> dict[str, bytes]:
        """Physical file name to content, as the server and built-in store name them."""
        manifest = self.build()
        return {b.file_name: self.contents[b.bundle_name] for b in manifest.bundle_list}

    def manifest_files(self) -> dict[str, bytes]:
        """The manifest and its hash file, keyed by their published names."""
        data = self.to_json()
        return {
            get_manifest_file_name(self.package_name, self.package_version): data,
            get_package_hash_file_name(self.package_name, self.package_version): md5(
                data
            ).encode("utf-8"),
        }

    def server_files(self) -> dict[str, bytes]:
        return {**self.manifest_files(), **self.bundle_files()}

    def write_buildin(self, buildin_root: Path, with_bundles: bool = True) -> Path:
        """Lays the manifest (and optionally the bundles) out as a built-in store."""
        folder = Path(buildin_root) / self.package_name
        folder.mkdir(parents=True, exist_ok=True)
        (folder / get_package_version_file_name(self.package_name)).write_text(
            self.package_version, encoding="utf-8"
        )
        for name, data in self.manifest_files().items():
            (folder / name).write_bytes(data)
        if with_bundles:
            for name, data in self.bundle_files().items():
                (folder / name).write_bytes(data)
        return folder


class FakeRemoteServices:
    """Remote services answering from memory; URLs use a fake `mem://` scheme."""

    def __init__(self, version: str = "", fail: bool = False):
        self.version = version
        self.fail = fail
        self.query_count = 0

    def get_remote_main_url(self, file_name: str) -> str:
        return f"mem://main/{file_name}"

    def get_remote_fallback_url(self, file_name: str) -> str:
        return f"mem://fallback/{file_name}"

    async def query_latest_version(self, package_name, append_time_ticks, timeout, try_again):
        self.query_count += 1
        await asyncio.sleep(0)
        if self.fail or not self.version:
            raise RemoteServiceError(f"No version published for '{package_name}'.")
        return self.version


class FakeTransfer:
    """
    Serves files from a dict keyed by file name, whatever the host.

    `failures` maps a file name to how many requests for it fail before one
    succeeds. `stalled` names files whose requests never produce any data.
    """

    def __init__(self, files: dict[str, bytes] | None = None, delay: float = 0.0):
        self.files = dict(files or {})
        self.delay = delay
        self.failures: dict[str, int] = {}
        self.stalled: set[str] = set()
        self.stall_seconds = 3600.0
        self.requests: list[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    @staticmethod
    def _name(source: str) -> str:
        return source.rsplit("/", 1)[-1]

    async def _serve(self, source: str) -> bytes:
        self.requests.append(source)
        name = self._name(source)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if name in self.stalled:
                await asyncio.sleep(self.stall_seconds)
            await asyncio.sleep(self.delay)
            if self.failures.get(name, 0) > 0:
                self.failures[name] -= 1
                raise ConnectionError(f"Injected failure for {name}")
            if name not in self.files:
                raise FileNotFoundError(name)
            return self.files[name]
        finally:
            self.in_flight -= 1

    async def fetch(self, source, destination, on_progress=None) -> int:
        data = await self._serve(source)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
        if on_progress:
            on_progress(len(data))
        return len(data)

    async def fetch_bytes(self, source) -> bytes:
        return await self._serve(source)

    def requested(self, file_name: str) -> int:
        return sum(1 for url in self.requests if self._name(url) == file_name)


class FakeBuildinQuery:
    def __init__(self, file_names=()):
        self.file_names = set(file_names)

    def query_buildin_files(self, package_name: str, file_name: str) -> bool:
        return file_name in self.file_names


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(FileFetchOperation, "RETRY_DELAY", 0.0)


@pytest.fixture
def demo_builder() -> ManifestBuilder:
    """Demo 1.2.0: a shared bundle plus one bundle per DLC tag."""
    builder = ManifestBuilder("Demo", "1.2.0")
    core = builder.add_bundle("core.bundle", b"core content")
    dlc1 = builder.add_bundle("dlc1.bundle", b"first expansion", tags=["dlc1"])
    dlc2 = builder.add_bundle("dlc2.bundle", b"second expansion", tags=["dlc2"])
    builder.add_asset("Assets/Hero.prefab", core, address="hero")
    builder.add_asset("Assets/Dlc1/Sword.prefab", dlc1, depend_ids=[core], address="sword")
    builder.add_asset("Assets/Dlc2/Shield.prefab", dlc2, depend_ids=[core, dlc1])
    return builder


@pytest.fixture
def persistent(tmp_path) -> PackagePersistent:
    return PackagePersistent("Demo", tmp_path / "buildin", tmp_path / "sandbox")
