"""
Resolves the on-disk locations of one package: the read-only built-in root and
the writable sandbox that holds cached manifests, bundles and the version record.
"""

import logging
import os
import shutil
import uuid
from contextlib import suppress
from pathlib import Path

from bundlesync.utils.path import create_dir, package_folder_name

log = logging.getLogger(__name__)

MANIFEST_FOLDER = "manifest_files"
CACHE_FOLDER = "cache_files"
DATA_FILE_NAME = "__data"
INFO_FILE_NAME = "__info"
TEMP_FILE_NAME = "__temp"


def get_package_version_file_name(package_name: str) -> str:
    return f"PackageManifest_{package_name}.version"


def get_manifest_file_name(package_name: str, package_version: str) -> str:
    return f"PackageManifest_{package_name}_{package_version}.json"


def get_package_hash_file_name(package_name: str, package_version: str) -> str:
    return f"PackageManifest_{package_name}_{package_version}.hash"


def write_file_durably(path: Path, data: bytes) -> None:
    """Writes through a temporary sibling and renames, so readers never see a partial file."""
    create_dir(path.parent)
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class PackagePersistent:
    """Scoped built-in and sandbox directories for a single package."""

    def __init__(self, package_name: str, buildin_root: Path, sandbox_root: Path):
        self.package_name = package_name
        folder = package_folder_name(package_name)
        self.buildin_root = Path(buildin_root)
        self.sandbox_root = Path(sandbox_root)
        self.buildin_package_root = self.buildin_root / folder
        self.sandbox_package_root = self.sandbox_root / folder
        self.sandbox_manifest_root = self.sandbox_package_root / MANIFEST_FOLDER
        self.sandbox_cache_root = self.sandbox_package_root / CACHE_FOLDER

    # Built-in
    def get_buildin_package_version_path(self) -> Path:
        return self.buildin_package_root / get_package_version_file_name(
            self.package_name
        )

    def get_buildin_manifest_path(self, package_version: str) -> Path:
        return self.buildin_package_root / get_manifest_file_name(
            self.package_name, package_version
        )

    def get_buildin_hash_path(self, package_version: str) -> Path:
        return self.buildin_package_root / get_package_hash_file_name(
            self.package_name, package_version
        )

    # Sandbox manifests
    def get_sandbox_package_version_path(self) -> Path:
        return self.sandbox_manifest_root / get_package_version_file_name(
            self.package_name
        )

    def get_sandbox_manifest_path(self, package_version: str) -> Path:
        return self.sandbox_manifest_root / get_manifest_file_name(
            self.package_name, package_version
        )

    def get_sandbox_hash_path(self, package_version: str) -> Path:
        return self.sandbox_manifest_root / get_package_hash_file_name(
            self.package_name, package_version
        )

    def save_sandbox_package_version_file(self, package_version: str) -> None:
        """Persists the last known good version, read at next startup."""
        write_file_durably(
            self.get_sandbox_package_version_path(), package_version.encode("utf-8")
        )
        log.debug(f"Saved package version record '{package_version}'.")

    def read_sandbox_package_version_file(self) -> str:
        """Returns the recorded version, or an empty string if there is none."""
        path = self.get_sandbox_package_version_path()
        try:
            return path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""
        except OSError as e:
            log.warning(f"Could not read package version record '{path}': {e}")
            return ""

    # Sandbox cache
    def get_cache_folder(self, cache_guid: str) -> Path:
        return self.sandbox_cache_root / cache_guid[:2] / cache_guid

    def get_cache_data_path(self, cache_guid: str) -> Path:
        return self.get_cache_folder(cache_guid) / DATA_FILE_NAME

    def get_cache_info_path(self, cache_guid: str) -> Path:
        return self.get_cache_folder(cache_guid) / INFO_FILE_NAME

    def new_cache_temp_path(self, cache_guid: str) -> Path:
        """A download target no other transfer of the same bundle will write to."""
        return self.get_cache_folder(cache_guid) / f"{TEMP_FILE_NAME}_{uuid.uuid4().hex[:8]}"

    def delete_cache_temp_file(self, temp_path: Path) -> None:
        """Removes a partial download, and its record folder once nothing else is in it."""
        temp_path.unlink(missing_ok=True)
        with suppress(OSError):
            temp_path.parent.rmdir()

    # Cleanup
    def delete_sandbox_package_folder(self) -> None:
        if self.sandbox_package_root.exists():
            shutil.rmtree(self.sandbox_package_root)
            log.info(f"Deleted sandbox folder for package '{self.package_name}'.")

    def delete_cache_folder(self, cache_guid: str) -> None:
        folder = self.get_cache_folder(cache_guid)
        if folder.exists():
            shutil.rmtree(folder)

    def list_sandbox_manifest_versions(self) -> list[str]:
        """Versions with a cached manifest in the sandbox, oldest first."""
        prefix = f"PackageManifest_{self.package_name}_"
        if not self.sandbox_manifest_root.is_dir():
            return []
        manifests = sorted(
            self.sandbox_manifest_root.glob(f"{prefix}*.json"),
            key=lambda p: p.stat().st_mtime,
        )
        return [p.name[len(prefix) : -len(".json")] for p in manifests]
