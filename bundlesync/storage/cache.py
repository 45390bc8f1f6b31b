"""
A registry of bundle files known to be fully and correctly materialized in a
package's sandbox cache, with reference counts for bundles still in use.
"""

import json
import logging
import os
from collections import Counter
from dataclasses import dataclass
from pathlib import Path

from bundlesync.models.config import VerifyLevel
from bundlesync.transfer.integrity import FileIntegrityChecker, VerifyResult

from .persistent import PackagePersistent, write_file_durably

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheRecord:
    """What the `__info` file of a cached bundle says about its data."""

    file_hash: str
    file_size: int
    data_path: Path
    info_path: Path


def write_info_file(info_path: Path, file_hash: str, file_size: int) -> None:
    payload = json.dumps({"file_hash": file_hash, "file_size": file_size})
    write_file_durably(info_path, payload.encode("utf-8"))


def read_info_file(info_path: Path) -> tuple[str, int]:
    """Reads an info record, raising ValueError on malformed content."""
    try:
        data = json.loads(info_path.read_text(encoding="utf-8"))
        return str(data["file_hash"]), int(data["file_size"])
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise ValueError(f"Malformed cache info record '{info_path}': {e}") from e


class CacheIndex:
    """
    Tracks `(package_name, cache_guid)` pairs that are safe to read from disk.

    A pair is only recorded after its data file and info record have both been
    written. Entries are removed only by explicit cache-clear operations.
    """

    def __init__(self):
        self._records: dict[tuple[str, str], CacheRecord] = {}
        self._retained: Counter[tuple[str, str]] = Counter()

    def __len__(self) -> int:
        return len(self._records)

    def is_cached(self, package_name: str, cache_guid: str) -> bool:
        return (package_name, cache_guid) in self._records

    def get_record(self, package_name: str, cache_guid: str) -> CacheRecord | None:
        return self._records.get((package_name, cache_guid))

    def record(self, package_name: str, cache_guid: str, record: CacheRecord) -> None:
        key = (package_name, cache_guid)
        if key in self._records:
            log.debug(f"Cache record for '{cache_guid}' already exists, keeping it.")
            return
        self._records[key] = record

    def discard(self, package_name: str, cache_guid: str) -> None:
        self._records.pop((package_name, cache_guid), None)

    def cached_guids(self, package_name: str) -> list[str]:
        return [guid for pkg, guid in self._records if pkg == package_name]

    def clear_package(self, package_name: str) -> int:
        keys = [key for key in self._records if key[0] == package_name]
        for key in keys:
            del self._records[key]
        return len(keys)

    # Retention
    def retain(self, package_name: str, cache_guid: str) -> None:
        self._retained[(package_name, cache_guid)] += 1

    def release(self, package_name: str, cache_guid: str) -> None:
        key = (package_name, cache_guid)
        if self._retained[key] <= 1:
            self._retained.pop(key, None)
        else:
            self._retained[key] -= 1

    def is_retained(self, package_name: str, cache_guid: str) -> bool:
        return self._retained.get((package_name, cache_guid), 0) > 0

    def retained_count(self, package_name: str) -> int:
        return sum(1 for pkg, _ in self._retained if pkg == package_name)

    # Disk records
    @staticmethod
    def write_record(
        persistent: PackagePersistent,
        cache_guid: str,
        temp_path: Path,
        file_hash: str,
        file_size: int,
    ) -> CacheRecord:
        """
        Moves a verified download into `__data`, then writes its info record.

        Indexing is left to the caller. Safe to call from a worker thread, and
        concurrent writers of the same bundle leave a complete record behind.
        """
        data_path = persistent.get_cache_data_path(cache_guid)
        info_path = persistent.get_cache_info_path(cache_guid)
        os.replace(temp_path, data_path)
        write_info_file(info_path, file_hash, file_size)
        return CacheRecord(file_hash, file_size, data_path, info_path)

    @staticmethod
    def inspect_record(
        persistent: PackagePersistent, cache_guid: str, level: VerifyLevel
    ) -> tuple[VerifyResult, CacheRecord | None]:
        """
        Checks one on-disk record without touching the index.

        Safe to call from a worker thread.
        """
        data_path = persistent.get_cache_data_path(cache_guid)
        info_path = persistent.get_cache_info_path(cache_guid)
        if not info_path.is_file():
            return VerifyResult.INFO_FILE_NOT_FOUND, None
        try:
            file_hash, file_size = read_info_file(info_path)
        except (OSError, ValueError) as e:
            log.debug(str(e))
            return VerifyResult.EXCEPTION, None

        result = FileIntegrityChecker.verify_file(data_path, file_size, file_hash, level)
        if result != VerifyResult.SUCCEED:
            return result, None
        return result, CacheRecord(file_hash, file_size, data_path, info_path)

    @staticmethod
    def list_record_guids(persistent: PackagePersistent) -> list[str]:
        """Lists the cache GUIDs that have a record folder on disk."""
        root = persistent.sandbox_cache_root
        if not root.is_dir():
            return []
        return sorted(
            folder.name
            for prefix in root.iterdir()
            if prefix.is_dir()
            for folder in prefix.iterdir()
            if folder.is_dir()
        )
