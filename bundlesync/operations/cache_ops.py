"""
Explicit cache-clear operations, the only way entries leave the cache index.
"""

import asyncio
import logging
from abc import abstractmethod
from enum import Enum, auto

from bundlesync.models.manifest import PackageManifest
from bundlesync.storage.cache import CacheIndex
from bundlesync.storage.persistent import PackagePersistent

from .base import AsyncOperation

log = logging.getLogger(__name__)


class ClearCacheFilesOperation(AsyncOperation):
    """
    Deletes cached bundle folders a batch per tick. Retained bundles are kept.
    Subclasses choose the candidates.
    """

    BATCH_SIZE = 32

    class _Steps(Enum):
        NONE = auto()
        GET_CLEAR_LIST = auto()
        CLEAR_CACHE_FILES = auto()
        DONE = auto()

    def __init__(self, persistent: PackagePersistent, cache_index: CacheIndex):
        super().__init__()
        self.persistent = persistent
        self.cache_index = cache_index
        self.cleared_count = 0
        self._clear_list: list[str] = []
        self._total = 0
        self._batch_len = 0
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.GET_CLEAR_LIST

    @abstractmethod
    def _candidates(self) -> list[str]: ...

    def _delete_batch(self, batch: list[str]) -> None:
        for guid in batch:
            self.persistent.delete_cache_folder(guid)

    def _update(self) -> None:
        package_name = self.persistent.package_name

        if self._step == self._Steps.GET_CLEAR_LIST:
            self._clear_list = [
                guid
                for guid in self._candidates()
                if not self.cache_index.is_retained(package_name, guid)
            ]
            self._total = len(self._clear_list)
            log.debug(f"{self._total} cached bundles of '{package_name}' to clear.")
            self._step = self._Steps.CLEAR_CACHE_FILES

        if self._step == self._Steps.CLEAR_CACHE_FILES:
            if self._task is None:
                if not self._clear_list:
                    self._step = self._Steps.DONE
                    log.info(f"Cleared {self.cleared_count} cached bundles of '{package_name}'.")
                    self._succeed()
                    return
                batch = self._clear_list[: self.BATCH_SIZE]
                self._clear_list = self._clear_list[self.BATCH_SIZE :]
                # Unindex first so nothing resolves to a folder being deleted.
                for guid in batch:
                    self.cache_index.discard(package_name, guid)
                self._task = self._run_in_background(
                    asyncio.to_thread(self._delete_batch, batch)
                )
                self._batch_len = len(batch)
            if not self._task.done():
                return
            error = self._task_error(self._task)
            if error:
                self._step = self._Steps.DONE
                self._fail(error)
                return
            self.cleared_count += self._batch_len
            self._task = None
            self.progress = self.cleared_count / self._total if self._total else 1.0


class ClearAllCacheFilesOperation(ClearCacheFilesOperation):
    """Removes every cached bundle of the package, indexed or merely on disk."""

    def _candidates(self) -> list[str]:
        on_disk = CacheIndex.list_record_guids(self.persistent)
        indexed = self.cache_index.cached_guids(self.persistent.package_name)
        return sorted(set(on_disk) | set(indexed))


class ClearUnusedCacheFilesOperation(ClearCacheFilesOperation):
    """Removes cached bundles the given manifest does not reference."""

    def __init__(
        self,
        persistent: PackagePersistent,
        cache_index: CacheIndex,
        manifest: PackageManifest,
    ):
        super().__init__(persistent, cache_index)
        self.manifest = manifest

    def _candidates(self) -> list[str]:
        indexed = self.cache_index.cached_guids(self.persistent.package_name)
        return [guid for guid in indexed if not self.manifest.is_include_bundle_file(guid)]
