"""
Batch operations that materialize bundles into the sandbox cache, either from
the remote server (downloader) or from the built-in store (unpacker).
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from enum import Enum, auto
from pathlib import Path

from bundlesync.models.bundle_info import BundleInfo
from bundlesync.models.config import VerifyLevel
from bundlesync.models.manifest import PackageBundle
from bundlesync.models.stats import DownloadStats
from bundlesync.storage.cache import CacheIndex, CacheRecord
from bundlesync.storage.persistent import PackagePersistent
from bundlesync.transfer.downloader import FileTransfer
from bundlesync.transfer.integrity import FileIntegrityChecker, VerifyResult

from .base import AsyncOperation
from .manifest_ops import FileFetchOperation
from .system import OperationSystem

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int, int], None]
ErrorCallback = Callable[[str, str], None]
StartFileCallback = Callable[[str, int], None]
OverCallback = Callable[[bool], None]


def _bundle_verifier(bundle: PackageBundle) -> Callable[[Path | bytes], str]:
    def verify(payload: Path | bytes) -> str:
        result = FileIntegrityChecker.verify_file(
            payload, bundle.file_size, bundle.file_hash, VerifyLevel.HIGH
        )
        if result != VerifyResult.SUCCEED:
            return f"Bundle '{bundle.bundle_name}' failed verification: {result.value}"
        return ""

    return verify


class BundleDownloadOperation(AsyncOperation):
    """
    Materializes one bundle: fetch into a private `__temp_<token>` file, verify,
    move to `__data`, write the info record, then index it.

    Another batch may commit the same bundle first; the commit step then keeps
    that record and discards this download.
    """

    class _Steps(Enum):
        NONE = auto()
        CHECK_CACHED = auto()
        FETCH = auto()
        COMMIT = auto()
        DONE = auto()

    def __init__(
        self,
        bundle_info: BundleInfo,
        transfer: FileTransfer,
        persistent: PackagePersistent,
        cache_index: CacheIndex,
        timeout: float,
        try_again: int,
    ):
        super().__init__()
        self.bundle_info = bundle_info
        self.bundle = bundle_info.bundle
        self.transfer = transfer
        self.persistent = persistent
        self.cache_index = cache_index
        self.timeout = timeout
        self.try_again = try_again
        self._temp_path = persistent.new_cache_temp_path(self.bundle.cache_guid)
        self._fetch_op: FileFetchOperation | None = None
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    @property
    def downloaded_bytes(self) -> int:
        if self.succeeded:
            return self.bundle.file_size
        return self._fetch_op.downloaded_bytes if self._fetch_op else 0

    @property
    def retry_count(self) -> int:
        return self._fetch_op.retry_count if self._fetch_op else 0

    def _start(self) -> None:
        self._step = self._Steps.CHECK_CACHED

    def _persist(self) -> CacheRecord:
        return CacheIndex.write_record(
            self.persistent,
            self.bundle.cache_guid,
            self._temp_path,
            self.bundle.file_hash,
            self.bundle.file_size,
        )

    def _update(self) -> None:
        package_name = self.persistent.package_name
        guid = self.bundle.cache_guid

        if self._step == self._Steps.CHECK_CACHED:
            if self.cache_index.is_cached(package_name, guid):
                self._step = self._Steps.DONE
                self._succeed()
                return
            self._step = self._Steps.FETCH

        if self._step == self._Steps.FETCH:
            if self._fetch_op is None:
                main_url, fallback_url = self.bundle_info.sources
                self._fetch_op = FileFetchOperation(
                    self.transfer,
                    main_url,
                    fallback_url,
                    self._temp_path,
                    timeout=self.timeout,
                    try_again=self.try_again,
                    verify=_bundle_verifier(self.bundle),
                )
                self._start_child(self._fetch_op)
            if self.bundle.file_size:
                self.progress = self._fetch_op.downloaded_bytes / self.bundle.file_size
            if not self._fetch_op.is_done:
                return
            if not self._fetch_op.succeeded:
                self._step = self._Steps.DONE
                self.persistent.delete_cache_temp_file(self._temp_path)
                self._fail(self._fetch_op.error)
                return
            self._step = self._Steps.COMMIT

        if self._step == self._Steps.COMMIT:
            if self._task is None:
                if self.cache_index.is_cached(package_name, guid):
                    log.debug(f"'{self.bundle.bundle_name}' was cached by another batch.")
                    self.persistent.delete_cache_temp_file(self._temp_path)
                    self._step = self._Steps.DONE
                    self._succeed()
                    return
                self._task = self._run_in_background(asyncio.to_thread(self._persist))
            if not self._task.done():
                return
            self._step = self._Steps.DONE
            error = self._task_error(self._task)
            if error:
                self.persistent.delete_cache_temp_file(self._temp_path)
                self._fail(f"Failed to cache bundle '{self.bundle.bundle_name}': {error}")
                return
            self.cache_index.record(package_name, guid, self._task.result())
            self._succeed()

    def _on_abort(self) -> None:
        if self._fetch_op is not None:
            self._fetch_op.abort()


class DownloaderOperation(AsyncOperation):
    """
    Processes a precomputed bundle list with at most `max_concurrency` items in
    flight. One item that exhausts its retries fails the whole batch; items that
    were already cached stay cached.
    """

    VERB = "Download"

    class _Steps(Enum):
        NONE = auto()
        CHECK = auto()
        LOADING = auto()
        DONE = auto()

    def __init__(
        self,
        system: OperationSystem,
        package_name: str,
        bundle_infos: list[BundleInfo],
        transfer: FileTransfer | None,
        persistent: PackagePersistent | None,
        cache_index: CacheIndex | None,
        max_concurrency: int,
        max_retry: int,
        timeout: float,
    ):
        super().__init__()
        if max_concurrency < 1:
            log.warning(
                f"[yellow]Max concurrency must be at least 1, got {max_concurrency}."
                "[/yellow]"
            )
            max_concurrency = 1
        self.package_name = package_name
        self.transfer = transfer
        self.persistent = persistent
        self.cache_index = cache_index
        self.max_concurrency = max_concurrency
        self.max_retry = max(max_retry, 0)
        self.timeout = timeout

        self._bundle_infos = list(bundle_infos)
        self._pending = deque(bundle_infos)
        self._downloading: list[BundleDownloadOperation] = []
        self._owner = system

        self.total_download_count = len(bundle_infos)
        self.total_download_bytes = sum(info.bundle.file_size for info in bundle_infos)
        self.current_download_count = 0
        self.current_download_bytes = 0
        self.stats = DownloadStats(
            total_count=self.total_download_count,
            total_bytes=self.total_download_bytes,
        )
        self._completed_bytes = 0
        self._completed_retries = 0
        self._last_reported = (-1, -1)

        self.on_download_progress: ProgressCallback | None = None
        self.on_download_error: ErrorCallback | None = None
        self.on_start_download_file: StartFileCallback | None = None
        self.on_download_over: OverCallback | None = None
        self._step = self._Steps.NONE

    @classmethod
    def create_empty(
        cls, system: OperationSystem, package_name: str
    ) -> "DownloaderOperation":
        return cls(system, package_name, [], None, None, None, 1, 0, 1)

    @property
    def bundle_infos(self) -> list[BundleInfo]:
        return list(self._bundle_infos)

    def begin_download(self) -> "DownloaderOperation":
        """Registers the batch with the scheduler. Later calls are no-ops."""
        if not self.is_started:
            self._owner.start_operation(self)
        return self

    def _start(self) -> None:
        log.debug(
            f"{self.VERB} of {self.total_download_count} bundles for "
            f"'{self.package_name}' started."
        )
        if self.total_download_count == 0:
            self._step = self._Steps.DONE
            self._finish(True)
            return
        self._step = self._Steps.CHECK

    def _update(self) -> None:
        if self._step == self._Steps.CHECK:
            self._step = self._Steps.LOADING

        if self._step == self._Steps.LOADING:
            failed = self._collect_finished()
            if failed is not None:
                self._step = self._Steps.DONE
                for op in self._downloading:
                    op.abort()
                self._downloading.clear()
                bundle_name = failed.bundle.bundle_name
                self.stats.failed_count += 1
                log.error(f"[red]{self.VERB} of '{bundle_name}' failed: {failed.error}[/red]")
                if self.on_download_error:
                    self.on_download_error(failed.bundle.file_name, failed.error)
                self._finish(False, failed.error)
                return

            self._launch_pending()
            self._report_progress()

            if not self._downloading and not self._pending:
                self._step = self._Steps.DONE
                log.info(
                    f"{self.VERB} finished: {self.current_download_count} bundles "
                    f"for '{self.package_name}'."
                )
                self._finish(True)

    def _collect_finished(self) -> BundleDownloadOperation | None:
        """Drops finished items from the in-flight list, returning the first failure."""
        failed = None
        still_running = []
        for op in self._downloading:
            if not op.is_done:
                still_running.append(op)
                continue
            self._completed_retries += op.retry_count
            if op.succeeded:
                self.current_download_count += 1
                self._completed_bytes += op.bundle.file_size
            elif failed is None:
                failed = op
        self._downloading = still_running
        return failed

    def _launch_pending(self) -> None:
        while self._pending and len(self._downloading) < self.max_concurrency:
            info = self._pending.popleft()
            op = BundleDownloadOperation(
                info,
                self.transfer,
                self.persistent,
                self.cache_index,
                self.timeout,
                self.max_retry,
            )
            self._start_child(op)
            self._downloading.append(op)
            if self.on_start_download_file:
                self.on_start_download_file(info.bundle.file_name, info.bundle.file_size)

    def _report_progress(self) -> None:
        in_flight = sum(op.downloaded_bytes for op in self._downloading)
        self.current_download_bytes = self._completed_bytes + in_flight
        self.stats.completed_count = self.current_download_count
        self.stats.completed_bytes = self.current_download_bytes
        self.stats.retry_count = self._completed_retries + sum(
            op.retry_count for op in self._downloading
        )
        self.stats.update_speed_stats(self.current_download_bytes)
        if self.total_download_bytes:
            self.progress = self.current_download_bytes / self.total_download_bytes

        snapshot = (self.current_download_count, self.current_download_bytes)
        if snapshot != self._last_reported:
            self._last_reported = snapshot
            if self.on_download_progress:
                self.on_download_progress(
                    self.total_download_count,
                    self.current_download_count,
                    self.total_download_bytes,
                    self.current_download_bytes,
                )

    def _finish(self, succeed: bool, error: str = "") -> None:
        if succeed:
            self._succeed()
        else:
            self._fail(error)
        if self.on_download_over:
            self.on_download_over(succeed)

    def _on_abort(self) -> None:
        for op in self._downloading:
            op.abort()
        self._downloading.clear()
        self._pending.clear()


class ResourceDownloaderOperation(DownloaderOperation):
    """Fetches remote bundles into the cache."""


class ResourceUnpackerOperation(DownloaderOperation):
    """Copies built-in bundles into the cache so they outlive the app's store."""

    VERB = "Unpack"
