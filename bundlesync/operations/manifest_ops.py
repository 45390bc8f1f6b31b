"""
Leaf operations that query versions and move manifests between the remote
server, the sandbox, the built-in store and memory.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path

from bundlesync.api.services import RemoteServices
from bundlesync.exceptions import FileIntegrityError, ManifestError
from bundlesync.models.config import VerifyLevel
from bundlesync.models.manifest import PackageManifest
from bundlesync.storage.cache import CacheIndex
from bundlesync.storage.persistent import (
    PackagePersistent,
    get_manifest_file_name,
    get_package_hash_file_name,
)
from bundlesync.transfer.downloader import FileTransfer
from bundlesync.transfer.integrity import FileIntegrityChecker, VerifyResult

from .base import AsyncOperation

log = logging.getLogger(__name__)

Verifier = Callable[[Path | bytes], str]


class QueryRemotePackageVersionOperation(AsyncOperation):
    """Asks the remote services for the latest version of a package."""

    class _Steps(Enum):
        NONE = auto()
        QUERY_REMOTE_VERSION = auto()
        DONE = auto()

    def __init__(
        self,
        remote: RemoteServices,
        package_name: str,
        append_time_ticks: bool,
        timeout: float,
        try_again: int = 0,
    ):
        super().__init__()
        self.remote = remote
        self.package_name = package_name
        self.append_time_ticks = append_time_ticks
        self.timeout = timeout
        self.try_again = try_again
        self.package_version = ""
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.QUERY_REMOTE_VERSION

    def _update(self) -> None:
        if self._step == self._Steps.QUERY_REMOTE_VERSION:
            if self._task is None:
                self._task = self._run_in_background(
                    self.remote.query_latest_version(
                        self.package_name,
                        self.append_time_ticks,
                        self.timeout,
                        self.try_again,
                    )
                )
            if not self._task.done():
                return

            self._step = self._Steps.DONE
            error = self._task_error(self._task)
            if error:
                self._fail(error)
            else:
                self.package_version = self._task.result()
                self._succeed()


@dataclass
class _AttemptState:
    """Written by the transfer task, read by the ticking operation."""

    received_bytes: int = 0
    last_activity: float = field(default_factory=time.monotonic)

    def on_progress(self, received: int) -> None:
        self.received_bytes = received
        self.last_activity = time.monotonic()


class FileFetchOperation(AsyncOperation):
    """
    Fetches one file with retries, alternating between the main and fallback
    source on every attempt.

    With `destination=None` the content is kept in memory (`data`). An attempt
    fails when the transfer raises, when no data arrives for `timeout` seconds,
    or when `verify` returns a non-empty error message.
    """

    RETRY_DELAY = 1.0

    class _Steps(Enum):
        NONE = auto()
        FETCH = auto()
        CHECK_FETCH = auto()
        TRY_AGAIN = auto()
        DONE = auto()

    def __init__(
        self,
        transfer: FileTransfer,
        main_url: str,
        fallback_url: str,
        destination: Path | None,
        *,
        timeout: float,
        try_again: int = 0,
        verify: Verifier | None = None,
    ):
        super().__init__()
        self.transfer = transfer
        self.main_url = main_url
        self.fallback_url = fallback_url or main_url
        self.destination = destination
        self.timeout = timeout
        self.try_again = max(try_again, 0)
        self.verify = verify

        self.data = b""
        self.current_url = ""
        self.downloaded_bytes = 0
        self.retry_count = 0

        self._request_count = 0
        self._retry_at = 0.0
        self._attempt: _AttemptState | None = None
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.FETCH

    def _update(self) -> None:
        if self._step == self._Steps.FETCH:
            self.current_url = (
                self.main_url if self._request_count % 2 == 0 else self.fallback_url
            )
            self._request_count += 1
            self.downloaded_bytes = 0
            self._attempt = _AttemptState()
            self._task = self._run_in_background(
                self._fetch(self.current_url, self._attempt)
            )
            self._step = self._Steps.CHECK_FETCH

        if self._step == self._Steps.CHECK_FETCH:
            self.downloaded_bytes = self._attempt.received_bytes
            if not self._task.done():
                if time.monotonic() - self._attempt.last_activity > self.timeout:
                    self._task.cancel()
                    self._handle_failure(
                        f"Fetch timed out after {self.timeout}s without data: "
                        f"{self.current_url}"
                    )
                return

            error = self._task_error(self._task)
            if error:
                self._handle_failure(f"Failed to fetch {self.current_url}: {error}")
                return
            self.data = self._task.result()
            self._step = self._Steps.DONE
            self._succeed()

        if self._step == self._Steps.TRY_AGAIN:
            if time.monotonic() >= self._retry_at and self._task.done():
                self._step = self._Steps.FETCH

    def _handle_failure(self, error: str) -> None:
        if self.retry_count < self.try_again:
            self.retry_count += 1
            log.warning(
                f"[yellow]{error}. Retrying ({self.retry_count}/{self.try_again})..."
                "[/yellow]"
            )
            self._retry_at = time.monotonic() + self.RETRY_DELAY
            self._step = self._Steps.TRY_AGAIN
        else:
            self._step = self._Steps.DONE
            self._fail(error)

    async def _fetch(self, url: str, attempt: _AttemptState) -> bytes:
        if self.destination is None:
            payload: Path | bytes = await self.transfer.fetch_bytes(url)
            attempt.on_progress(len(payload))
        else:
            await self.transfer.fetch(url, self.destination, attempt.on_progress)
            payload = self.destination

        if self.verify is not None:
            error = await asyncio.to_thread(self.verify, payload)
            if error:
                raise FileIntegrityError(error)
        return payload if isinstance(payload, bytes) else b""


def _verify_not_empty(payload: Path | bytes) -> str:
    content = payload if isinstance(payload, bytes) else payload.read_bytes()
    return "" if content.strip() else "Package hash file is empty."


def _verify_md5(expected: str) -> Verifier:
    def verify(payload: Path | bytes) -> str:
        if isinstance(payload, bytes):
            actual = FileIntegrityChecker.bytes_md5(payload)
        else:
            actual = FileIntegrityChecker.file_md5(payload)
        if actual != expected:
            return f"Manifest file hash mismatch: expected {expected}, got {actual}."
        return ""

    return verify


class DownloadManifestOperation(AsyncOperation):
    """Downloads the hash file, then the manifest it vouches for, into the sandbox."""

    class _Steps(Enum):
        NONE = auto()
        DOWNLOAD_PACKAGE_HASH = auto()
        DOWNLOAD_MANIFEST = auto()
        DONE = auto()

    def __init__(
        self,
        persistent: PackagePersistent,
        remote: RemoteServices,
        transfer: FileTransfer,
        package_version: str,
        timeout: float,
        try_again: int = 0,
    ):
        super().__init__()
        self.persistent = persistent
        self.remote = remote
        self.transfer = transfer
        self.package_version = package_version
        self.timeout = timeout
        self.try_again = try_again
        self._hash_op: FileFetchOperation | None = None
        self._manifest_op: FileFetchOperation | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.DOWNLOAD_PACKAGE_HASH

    def _fetch(self, file_name: str, destination: Path, verify: Verifier) -> FileFetchOperation:
        op = FileFetchOperation(
            self.transfer,
            self.remote.get_remote_main_url(file_name),
            self.remote.get_remote_fallback_url(file_name),
            destination,
            timeout=self.timeout,
            try_again=self.try_again,
            verify=verify,
        )
        self._start_child(op)
        return op

    def _update(self) -> None:
        package_name = self.persistent.package_name

        if self._step == self._Steps.DOWNLOAD_PACKAGE_HASH:
            if self._hash_op is None:
                self._hash_op = self._fetch(
                    get_package_hash_file_name(package_name, self.package_version),
                    self.persistent.get_sandbox_hash_path(self.package_version),
                    _verify_not_empty,
                )
            if not self._hash_op.is_done:
                return
            if not self._hash_op.succeeded:
                self._step = self._Steps.DONE
                self._fail(self._hash_op.error)
                return
            self._step = self._Steps.DOWNLOAD_MANIFEST

        if self._step == self._Steps.DOWNLOAD_MANIFEST:
            if self._manifest_op is None:
                hash_path = self.persistent.get_sandbox_hash_path(self.package_version)
                expected = hash_path.read_text(encoding="utf-8").strip()
                self._manifest_op = self._fetch(
                    get_manifest_file_name(package_name, self.package_version),
                    self.persistent.get_sandbox_manifest_path(self.package_version),
                    _verify_md5(expected),
                )
            self.progress = self._manifest_op.progress
            if not self._manifest_op.is_done:
                return
            self._step = self._Steps.DONE
            if self._manifest_op.succeeded:
                log.debug(f"Downloaded manifest '{package_name}' {self.package_version}.")
                self._succeed()
            else:
                self._fail(self._manifest_op.error)

    def _on_abort(self) -> None:
        for op in (self._hash_op, self._manifest_op):
            if op is not None:
                op.abort()


def _check_identity(
    manifest: PackageManifest, package_name: str, package_version: str | None
) -> None:
    if manifest.package_name != package_name:
        raise ManifestError(
            f"Manifest belongs to package '{manifest.package_name}', "
            f"expected '{package_name}'."
        )
    if package_version is not None and manifest.package_version != package_version:
        raise ManifestError(
            f"Manifest version is '{manifest.package_version}', "
            f"expected '{package_version}'."
        )


class LoadCacheManifestOperation(AsyncOperation):
    """
    Loads a manifest previously cached in the sandbox.

    The cached file must match its recorded hash; a corrupted copy is deleted
    so the next update downloads it again.
    """

    class _Steps(Enum):
        NONE = auto()
        LOAD_MANIFEST = auto()
        DONE = auto()

    def __init__(self, persistent: PackagePersistent, package_version: str):
        super().__init__()
        self.persistent = persistent
        self.package_version = package_version
        self.manifest: PackageManifest | None = None
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.LOAD_MANIFEST

    def _load(self) -> PackageManifest:
        hash_path = self.persistent.get_sandbox_hash_path(self.package_version)
        manifest_path = self.persistent.get_sandbox_manifest_path(self.package_version)
        if not hash_path.is_file():
            raise ManifestError(f"Not found cache package hash file: {hash_path}")
        if not manifest_path.is_file():
            raise ManifestError(f"Not found cache manifest file: {manifest_path}")

        expected = hash_path.read_text(encoding="utf-8").strip()
        if FileIntegrityChecker.file_md5(manifest_path) != expected:
            self._delete_files(hash_path, manifest_path)
            raise ManifestError(f"Failed to verify cache manifest file hash: {manifest_path}")

        try:
            manifest = PackageManifest.load(manifest_path)
            _check_identity(manifest, self.persistent.package_name, self.package_version)
        except ManifestError:
            self._delete_files(hash_path, manifest_path)
            raise
        return manifest

    @staticmethod
    def _delete_files(*paths: Path) -> None:
        for path in paths:
            log.warning(f"[yellow]Deleting corrupted cache manifest file '{path}'.[/yellow]")
            path.unlink(missing_ok=True)

    def _update(self) -> None:
        if self._step == self._Steps.LOAD_MANIFEST:
            if self._task is None:
                self._task = self._run_in_background(asyncio.to_thread(self._load))
            if not self._task.done():
                return
            self._step = self._Steps.DONE
            error = self._task_error(self._task)
            if error:
                self._fail(error)
            else:
                self.manifest = self._task.result()
                self._succeed()


class LoadBuildinManifestOperation(AsyncOperation):
    """Reads the built-in version record, then the built-in manifest it names."""

    class _Steps(Enum):
        NONE = auto()
        QUERY_BUILDIN_VERSION = auto()
        LOAD_BUILDIN_MANIFEST = auto()
        DONE = auto()

    def __init__(self, persistent: PackagePersistent):
        super().__init__()
        self.persistent = persistent
        self.package_version = ""
        self.version_file_missing = False
        self.manifest: PackageManifest | None = None
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.QUERY_BUILDIN_VERSION

    def _read_version(self) -> str:
        path = self.persistent.get_buildin_package_version_path()
        if not path.is_file():
            return ""
        version = path.read_text(encoding="utf-8").strip()
        if not version:
            raise ManifestError(f"Buildin package version file is empty: {path}")
        return version

    def _load_manifest(self) -> PackageManifest:
        path = self.persistent.get_buildin_manifest_path(self.package_version)
        if not path.is_file():
            raise ManifestError(f"Not found buildin manifest file: {path}")
        hash_path = self.persistent.get_buildin_hash_path(self.package_version)
        if hash_path.is_file():
            expected = hash_path.read_text(encoding="utf-8").strip()
            if FileIntegrityChecker.file_md5(path) != expected:
                raise ManifestError(f"Failed to verify buildin manifest file hash: {path}")
        manifest = PackageManifest.load(path)
        _check_identity(manifest, self.persistent.package_name, self.package_version)
        return manifest

    def _update(self) -> None:
        if self._step == self._Steps.QUERY_BUILDIN_VERSION:
            if self._task is None:
                self._task = self._run_in_background(asyncio.to_thread(self._read_version))
            if not self._task.done():
                return
            error = self._task_error(self._task)
            if error:
                self._step = self._Steps.DONE
                self._fail(error)
                return
            self.package_version = self._task.result()
            if not self.package_version:
                self.version_file_missing = True
                self._step = self._Steps.DONE
                path = self.persistent.get_buildin_package_version_path()
                self._fail(f"Not found buildin package version file: {path}")
                return
            self._task = None
            self._step = self._Steps.LOAD_BUILDIN_MANIFEST

        if self._step == self._Steps.LOAD_BUILDIN_MANIFEST:
            if self._task is None:
                self._task = self._run_in_background(
                    asyncio.to_thread(self._load_manifest)
                )
            if not self._task.done():
                return
            self._step = self._Steps.DONE
            error = self._task_error(self._task)
            if error:
                self._fail(error)
            else:
                self.manifest = self._task.result()
                self._succeed()


class LoadRemoteManifestOperation(AsyncOperation):
    """Fetches a manifest straight into memory. Used where nothing is cached."""

    class _Steps(Enum):
        NONE = auto()
        DOWNLOAD_PACKAGE_HASH = auto()
        DOWNLOAD_MANIFEST = auto()
        DESERIALIZE = auto()
        DONE = auto()

    def __init__(
        self,
        remote: RemoteServices,
        transfer: FileTransfer,
        package_name: str,
        package_version: str,
        timeout: float,
        try_again: int = 0,
    ):
        super().__init__()
        self.remote = remote
        self.transfer = transfer
        self.package_name = package_name
        self.package_version = package_version
        self.timeout = timeout
        self.try_again = try_again
        self.manifest: PackageManifest | None = None
        self._hash_op: FileFetchOperation | None = None
        self._manifest_op: FileFetchOperation | None = None
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.DOWNLOAD_PACKAGE_HASH

    def _fetch(self, file_name: str, verify: Verifier) -> FileFetchOperation:
        op = FileFetchOperation(
            self.transfer,
            self.remote.get_remote_main_url(file_name),
            self.remote.get_remote_fallback_url(file_name),
            None,
            timeout=self.timeout,
            try_again=self.try_again,
            verify=verify,
        )
        self._start_child(op)
        return op

    def _deserialize(self, data: bytes) -> PackageManifest:
        manifest = PackageManifest.from_json(data)
        _check_identity(manifest, self.package_name, self.package_version)
        return manifest

    def _update(self) -> None:
        if self._step == self._Steps.DOWNLOAD_PACKAGE_HASH:
            if self._hash_op is None:
                self._hash_op = self._fetch(
                    get_package_hash_file_name(self.package_name, self.package_version),
                    _verify_not_empty,
                )
            if not self._hash_op.is_done:
                return
            if not self._hash_op.succeeded:
                self._step = self._Steps.DONE
                self._fail(self._hash_op.error)
                return
            self._step = self._Steps.DOWNLOAD_MANIFEST

        if self._step == self._Steps.DOWNLOAD_MANIFEST:
            if self._manifest_op is None:
                expected = self._hash_op.data.decode("utf-8").strip()
                self._manifest_op = self._fetch(
                    get_manifest_file_name(self.package_name, self.package_version),
                    _verify_md5(expected),
                )
            if not self._manifest_op.is_done:
                return
            if not self._manifest_op.succeeded:
                self._step = self._Steps.DONE
                self._fail(self._manifest_op.error)
                return
            self._step = self._Steps.DESERIALIZE

        if self._step == self._Steps.DESERIALIZE:
            if self._task is None:
                self._task = self._run_in_background(
                    asyncio.to_thread(self._deserialize, self._manifest_op.data)
                )
            if not self._task.done():
                return
            self._step = self._Steps.DONE
            error = self._task_error(self._task)
            if error:
                self._fail(error)
            else:
                self.manifest = self._task.result()
                self._succeed()

    def _on_abort(self) -> None:
        for op in (self._hash_op, self._manifest_op):
            if op is not None:
                op.abort()


class VerifyCacheFilesOperation(AsyncOperation):
    """
    Scans the sandbox cache and indexes every record that passes verification.

    Records are checked a batch at a time on a worker thread; invalid records
    are deleted.
    """

    BATCH_SIZE = 32

    class _Steps(Enum):
        NONE = auto()
        PREPARE = auto()
        VERIFY = auto()
        DONE = auto()

    def __init__(
        self,
        persistent: PackagePersistent,
        cache_index: CacheIndex,
        verify_level: VerifyLevel = VerifyLevel.MIDDLE,
    ):
        super().__init__()
        self.persistent = persistent
        self.cache_index = cache_index
        self.verify_level = verify_level
        self.verify_success_count = 0
        self.verify_fail_count = 0
        self._pending: list[str] = []
        self._total = 0
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.PREPARE

    def _inspect_batch(self, batch: list[str]) -> list[tuple[str, VerifyResult, object]]:
        results = []
        for guid in batch:
            result, record = CacheIndex.inspect_record(
                self.persistent, guid, self.verify_level
            )
            results.append((guid, result, record))
        return results

    def _update(self) -> None:
        if self._step == self._Steps.PREPARE:
            if self._task is None:
                self._task = self._run_in_background(
                    asyncio.to_thread(CacheIndex.list_record_guids, self.persistent)
                )
            if not self._task.done():
                return
            error = self._task_error(self._task)
            if error:
                self._step = self._Steps.DONE
                self._fail(error)
                return
            self._pending = self._task.result()
            self._total = len(self._pending)
            self._task = None
            self._step = self._Steps.VERIFY

        if self._step == self._Steps.VERIFY:
            if self._task is None:
                if not self._pending:
                    self._step = self._Steps.DONE
                    log.debug(
                        f"Verified cache of '{self.persistent.package_name}': "
                        f"{self.verify_success_count} valid, "
                        f"{self.verify_fail_count} removed."
                    )
                    self._succeed()
                    return
                batch = self._pending[: self.BATCH_SIZE]
                self._pending = self._pending[self.BATCH_SIZE :]
                self._task = self._run_in_background(
                    asyncio.to_thread(self._inspect_batch, batch)
                )
            if not self._task.done():
                return

            error = self._task_error(self._task)
            if error:
                self._step = self._Steps.DONE
                self._fail(error)
                return
            for guid, result, record in self._task.result():
                if record is not None:
                    self.cache_index.record(self.persistent.package_name, guid, record)
                    self.verify_success_count += 1
                else:
                    log.warning(
                        f"[yellow]Removing invalid cache record '{guid}' "
                        f"({result.value}).[/yellow]"
                    )
                    self.persistent.delete_cache_folder(guid)
                    self.verify_fail_count += 1
            self._task = None
            checked = self.verify_success_count + self.verify_fail_count
            self.progress = checked / self._total if self._total else 1.0
