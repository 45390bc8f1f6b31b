"""
Package initialisation, one state machine per play mode.
"""

import asyncio
import logging
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING

from bundlesync.exceptions import ManifestError
from bundlesync.models.config import VerifyLevel
from bundlesync.models.manifest import PackageManifest

from .base import AsyncOperation
from .manifest_ops import (
    LoadBuildinManifestOperation,
    LoadCacheManifestOperation,
    VerifyCacheFilesOperation,
)

if TYPE_CHECKING:
    from bundlesync.core.play_mode import PlayModeServices

log = logging.getLogger(__name__)


class InitializationOperation(AsyncOperation):
    """`package_version` holds the version activated during initialisation, if any."""

    def __init__(self, play_mode: "PlayModeServices"):
        super().__init__()
        self._play_mode = play_mode
        self.package_version = ""

    def _activate(self, manifest: PackageManifest) -> None:
        self._play_mode.activate_manifest(manifest)
        self.package_version = manifest.package_version


class SimulateInitializationOperation(InitializationOperation):
    """Loads the manifest produced by a simulated build."""

    class _Steps(Enum):
        NONE = auto()
        LOAD_MANIFEST = auto()
        DONE = auto()

    def __init__(self, play_mode: "PlayModeServices", manifest_path: Path):
        super().__init__(play_mode)
        self.manifest_path = Path(manifest_path)
        self._task: asyncio.Task | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.LOAD_MANIFEST

    def _load(self) -> PackageManifest:
        manifest = PackageManifest.load(self.manifest_path)
        if manifest.package_name != self._play_mode.package_name:
            raise ManifestError(
                f"Simulated manifest '{self.manifest_path}' belongs to package "
                f"'{manifest.package_name}'."
            )
        return manifest

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
                self._activate(self._task.result())
                self._succeed()


class OfflineInitializationOperation(InitializationOperation):
    class _Steps(Enum):
        NONE = auto()
        LOAD_BUILDIN_MANIFEST = auto()
        VERIFY_CACHE_FILES = auto()
        DONE = auto()

    def __init__(self, play_mode: "PlayModeServices", verify_level: VerifyLevel):
        super().__init__(play_mode)
        self.verify_level = verify_level
        self._buildin_op: LoadBuildinManifestOperation | None = None
        self._verify_op: VerifyCacheFilesOperation | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.LOAD_BUILDIN_MANIFEST

    def _update(self) -> None:
        if self._step == self._Steps.LOAD_BUILDIN_MANIFEST:
            if self._buildin_op is None:
                self._buildin_op = LoadBuildinManifestOperation(self._play_mode.persistent)
                self._start_child(self._buildin_op)
            if not self._buildin_op.is_done:
                return
            if not self._buildin_op.succeeded:
                self._step = self._Steps.DONE
                self._fail(self._buildin_op.error)
                return
            self._activate(self._buildin_op.manifest)
            self._step = self._Steps.VERIFY_CACHE_FILES

        if self._step == self._Steps.VERIFY_CACHE_FILES:
            if self._verify_op is None:
                self._verify_op = VerifyCacheFilesOperation(
                    self._play_mode.persistent,
                    self._play_mode.cache_index,
                    self.verify_level,
                )
                self._start_child(self._verify_op)
            self.progress = self._verify_op.progress
            if not self._verify_op.is_done:
                return
            self._step = self._Steps.DONE
            if self._verify_op.succeeded:
                self._succeed()
            else:
                self._fail(self._verify_op.error)

    def _on_abort(self) -> None:
        for op in (self._buildin_op, self._verify_op):
            if op is not None:
                op.abort()


class HostInitializationOperation(InitializationOperation):
    """
    Prefers the version recorded by the last successful update, then the
    built-in manifest. Succeeds without an active manifest when neither exists.
    """

    class _Steps(Enum):
        NONE = auto()
        QUERY_CACHE_PACKAGE_VERSION = auto()
        TRY_LOAD_CACHE_MANIFEST = auto()
        LOAD_BUILDIN_MANIFEST = auto()
        VERIFY_CACHE_FILES = auto()
        DONE = auto()

    def __init__(self, play_mode: "PlayModeServices", verify_level: VerifyLevel):
        super().__init__(play_mode)
        self.verify_level = verify_level
        self._cache_version = ""
        self._cache_op: LoadCacheManifestOperation | None = None
        self._buildin_op: LoadBuildinManifestOperation | None = None
        self._verify_op: VerifyCacheFilesOperation | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.QUERY_CACHE_PACKAGE_VERSION

    def _update(self) -> None:
        if self._step == self._Steps.QUERY_CACHE_PACKAGE_VERSION:
            persistent = self._play_mode.persistent
            self._cache_version = persistent.read_sandbox_package_version_file()
            if self._cache_version:
                self._step = self._Steps.TRY_LOAD_CACHE_MANIFEST
            else:
                self._step = self._Steps.LOAD_BUILDIN_MANIFEST

        if self._step == self._Steps.TRY_LOAD_CACHE_MANIFEST:
            if self._cache_op is None:
                self._cache_op = LoadCacheManifestOperation(
                    self._play_mode.persistent, self._cache_version
                )
                self._start_child(self._cache_op)
            if not self._cache_op.is_done:
                return
            if self._cache_op.succeeded:
                self._activate(self._cache_op.manifest)
                self._step = self._Steps.VERIFY_CACHE_FILES
            else:
                log.warning(
                    f"[yellow]Recorded version {self._cache_version} could not be "
                    f"loaded: {self._cache_op.error}[/yellow]"
                )
                self._step = self._Steps.LOAD_BUILDIN_MANIFEST

        if self._step == self._Steps.LOAD_BUILDIN_MANIFEST:
            if self._buildin_op is None:
                self._buildin_op = LoadBuildinManifestOperation(self._play_mode.persistent)
                self._start_child(self._buildin_op)
            if not self._buildin_op.is_done:
                return
            if self._buildin_op.succeeded:
                self._activate(self._buildin_op.manifest)
            elif self._buildin_op.version_file_missing:
                log.info(
                    f"No local manifest for '{self._play_mode.package_name}', "
                    "update the manifest before loading assets."
                )
            else:
                self._step = self._Steps.DONE
                self._fail(self._buildin_op.error)
                return
            self._step = self._Steps.VERIFY_CACHE_FILES

        if self._step == self._Steps.VERIFY_CACHE_FILES:
            if self._verify_op is None:
                self._verify_op = VerifyCacheFilesOperation(
                    self._play_mode.persistent,
                    self._play_mode.cache_index,
                    self.verify_level,
                )
                self._start_child(self._verify_op)
            self.progress = self._verify_op.progress
            if not self._verify_op.is_done:
                return
            self._step = self._Steps.DONE
            if self._verify_op.succeeded:
                self._succeed()
            else:
                self._fail(self._verify_op.error)

    def _on_abort(self) -> None:
        for op in (self._cache_op, self._buildin_op, self._verify_op):
            if op is not None:
                op.abort()


class WebInitializationOperation(InitializationOperation):
    class _Steps(Enum):
        NONE = auto()
        LOAD_BUILDIN_MANIFEST = auto()
        DONE = auto()

    def __init__(self, play_mode: "PlayModeServices"):
        super().__init__(play_mode)
        self._buildin_op: LoadBuildinManifestOperation | None = None
        self._step = self._Steps.NONE

    def _start(self) -> None:
        self._step = self._Steps.LOAD_BUILDIN_MANIFEST

    def _update(self) -> None:
        if self._step == self._Steps.LOAD_BUILDIN_MANIFEST:
            if self._buildin_op is None:
                self._buildin_op = LoadBuildinManifestOperation(self._play_mode.persistent)
                self._start_child(self._buildin_op)
            if not self._buildin_op.is_done:
                return
            self._step = self._Steps.DONE
            if self._buildin_op.succeeded:
                self._activate(self._buildin_op.manifest)
                self._succeed()
            elif self._buildin_op.version_file_missing:
                self._succeed()
            else:
                self._fail(self._buildin_op.error)

    def _on_abort(self) -> None:
        if self._buildin_op is not None:
            self._buildin_op.abort()
