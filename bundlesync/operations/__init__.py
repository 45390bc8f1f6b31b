"""
Operations Layer.

Every asynchronous action is an `AsyncOperation` state machine advanced by the
cooperative `OperationSystem`, one step per tick.
"""

from .base import AsyncOperation, CompletedOperation, OperationStatus
from .cache_ops import ClearAllCacheFilesOperation, ClearUnusedCacheFilesOperation
from .download import (
    BundleDownloadOperation,
    DownloaderOperation,
    ResourceDownloaderOperation,
    ResourceUnpackerOperation,
)
from .initialize import (
    HostInitializationOperation,
    InitializationOperation,
    OfflineInitializationOperation,
    SimulateInitializationOperation,
    WebInitializationOperation,
)
from .manifest_ops import (
    DownloadManifestOperation,
    FileFetchOperation,
    LoadBuildinManifestOperation,
    LoadCacheManifestOperation,
    LoadRemoteManifestOperation,
    QueryRemotePackageVersionOperation,
    VerifyCacheFilesOperation,
)
from .system import OperationSystem
from .update import (
    HostPreDownloadContentOperation,
    HostUpdatePackageManifestOperation,
    ImmediateUpdatePackageManifestOperation,
    ImmediateUpdatePackageVersionOperation,
    PreDownloadContentOperation,
    RemoteUpdatePackageVersionOperation,
    UpdatePackageManifestOperation,
    UpdatePackageVersionOperation,
    WebUpdatePackageManifestOperation,
)

__all__ = [
    "AsyncOperation",
    "BundleDownloadOperation",
    "ClearAllCacheFilesOperation",
    "ClearUnusedCacheFilesOperation",
    "CompletedOperation",
    "DownloadManifestOperation",
    "DownloaderOperation",
    "FileFetchOperation",
    "HostInitializationOperation",
    "HostPreDownloadContentOperation",
    "HostUpdatePackageManifestOperation",
    "ImmediateUpdatePackageManifestOperation",
    "ImmediateUpdatePackageVersionOperation",
    "InitializationOperation",
    "LoadBuildinManifestOperation",
    "LoadCacheManifestOperation",
    "LoadRemoteManifestOperation",
    "OfflineInitializationOperation",
    "OperationStatus",
    "OperationSystem",
    "PreDownloadContentOperation",
    "QueryRemotePackageVersionOperation",
    "RemoteUpdatePackageVersionOperation",
    "ResourceDownloaderOperation",
    "ResourceUnpackerOperation",
    "SimulateInitializationOperation",
    "UpdatePackageManifestOperation",
    "UpdatePackageVersionOperation",
    "VerifyCacheFilesOperation",
    "WebInitializationOperation",
    "WebUpdatePackageManifestOperation",
]
