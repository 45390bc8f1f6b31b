"""
Core package engine.

`ResourcePackage` is the facade callers use. It delegates to one of four play
modes, which resolve bundles through `BundleResolver` and build download lists
from the active manifest.
"""

from .download_list import (
    get_download_list_by_all,
    get_download_list_by_paths,
    get_download_list_by_tags,
    get_unpack_list_by_all,
    get_unpack_list_by_tags,
)
from .package import (
    EditorSimulateModeParameters,
    HostPlayModeParameters,
    InitializeParameters,
    OfflinePlayModeParameters,
    ResourcePackage,
    WebPlayModeParameters,
    create_parameters,
)
from .play_mode import (
    HostPlayMode,
    OfflinePlayMode,
    PlayModeServices,
    SimulatePlayMode,
    WebPlayMode,
)
from .resolver import BundleResolver

__all__ = [
    "BundleResolver",
    "EditorSimulateModeParameters",
    "HostPlayMode",
    "HostPlayModeParameters",
    "InitializeParameters",
    "OfflinePlayMode",
    "OfflinePlayModeParameters",
    "PlayModeServices",
    "ResourcePackage",
    "SimulatePlayMode",
    "WebPlayMode",
    "WebPlayModeParameters",
    "create_parameters",
    "get_download_list_by_all",
    "get_download_list_by_paths",
    "get_download_list_by_tags",
    "get_unpack_list_by_all",
    "get_unpack_list_by_tags",
]
