"""
Data Models Layer.

This package contains the Pydantic models and dataclasses that define the
core data structures: the package manifest, resolved asset and bundle views,
configuration and transfer statistics.
"""

from .asset_info import AssetInfo
from .bundle_info import BundleInfo, DeliveryFileInfo, LoadMode
from .config import PackageConfig, PlayMode, VerifyLevel
from .manifest import (
    Found,
    NotFound,
    OutputNameStyle,
    PackageAsset,
    PackageBundle,
    PackageManifest,
)
from .stats import DownloadStats

__all__ = [
    "AssetInfo",
    "BundleInfo",
    "DeliveryFileInfo",
    "DownloadStats",
    "Found",
    "LoadMode",
    "NotFound",
    "OutputNameStyle",
    "PackageAsset",
    "PackageBundle",
    "PackageConfig",
    "PackageManifest",
    "PlayMode",
    "VerifyLevel",
]
