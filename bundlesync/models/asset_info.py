"""
A resolved asset request produced by a manifest's location mapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .manifest import PackageAsset


@dataclass(frozen=True)
class AssetInfo:
    """
    A location mapped to a manifest asset, or an invalid request carrying the
    reason the mapping failed.
    """

    package_name: str
    asset: PackageAsset | None
    asset_type: str | None = None
    error: str = ""

    @classmethod
    def invalid(cls, package_name: str, error: str) -> AssetInfo:
        return cls(package_name, None, None, error)

    @property
    def is_invalid(self) -> bool:
        return self.asset is None

    @property
    def asset_path(self) -> str:
        return self.asset.asset_path if self.asset else ""

    @property
    def address(self) -> str:
        return self.asset.address if self.asset else ""
