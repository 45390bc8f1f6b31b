"""
Pydantic models for the package manifest: the immutable, versioned map from
logical assets to the physical bundle files that hold them.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, model_validator

from bundlesync.exceptions import ContractViolationError, ManifestError

from .asset_info import AssetInfo

log = logging.getLogger(__name__)

MANIFEST_FILE_VERSION = "1.5.0"


class OutputNameStyle(str, Enum):
    """How a bundle's physical file name is derived from its manifest entry."""

    HASH_NAME = "hash_name"
    BUNDLE_NAME_HASH_NAME = "bundle_name_hash_name"


@dataclass(frozen=True)
class Found:
    value: Any


@dataclass(frozen=True)
class NotFound:
    reason: str


LookupResult = Found | NotFound


class PackageBundle(BaseModel):
    """One physical content file, addressed by its content hash."""

    model_config = ConfigDict(frozen=True)

    bundle_name: str
    file_hash: str
    file_crc: str = ""
    file_size: int = Field(ge=0)
    is_raw_file: bool = False
    tags: tuple[str, ...] = ()

    _package_name: str = PrivateAttr(default="")
    _file_name: str = PrivateAttr(default="")

    @property
    def cache_guid(self) -> str:
        return self.file_hash

    @property
    def package_name(self) -> str:
        return self._package_name

    @property
    def file_name(self) -> str:
        return self._file_name or self.file_hash

    @property
    def file_extension(self) -> str:
        return Path(self.bundle_name).suffix

    def bind(self, package_name: str, style: OutputNameStyle) -> None:
        """Attaches the owning package and computes the physical file name."""
        self._package_name = package_name
        if style == OutputNameStyle.BUNDLE_NAME_HASH_NAME:
            stem = self.bundle_name[: -len(self.file_extension) or None]
            self._file_name = f"{stem}_{self.file_hash}{self.file_extension}"
        else:
            self._file_name = f"{self.file_hash}{self.file_extension}"

    def has_any_tags(self) -> bool:
        return bool(self.tags)

    def has_tag(self, tags: list[str] | tuple[str, ...] | set[str]) -> bool:
        """True if this bundle carries at least one of the given tags."""
        if not tags or not self.tags:
            return False
        return not set(self.tags).isdisjoint(tags)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageBundle):
            return NotImplemented
        return self.cache_guid == other.cache_guid

    def __hash__(self) -> int:
        return hash(self.cache_guid)


class PackageAsset(BaseModel):
    """A logical asset: one main bundle plus a flattened dependency list."""

    model_config = ConfigDict(frozen=True)

    address: str = ""
    asset_path: str
    asset_guid: str = ""
    asset_tags: tuple[str, ...] = ()
    bundle_id: int
    depend_ids: tuple[int, ...] = ()

    def has_tag(self, tags: list[str] | tuple[str, ...] | set[str]) -> bool:
        if not tags or not self.asset_tags:
            return False
        return not set(self.asset_tags).isdisjoint(tags)


class PackageManifest(BaseModel):
    """
    A read-only snapshot of one package version.

    Instances are created by deserializing a manifest file and are never
    mutated afterwards; a new version replaces the whole object.
    """

    model_config = ConfigDict(frozen=True)

    file_version: str = MANIFEST_FILE_VERSION
    enable_addressable: bool = False
    location_to_lower: bool = False
    include_asset_guid: bool = False
    output_name_style: OutputNameStyle = OutputNameStyle.HASH_NAME
    package_name: str = Field(min_length=1)
    package_version: str = Field(min_length=1)
    asset_list: tuple[PackageAsset, ...] = ()
    bundle_list: tuple[PackageBundle, ...] = ()

    _asset_by_path: dict[str, PackageAsset] = PrivateAttr(default_factory=dict)
    _asset_path_by_location: dict[str, str] = PrivateAttr(default_factory=dict)
    _asset_path_by_guid: dict[str, str] = PrivateAttr(default_factory=dict)
    _bundle_by_name: dict[str, PackageBundle] = PrivateAttr(default_factory=dict)
    _bundles_by_tag: dict[str, list[PackageBundle]] = PrivateAttr(default_factory=dict)
    _cache_guids: set[str] = PrivateAttr(default_factory=set)

    @model_validator(mode="after")
    def validate_bundle_indices(self) -> "PackageManifest":
        """Every asset must point inside the bundle list."""
        bundle_count = len(self.bundle_list)
        for asset in self.asset_list:
            for bundle_id in (asset.bundle_id, *asset.depend_ids):
                if bundle_id < 0 or bundle_id >= bundle_count:
                    raise ValueError(
                        f"Asset '{asset.asset_path}' references bundle index "
                        f"{bundle_id}, but the manifest has {bundle_count} bundles."
                    )
        return self

    @model_validator(mode="after")
    def validate_unique_names(self) -> "PackageManifest":
        names = [b.bundle_name for b in self.bundle_list]
        if len(names) != len(set(names)):
            raise ValueError("Bundle names must be unique within a manifest.")
        paths = [a.asset_path for a in self.asset_list]
        if len(paths) != len(set(paths)):
            raise ValueError("Asset paths must be unique within a manifest.")
        if self.enable_addressable:
            addresses = [a.address for a in self.asset_list if a.address]
            if len(addresses) != len(set(addresses)):
                raise ValueError("Asset addresses must be unique when addressable.")
        return self

    def model_post_init(self, __context: Any) -> None:
        for bundle in self.bundle_list:
            bundle.bind(self.package_name, self.output_name_style)
            self._bundle_by_name[bundle.bundle_name] = bundle
            self._cache_guids.add(bundle.cache_guid)
            for tag in bundle.tags:
                self._bundles_by_tag.setdefault(tag, []).append(bundle)

        for asset in self.asset_list:
            self._asset_by_path[asset.asset_path] = asset
            location = asset.address if self.enable_addressable else asset.asset_path
            if location:
                self._asset_path_by_location[self._normalize(location)] = asset.asset_path
            if self.include_asset_guid and asset.asset_guid:
                self._asset_path_by_guid[asset.asset_guid] = asset.asset_path

    # Serialization
    @classmethod
    def from_json(cls, text: str | bytes) -> "PackageManifest":
        """Deserializes a manifest, raising ManifestError on malformed input."""
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise ManifestError(f"Invalid package manifest:\n{e}") from e

    @classmethod
    def load(cls, path: Path) -> "PackageManifest":
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ManifestError(f"Could not read manifest file '{path}': {e}") from e
        return cls.from_json(data)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2)

    # Location mapping
    def _normalize(self, location: str) -> str:
        return location.lower() if self.location_to_lower else location

    def try_mapping_to_asset_path(self, location: str) -> str:
        """Returns the asset path for a location, or an empty string."""
        if not location:
            return ""
        return self._asset_path_by_location.get(self._normalize(location), "")

    def convert_location_to_asset_info(
        self, location: str, asset_type: str | None = None
    ) -> AssetInfo:
        if not location:
            return AssetInfo.invalid(self.package_name, "The location is null or empty.")
        asset_path = self.try_mapping_to_asset_path(location)
        if not asset_path:
            return AssetInfo.invalid(
                self.package_name, f"The location not found in manifest: {location}"
            )
        return AssetInfo(self.package_name, self._asset_by_path[asset_path], asset_type)

    def convert_asset_guid_to_asset_info(
        self, asset_guid: str, asset_type: str | None = None
    ) -> AssetInfo:
        if not self.include_asset_guid:
            return AssetInfo.invalid(
                self.package_name, "The manifest does not include asset GUIDs."
            )
        asset_path = self._asset_path_by_guid.get(asset_guid, "")
        if not asset_path:
            return AssetInfo.invalid(
                self.package_name, f"The asset GUID not found in manifest: {asset_guid}"
            )
        return AssetInfo(self.package_name, self._asset_by_path[asset_path], asset_type)

    def get_assets_info_by_tags(self, tags: list[str]) -> list[AssetInfo]:
        return [
            AssetInfo(self.package_name, asset)
            for asset in self.asset_list
            if asset.has_tag(tags)
        ]

    # Bundle lookups
    def find_main_bundle(self, asset_path: str) -> LookupResult:
        asset = self._asset_by_path.get(asset_path)
        if asset is None:
            return NotFound(f"Not found asset: {asset_path}")
        return Found(self.bundle_list[asset.bundle_id])

    def find_dependencies(self, asset_path: str) -> LookupResult:
        asset = self._asset_by_path.get(asset_path)
        if asset is None:
            return NotFound(f"Not found asset: {asset_path}")
        return Found([self.bundle_list[i] for i in asset.depend_ids])

    def get_main_package_bundle(self, asset_path: str) -> PackageBundle:
        """Returns the main bundle of an asset; a missing asset is a contract violation."""
        match self.find_main_bundle(asset_path):
            case Found(value=bundle):
                return bundle
            case NotFound(reason=reason):
                raise ContractViolationError(reason)

    def get_all_dependencies(self, asset_path: str) -> list[PackageBundle]:
        match self.find_dependencies(asset_path):
            case Found(value=bundles):
                return bundles
            case NotFound(reason=reason):
                raise ContractViolationError(reason)

    def get_bundle_name(self, bundle_id: int) -> str:
        if bundle_id < 0 or bundle_id >= len(self.bundle_list):
            raise ContractViolationError(f"Invalid bundle id: {bundle_id}")
        return self.bundle_list[bundle_id].bundle_name

    def try_get_package_bundle(self, bundle_name: str) -> PackageBundle | None:
        return self._bundle_by_name.get(bundle_name)

    def get_bundles_by_tags(self, tags: list[str]) -> list[PackageBundle]:
        """Bundles carrying any of the tags, in manifest order, without duplicates."""
        wanted = {b.cache_guid for tag in tags for b in self._bundles_by_tag.get(tag, [])}
        return [b for b in self.bundle_list if b.cache_guid in wanted]

    def is_include_bundle_file(self, cache_guid: str) -> bool:
        return cache_guid in self._cache_guids
