"""
Storage Layer.

This package handles all data persistence: the configuration file, the
per-package built-in and sandbox directories, and the index of cached bundles.
"""

from .cache import CacheIndex, CacheRecord
from .config_manager import ConfigManager, default_config_path
from .persistent import PackagePersistent

__all__ = [
    "CacheIndex",
    "CacheRecord",
    "ConfigManager",
    "PackagePersistent",
    "default_config_path",
]
