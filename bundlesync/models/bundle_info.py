"""
Ephemeral views of a bundle together with where it can currently be read from.
"""

from dataclasses import dataclass
from enum import Enum

from .manifest import PackageBundle


class LoadMode(str, Enum):
    """The storage tier a bundle is served from."""

    LOAD_FROM_DELIVERY = "delivery"
    LOAD_FROM_CACHE = "cache"
    LOAD_FROM_STREAMING = "streaming"
    LOAD_FROM_REMOTE = "remote"


@dataclass(frozen=True)
class DeliveryFileInfo:
    """Location of a file inside an externally managed delivery channel."""

    path: str
    offset: int = 0


@dataclass(frozen=True)
class BundleInfo:
    """
    A bundle resolved against one storage tier.

    `file_path` is set for delivery, cache and streaming modes; the remote URLs
    are set for the remote mode. Built fresh on every resolution.
    """

    bundle: PackageBundle
    load_mode: LoadMode
    file_path: str = ""
    delivery_offset: int = 0
    remote_main_url: str = ""
    remote_fallback_url: str = ""

    @property
    def sources(self) -> tuple[str, str]:
        """The (main, fallback) pair a transfer should read from."""
        if self.load_mode == LoadMode.LOAD_FROM_REMOTE:
            return self.remote_main_url, self.remote_fallback_url
        return self.file_path, self.file_path
