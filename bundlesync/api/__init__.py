"""
Remote and local collaborator services.

This package defines the interfaces the engine consumes to find files on the
content server, in the built-in store and in an optional delivery channel.
"""

from .client import HttpRemoteServices, with_time_ticks
from .services import (
    BuildinQueryServices,
    DeliveryQueryServices,
    DirectoryBuildinQuery,
    MappedDeliveryQuery,
    NoDeliveryQuery,
    RemoteServices,
)

__all__ = [
    "BuildinQueryServices",
    "DeliveryQueryServices",
    "DirectoryBuildinQuery",
    "HttpRemoteServices",
    "MappedDeliveryQuery",
    "NoDeliveryQuery",
    "RemoteServices",
    "with_time_ticks",
]
