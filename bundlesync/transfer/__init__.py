from .downloader import (
    FileTransfer,
    HttpFileTransfer,
    LocalFileTransfer,
    close_connection_pool,
    get_connection_pool,
)
from .integrity import FileIntegrityChecker, VerifyResult

__all__ = [
    "FileTransfer",
    "HttpFileTransfer",
    "LocalFileTransfer",
    "close_connection_pool",
    "get_connection_pool",
    "FileIntegrityChecker",
    "VerifyResult",
]
