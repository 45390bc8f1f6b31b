"""
Provides methods for checking the integrity of downloaded and cached bundle files.
"""

import hashlib
import logging
from enum import Enum
from pathlib import Path

from bundlesync.models.config import VerifyLevel

log = logging.getLogger(__name__)

_READ_CHUNK = 1048576  # 1 MB


class VerifyResult(Enum):
    """Outcome of a file verification."""

    SUCCEED = "succeed"
    DATA_FILE_NOT_FOUND = "data_file_not_found"
    INFO_FILE_NOT_FOUND = "info_file_not_found"
    FILE_SIZE_MISMATCH = "file_size_mismatch"
    FILE_HASH_MISMATCH = "file_hash_mismatch"
    EXCEPTION = "exception"


class FileIntegrityChecker:
    """A collection of static methods for validating bundle file integrity."""

    @staticmethod
    def file_md5(filepath: Path) -> str:
        """Computes the MD5 hex digest of a file in chunks."""
        digest = hashlib.md5()  # noqa: S324
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(_READ_CHUNK), b""):
                digest.update(chunk)
        return digest.hexdigest()

    @staticmethod
    def bytes_md5(data: bytes) -> str:
        return hashlib.md5(data).hexdigest()  # noqa: S324

    @staticmethod
    def verify_file(
        filepath: Path,
        file_size: int,
        file_hash: str,
        level: VerifyLevel = VerifyLevel.HIGH,
    ) -> VerifyResult:
        """
        Checks a file against its expected size and hash.

        Args:
            filepath: Path to the file.
            file_size: Expected size in bytes.
            file_hash: Expected MD5 hex digest.
            level: LOW only checks existence, MIDDLE adds the size check and
                HIGH adds the hash check.

        Returns:
            VerifyResult.SUCCEED if the file passes every check of the level.
        """
        try:
            if not filepath.is_file():
                return VerifyResult.DATA_FILE_NOT_FOUND
            if level == VerifyLevel.LOW:
                return VerifyResult.SUCCEED

            if filepath.stat().st_size != file_size:
                return VerifyResult.FILE_SIZE_MISMATCH
            if level == VerifyLevel.MIDDLE:
                return VerifyResult.SUCCEED

            if FileIntegrityChecker.file_md5(filepath) != file_hash:
                return VerifyResult.FILE_HASH_MISMATCH
            return VerifyResult.SUCCEED
        except OSError as e:
            log.debug(f"Integrity check failed for '{filepath}' with error: {e}")
            return VerifyResult.EXCEPTION
