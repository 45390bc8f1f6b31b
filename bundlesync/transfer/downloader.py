"""
Moves bytes from a source (a URL or a built-in file) to a destination path.

A transfer performs exactly one attempt; retry, timeout and verification are
the business of the operations that drive it.
"""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import aiofiles
import aiohttp

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_connection_pool: aiohttp.ClientSession | None = None
_pool_lock = asyncio.Lock()


async def get_connection_pool(max_workers: int = 10) -> aiohttp.ClientSession:
    """
    Gets or creates a shared aiohttp ClientSession for transfers.

    Only one connection pool is created for the lifetime of the application
    run.

    Args:
        max_workers: Maximum concurrent connections (should match max_concurrency).
    """
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            return _connection_pool

        connector = aiohttp.TCPConnector(
            limit=max_workers * 2,  # Total connections
            limit_per_host=max_workers,
            ttl_dns_cache=600,  # 10 minutes
            keepalive_timeout=30,
            enable_cleanup_closed=True,
            force_close=False,
        )
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90)
        _connection_pool = aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            headers={"Accept-Encoding": "gzip, deflate"},
        )
        log.debug(f"Created transfer pool with limit_per_host={max_workers}")

    return _connection_pool


async def close_connection_pool() -> None:
    """Closes the shared global connection pool."""
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            await _connection_pool.close()
            _connection_pool = None
            log.debug("Shared transfer connection pool closed.")


class FileTransfer(Protocol):
    """Anything that can copy one source into a local file."""

    async def fetch(
        self,
        source: str,
        destination: Path,
        on_progress: ProgressCallback | None = None,
    ) -> int: ...

    async def fetch_bytes(self, source: str) -> bytes: ...


class HttpFileTransfer:
    """Streams HTTP responses to disk in chunks through the shared pool."""

    CHUNK_SIZE = 131072  # 128 KB

    def __init__(self, max_workers: int = 10):
        self.max_workers = max_workers

    async def fetch(
        self,
        source: str,
        destination: Path,
        on_progress: ProgressCallback | None = None,
    ) -> int:
        """
        Downloads `source` into `destination`, overwriting it.

        Returns:
            The number of bytes written.

        Raises:
            aiohttp.ClientError: On connection failures and non-2xx responses.
        """
        session = await get_connection_pool(self.max_workers)
        async with session.get(source, allow_redirects=True) as response:
            response.raise_for_status()
            destination.parent.mkdir(parents=True, exist_ok=True)
            bytes_written = 0
            async with aiofiles.open(destination, "wb") as f:
                async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                    await f.write(chunk)
                    bytes_written += len(chunk)
                    if on_progress:
                        on_progress(bytes_written)
        return bytes_written

    async def fetch_bytes(self, source: str) -> bytes:
        session = await get_connection_pool(self.max_workers)
        async with session.get(source, allow_redirects=True) as response:
            response.raise_for_status()
            return await response.read()


class LocalFileTransfer:
    """Copies files out of the read-only built-in store."""

    CHUNK_SIZE = 1048576  # 1 MB

    async def fetch(
        self,
        source: str,
        destination: Path,
        on_progress: ProgressCallback | None = None,
    ) -> int:
        destination.parent.mkdir(parents=True, exist_ok=True)
        bytes_written = 0
        async with aiofiles.open(source, "rb") as src:
            async with aiofiles.open(destination, "wb") as dst:
                while chunk := await src.read(self.CHUNK_SIZE):
                    await dst.write(chunk)
                    bytes_written += len(chunk)
                    if on_progress:
                        on_progress(bytes_written)
        return bytes_written

    async def fetch_bytes(self, source: str) -> bytes:
        async with aiofiles.open(source, "rb") as f:
            return await f.read()
