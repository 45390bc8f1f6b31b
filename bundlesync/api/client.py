"""
HTTP implementation of the remote services: URL construction for package files
and the latest-version query, with retry and fallback-host support.
"""

import asyncio
import logging
import time

import aiohttp

from bundlesync.exceptions import RemoteServiceError
from bundlesync.storage.persistent import get_package_version_file_name
from bundlesync.transfer.downloader import get_connection_pool
from bundlesync.utils.path import join_url

log = logging.getLogger(__name__)


def with_time_ticks(url: str) -> str:
    """Appends a millisecond timestamp so caches in between are bypassed."""
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{int(time.time() * 1000)}"


class HttpRemoteServices:
    """
    Remote services backed by a main content server and an optional fallback.

    Attempts alternate between the main and the fallback host.
    """

    def __init__(
        self,
        host_server: str,
        fallback_host_server: str = "",
        max_workers: int = 10,
        base_delay: float = 1.0,
    ):
        self.host_server = host_server.rstrip("/")
        self.fallback_host_server = (fallback_host_server or host_server).rstrip("/")
        self.max_workers = max_workers
        self.base_delay = base_delay

    def get_remote_main_url(self, file_name: str) -> str:
        return join_url(self.host_server, file_name)

    def get_remote_fallback_url(self, file_name: str) -> str:
        return join_url(self.fallback_host_server, file_name)

    async def query_latest_version(
        self,
        package_name: str,
        append_time_ticks: bool,
        timeout: float,
        try_again: int,
    ) -> str:
        """
        Fetches the plain-text version record of a package.

        Args:
            package_name: The package to query.
            append_time_ticks: Whether to add a cache-busting timestamp.
            timeout: Per-attempt timeout in seconds.
            try_again: Extra attempts after the first one.

        Raises:
            RemoteServiceError: When every attempt failed or the record is empty.
        """
        file_name = get_package_version_file_name(package_name)
        last_error = ""
        attempts = max(try_again, 0) + 1
        session = await get_connection_pool(self.max_workers)

        for attempt in range(1, attempts + 1):
            url = (
                self.get_remote_main_url(file_name)
                if attempt % 2 == 1
                else self.get_remote_fallback_url(file_name)
            )
            if append_time_ticks:
                url = with_time_ticks(url)
            try:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=timeout)
                ) as r:
                    r.raise_for_status()
                    version = (await r.text()).strip()
                if not version:
                    raise RemoteServiceError(
                        f"Remote package version file is empty: {url}"
                    )
                log.debug(f"Remote version of '{package_name}' is '{version}'.")
                return version
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"Failed to query package version from {url}: {e!r}"
                log.debug(f"Attempt {attempt}/{attempts}: {last_error}")
                if attempt < attempts:
                    await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        raise RemoteServiceError(last_error)
