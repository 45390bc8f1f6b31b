"""Tests for the HTTP transfer and remote services against a local server."""

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from bundlesync.api.client import HttpRemoteServices, with_time_ticks
from bundlesync.core.package import HostPlayModeParameters, ResourcePackage
from bundlesync.exceptions import RemoteServiceError
from bundlesync.storage.persistent import get_package_version_file_name
from bundlesync.transfer.downloader import (
    HttpFileTransfer,
    close_connection_pool,
    get_connection_pool,
)

VERSION_FILE = get_package_version_file_name("Demo")


class ContentServer:
    """Serves `/<host>/<file>` from memory; `broken` hosts answer 500."""

    def __init__(self, files: dict[str, bytes]):
        self.files = dict(files)
        self.broken: set[str] = set()
        self.hits: list[str] = []
        self.server: TestServer | None = None

    def url(self, host: str) -> str:
        return str(self.server.make_url(f"/{host}"))

    async def handle(self, request: web.Request) -> web.Response:
        self.hits.append(request.path_qs)
        if request.match_info["host"] in self.broken:
            return web.Response(status=500, text="unavailable")
        data = self.files.get(request.match_info["name"])
        if data is None:
            return web.Response(status=404, text="not found")
        return web.Response(body=data)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/{host}/{name}", self.handle)
        return app


@pytest_asyncio.fixture
async def content_server(demo_builder):
    content = ContentServer({**demo_builder.server_files(), VERSION_FILE: b"1.2.0\n"})
    async with TestServer(content.make_app()) as server:
        content.server = server
        yield content
    await close_connection_pool()


class TestHttpFileTransfer:
    @pytest.mark.asyncio
    async def test_fetch_streams_to_disk(self, content_server, demo_builder, tmp_path):
        name, data = next(iter(demo_builder.bundle_files().items()))
        progress = []
        destination = tmp_path / "nested" / "bundle"

        written = await HttpFileTransfer().fetch(
            f"{content_server.url('main')}/{name}", destination, progress.append
        )

        assert written == len(data)
        assert destination.read_bytes() == data
        assert progress[-1] == len(data)

    @pytest.mark.asyncio
    async def test_fetch_raises_on_http_error(self, content_server, tmp_path):
        with pytest.raises(aiohttp.ClientResponseError) as excinfo:
            await HttpFileTransfer().fetch(
                f"{content_server.url('main')}/missing.bundle", tmp_path / "x"
            )
        assert excinfo.value.status == 404

    @pytest.mark.asyncio
    async def test_fetch_bytes(self, content_server):
        data = await HttpFileTransfer().fetch_bytes(f"{content_server.url('main')}/{VERSION_FILE}")
        assert data == b"1.2.0\n"

    @pytest.mark.asyncio
    async def test_connection_pool_is_shared(self, content_server):
        first = await get_connection_pool()
        assert await get_connection_pool() is first
        await close_connection_pool()
        assert first.closed


class TestHttpRemoteServices:
    def test_urls(self):
        remote = HttpRemoteServices("http://cdn.example.com/demo/", "")
        assert remote.get_remote_main_url("a.bundle") == "http://cdn.example.com/demo/a.bundle"
        assert remote.get_remote_fallback_url("a.bundle") == "http://cdn.example.com/demo/a.bundle"

    def test_time_ticks(self):
        assert with_time_ticks("http://h/v").startswith("http://h/v?")
        assert with_time_ticks("http://h/v?a=1").startswith("http://h/v?a=1&")

    @pytest.mark.asyncio
    async def test_query_latest_version(self, content_server):
        remote = HttpRemoteServices(content_server.url("main"), base_delay=0)
        version = await remote.query_latest_version("Demo", False, 5, 0)
        assert version == "1.2.0"
        assert content_server.hits == [f"/main/{VERSION_FILE}"]

    @pytest.mark.asyncio
    async def test_time_ticks_bypass_caches(self, content_server):
        remote = HttpRemoteServices(content_server.url("main"), base_delay=0)
        await remote.query_latest_version("Demo", True, 5, 0)
        assert content_server.hits[0].startswith(f"/main/{VERSION_FILE}?")

    @pytest.mark.asyncio
    async def test_retry_moves_to_fallback(self, content_server):
        content_server.broken.add("main")
        remote = HttpRemoteServices(
            content_server.url("main"), content_server.url("backup"), base_delay=0
        )
        version = await remote.query_latest_version("Demo", False, 5, 1)
        assert version == "1.2.0"
        assert content_server.hits == [f"/main/{VERSION_FILE}", f"/backup/{VERSION_FILE}"]

    @pytest.mark.asyncio
    async def test_every_attempt_failing(self, content_server):
        content_server.broken.update({"main", "backup"})
        remote = HttpRemoteServices(
            content_server.url("main"), content_server.url("backup"), base_delay=0
        )
        with pytest.raises(RemoteServiceError, match="Failed to query package version"):
            await remote.query_latest_version("Demo", False, 5, 2)
        assert len(content_server.hits) == 3

    @pytest.mark.asyncio
    async def test_empty_version_file(self, content_server):
        content_server.files[VERSION_FILE] = b"  \n"
        remote = HttpRemoteServices(content_server.url("main"), base_delay=0)
        with pytest.raises(RemoteServiceError, match="empty"):
            await remote.query_latest_version("Demo", False, 5, 0)


class TestHostPackageOverHttp:
    @pytest.mark.asyncio
    async def test_update_and_download(self, content_server, tmp_path):
        content_server.broken.add("main")
        package = ResourcePackage("Demo")
        params = HostPlayModeParameters(
            buildin_root=tmp_path / "buildin",
            sandbox_root=tmp_path / "sandbox",
            remote_services=HttpRemoteServices(
                content_server.url("main"), content_server.url("backup"), base_delay=0
            ),
            transfer=HttpFileTransfer(),
        )
        init = package.initialize_async(params)
        await package.system.wait(init)
        assert init.succeeded, init.error

        version = package.update_package_version_async(False, 5)
        await package.system.wait(version)
        assert version.package_version == "1.2.0"

        update = package.update_package_manifest_async(version.package_version)
        await package.system.wait(update)
        assert update.succeeded, update.error

        downloader = package.create_resource_downloader(max_retry=1, timeout=5)
        await package.system.wait(downloader.begin_download())
        assert downloader.succeeded, downloader.error
        assert downloader.current_download_count == 3
        # Every file failed on the main host once, then came from the fallback.
        assert any(hit.startswith("/backup/") for hit in content_server.hits)
