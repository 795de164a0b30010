"""Tests for the qBittorrent WebUI client against a local aiohttp server."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import pytest
from aiohttp import web
from aiohttp import test_utils

from qb_cloud_sync.api.client import QBittorrentClient, is_completed
from qb_cloud_sync.exceptions import AuthenticationError, SourceUnavailableError
from qb_cloud_sync.models.config import QBittorrentSettings

from .conftest import make_item


def _torrent(hash_char: str, **overrides: Any) -> dict[str, Any]:
    entry = {
        "hash": hash_char * 40,
        "name": f"Torrent {hash_char}",
        "category": "Movies",
        "tags": "hdr, remux",
        "save_path": "/downloads",
        "content_path": f"/downloads/Torrent {hash_char}",
        "total_size": 2048,
        "progress": 1.0,
        "state": "stalledUP",
        "added_on": 1700000000,
        "completion_on": 1700003600,
    }
    entry.update(overrides)
    return entry


class FakeWebUI:
    """A tiny stand-in for the qBittorrent WebUI API."""

    def __init__(self) -> None:
        self.password = "secret"
        self.torrents: list[dict[str, Any]] = []
        self.valid_sids: set[str] = set()
        self.logins = 0
        self.deleted: list[dict[str, str]] = []
        self.info_status: int | None = None

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/v2/auth/login", self.login)
        app.router.add_get("/api/v2/app/version", self.guarded(self.version))
        app.router.add_get("/api/v2/app/webapiVersion", self.guarded(self.webapi_version))
        app.router.add_get("/api/v2/torrents/info", self.guarded(self.info))
        app.router.add_post("/api/v2/torrents/delete", self.guarded(self.delete))
        return app

    async def login(self, request: web.Request) -> web.Response:
        data = await request.post()
        if data.get("password") != self.password:
            return web.Response(text="Fails.")
        self.logins += 1
        sid = f"sid-{self.logins}"
        self.valid_sids.add(sid)
        response = web.Response(text="Ok.")
        response.set_cookie("SID", sid)
        return response

    def guarded(self, handler):
        async def wrapper(request: web.Request) -> web.StreamResponse:
            if request.cookies.get("SID") not in self.valid_sids:
                return web.Response(status=403, text="Forbidden")
            return await handler(request)

        return wrapper

    async def version(self, request: web.Request) -> web.Response:
        return web.Response(text="v4.6.2")

    async def webapi_version(self, request: web.Request) -> web.Response:
        return web.Response(text="2.9.3\n")

    async def info(self, request: web.Request) -> web.Response:
        if self.info_status is not None:
            return web.Response(status=self.info_status, text="Internal error")
        return web.json_response(self.torrents)

    async def delete(self, request: web.Request) -> web.Response:
        self.deleted.append(dict(await request.post()))
        return web.Response(text="")


@asynccontextmanager
async def running(
    webui: FakeWebUI, password: str = "secret"
) -> AsyncIterator[QBittorrentClient]:
    server = test_utils.TestServer(webui.app())
    await server.start_server()
    settings = QBittorrentSettings(
        url=str(server.make_url("/")), username="admin", password=password
    )
    client = QBittorrentClient(settings, login_retry_delay=0)
    try:
        yield client
    finally:
        await client.close()
        await server.close()


class TestAuthentication:
    """Login, session reuse and re-authentication."""

    @pytest.mark.asyncio
    async def test_logs_in_once_and_reuses_the_session(self) -> None:
        webui = FakeWebUI()
        async with running(webui) as client:
            assert await client.get_api_version() == "2.9.3"
            await client.get_torrents()

        assert webui.logins == 1

    @pytest.mark.asyncio
    async def test_expired_session_triggers_one_relogin(self) -> None:
        webui = FakeWebUI()
        async with running(webui) as client:
            await client.get_api_version()
            webui.valid_sids.clear()

            assert await client.get_api_version() == "2.9.3"

        assert webui.logins == 2

    @pytest.mark.asyncio
    async def test_wrong_password(self) -> None:
        webui = FakeWebUI()
        async with running(webui, password="wrong") as client:
            with pytest.raises(AuthenticationError, match="invalid username or password"):
                await client.get_api_version()

    @pytest.mark.asyncio
    async def test_unreachable_webui(self) -> None:
        settings = QBittorrentSettings(
            url="http://127.0.0.1:9", username="admin", password="x", request_timeout=2
        )
        client = QBittorrentClient(settings, login_retry_delay=0)
        try:
            with pytest.raises(SourceUnavailableError):
                await client.get_api_version()
        finally:
            await client.close()


class TestTorrentListing:
    """Completed-item filtering over the torrents/info endpoint."""

    @pytest.mark.asyncio
    async def test_only_completed_torrents_are_listed(self) -> None:
        webui = FakeWebUI()
        webui.torrents = [
            _torrent("a"),
            _torrent("b", progress=0.5, state="downloading"),
            _torrent("c", state="missingFiles"),
            _torrent("d", state="pausedUP"),
            _torrent("e", state="checkingDL"),
        ]
        async with running(webui) as client:
            items = await client.list_completed_items()

        assert [item.hash[0] for item in items] == ["a", "d"]
        first = items[0]
        assert first.name == "Torrent a"
        assert first.tags == "hdr, remux"
        assert first.local_path == "/downloads/Torrent a"
        assert first.completed_at is not None

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self) -> None:
        webui = FakeWebUI()
        webui.torrents = [{"name": "no hash"}, _torrent("a")]
        async with running(webui) as client:
            items = await client.list_completed_items()
        assert len(items) == 1

    @pytest.mark.asyncio
    async def test_http_error_is_source_unavailable(self) -> None:
        webui = FakeWebUI()
        webui.info_status = 500
        async with running(webui) as client:
            with pytest.raises(SourceUnavailableError, match="HTTP 500"):
                await client.list_completed_items()

    @pytest.mark.asyncio
    async def test_delete_keeps_files(self) -> None:
        webui = FakeWebUI()
        async with running(webui) as client:
            await client.delete_torrent("a" * 40)

        assert webui.deleted == [{"hashes": "a" * 40, "deleteFiles": "false"}]


class TestIsCompleted:
    def test_seeding_torrent(self) -> None:
        assert is_completed(make_item(progress=1.0, state="uploading"))

    def test_partial_progress(self) -> None:
        assert not is_completed(make_item(progress=0.99, state="stalledUP"))

    def test_moving_torrent(self) -> None:
        assert not is_completed(make_item(state="moving"))

    def test_still_downloading_state(self) -> None:
        assert not is_completed(make_item(progress=1.0, state="downloading"))
