"""
Async client for the qBittorrent WebUI API (v2) with transparent re-authentication.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from qb_cloud_sync.exceptions import AuthenticationError, SourceUnavailableError
from qb_cloud_sync.models.config import QBittorrentSettings
from qb_cloud_sync.models.task import TorrentItem

from .auth import QBittorrentAuthenticator

log = logging.getLogger(__name__)

# Torrents in these states are never handed over, even at 100% progress
EXCLUDED_STATES = frozenset({"error", "missingfiles", "moving"})
EXCLUDED_STATE_FRAGMENTS = ("downloading", "checkingdl")


def is_completed(item: TorrentItem) -> bool:
    """True when a torrent is fully downloaded and no longer being written to."""
    state = item.state.lower()
    if item.progress < 1.0 or state in EXCLUDED_STATES:
        return False
    return not any(fragment in state for fragment in EXCLUDED_STATE_FRAGMENTS)


class QBittorrentClient:
    """
    Client for the parts of the qBittorrent WebUI this application needs.

    Features:
    - One pooled aiohttp session with a cookie jar holding the SID cookie
    - One transparent re-login and replay when a request is rejected with 403
    - One immediate retry on transport errors
    """

    API_PREFIX = "/api/v2/"
    TRANSPORT_RETRIES = 1

    def __init__(self, settings: QBittorrentSettings, login_retry_delay: float = 5.0):
        """
        Initializes the API client.

        Args:
            settings: Validated qBittorrent connection settings.
            login_retry_delay: Seconds between login attempts on transport errors.
        """
        self.settings = settings
        self._session: Optional[aiohttp.ClientSession] = None
        self._authenticator = QBittorrentAuthenticator(self, retry_delay=login_retry_delay)

    @property
    def authenticator(self) -> QBittorrentAuthenticator:
        """Provides access to the authentication helper."""
        return self._authenticator

    async def _initialize_session(self) -> aiohttp.ClientSession:
        """Ensures an active aiohttp session is available."""
        if self._session is None or self._session.closed:
            connector_options: Dict[str, Any] = {"limit": 10, "ttl_dns_cache": 300}
            if not self.settings.verify_ssl:
                connector_options["ssl"] = False
            connector = aiohttp.TCPConnector(**connector_options)
            self._session = aiohttp.ClientSession(
                connector=connector,
                # unsafe=True keeps cookies for hosts given as bare IP addresses
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout),
            )
        return self._session

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def has_session_cookie(self) -> bool:
        if self._session is None:
            return False
        return any("SID" in cookie.key for cookie in self._session.cookie_jar)

    def clear_session_cookie(self) -> None:
        if self._session is not None:
            self._session.cookie_jar.clear()

    def _url(self, path: str) -> str:
        return self.settings.url + self.API_PREFIX + path

    async def raw_request(
        self, method: str, path: str, **kwargs: Any
    ) -> Tuple[int, str]:
        """Sends one unauthenticated request and returns the status and body text."""
        session = await self._initialize_session()
        log.debug(f"qBittorrent request: {method} {path}")
        async with session.request(method, self._url(path), **kwargs) as r:
            return r.status, await r.text()

    async def api_call(self, method: str, path: str, **kwargs: Any) -> str:
        """
        Makes an authenticated API call.

        Raises:
            AuthenticationError: If a request is still rejected after re-login.
            SourceUnavailableError: On persistent transport errors or HTTP errors.
        """
        transport_retries_left = self.TRANSPORT_RETRIES
        reauthenticated = False

        while True:
            await self._authenticator.ensure_authenticated()
            try:
                status, body = await self.raw_request(method, path, **kwargs)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if transport_retries_left > 0:
                    transport_retries_left -= 1
                    log.debug(f"qBittorrent request {path} failed ({e!r}); retrying.")
                    continue
                raise SourceUnavailableError(
                    f"qBittorrent request {method} {path} failed: {e or type(e).__name__}"
                ) from e

            if status == 403:
                if reauthenticated:
                    raise AuthenticationError(
                        f"qBittorrent rejected {path} again after logging in anew."
                    )
                log.warning(
                    "[yellow]qBittorrent returned 403; the session may have expired."
                    " Logging in again...[/yellow]"
                )
                reauthenticated = True
                self._authenticator.invalidate()
                continue

            if status >= 400:
                raise SourceUnavailableError(
                    f"qBittorrent request {method} {path} failed with HTTP {status}:"
                    f" {body[:200]}"
                )
            return body

    # Public API Methods
    async def get_api_version(self) -> str:
        return (await self.api_call("GET", "app/webapiVersion")).strip()

    async def get_torrents(self, filter_name: str = "all") -> List[Dict[str, Any]]:
        body = await self.api_call("GET", "torrents/info", params={"filter": filter_name})
        try:
            torrents = json.loads(body)
        except json.JSONDecodeError as e:
            raise SourceUnavailableError(f"qBittorrent returned invalid JSON: {e}") from e
        if not isinstance(torrents, list):
            raise SourceUnavailableError("qBittorrent torrent list is not a JSON array.")
        return torrents

    async def list_completed_items(self) -> List[TorrentItem]:
        """Returns every torrent that is fully downloaded and idle or seeding."""
        torrents = await self.get_torrents("all")
        items = []
        for raw in torrents:
            try:
                items.append(TorrentItem.from_api(raw))
            except (KeyError, TypeError, ValueError) as e:
                log.warning(f"Ignoring malformed torrent entry from qBittorrent: {e}")
        completed = [item for item in items if is_completed(item)]
        log.debug(
            f"qBittorrent reports {len(torrents)} torrent(s), {len(completed)} completed."
        )
        return completed

    async def delete_torrent(self, torrent_hash: str, delete_files: bool = False) -> None:
        """Removes a torrent from qBittorrent, optionally with its data."""
        await self.api_call(
            "POST",
            "torrents/delete",
            data={
                "hashes": torrent_hash,
                "deleteFiles": "true" if delete_files else "false",
            },
        )
