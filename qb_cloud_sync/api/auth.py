"""
Handles authentication with the qBittorrent WebUI, including the SID session cookie.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

import aiohttp

from qb_cloud_sync.exceptions import AuthenticationError, SourceUnavailableError

if TYPE_CHECKING:
    from .client import QBittorrentClient

log = logging.getLogger(__name__)

LOGIN_PATH = "auth/login"
VERSION_PATH = "app/version"


class QBittorrentAuthenticator:
    """
    Manages the login flow for the qBittorrent client.

    The session cookie lives in the client's cookie jar; this class only knows
    whether it believes a valid session exists and how to get a new one.
    """

    MAX_LOGIN_ATTEMPTS = 3

    def __init__(self, api_client: "QBittorrentClient", retry_delay: float = 5.0):
        """
        Initializes the authenticator.

        Args:
            api_client: A reference to the main QBittorrentClient instance.
            retry_delay: Seconds to wait between login attempts after a
                transport error.
        """
        self._api_client = api_client
        self._retry_delay = retry_delay
        self._authenticated = False
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        """Forgets the current session so the next request logs in again."""
        self._authenticated = False
        self._api_client.clear_session_cookie()

    async def ensure_authenticated(self) -> None:
        """Logs in once; concurrent callers wait for the same login."""
        if self._authenticated:
            return
        async with self._lock:
            if not self._authenticated:
                await self.login()

    async def login(self) -> None:
        """
        Establishes a WebUI session.

        Without credentials the WebUI is expected to whitelist this host, so
        the version endpoint is probed instead of logging in.

        Raises:
            AuthenticationError: If the credentials are rejected or the IP is banned.
            SourceUnavailableError: If the WebUI is unreachable after retries.
        """
        settings = self._api_client.settings
        last_error: Exception | None = None

        for attempt in range(1, self.MAX_LOGIN_ATTEMPTS + 1):
            try:
                if settings.has_credentials:
                    await self._login_with_credentials()
                else:
                    await self._probe_without_credentials()
                self._authenticated = True
                return
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                last_error = e
                log.warning(
                    f"qBittorrent login attempt {attempt}/{self.MAX_LOGIN_ATTEMPTS}"
                    f" failed: {e or type(e).__name__}"
                )
                if attempt < self.MAX_LOGIN_ATTEMPTS:
                    await asyncio.sleep(self._retry_delay)

        raise SourceUnavailableError(
            f"Could not log in to qBittorrent after {self.MAX_LOGIN_ATTEMPTS}"
            f" attempts: {last_error}"
        )

    async def _login_with_credentials(self) -> None:
        settings = self._api_client.settings
        log.info(f"Logging in to qBittorrent at {settings.url} as {settings.username}")

        status, body = await self._api_client.raw_request(
            "POST",
            LOGIN_PATH,
            data={"username": settings.username, "password": settings.password},
            # the WebUI checks Referer/Origin against its own host for CSRF protection
            headers={"Referer": settings.url, "Origin": settings.url},
        )

        if status == 403:
            raise AuthenticationError(
                "qBittorrent refused the login (403). The IP may be banned after"
                " too many failed attempts."
            )
        if status != 200:
            raise AuthenticationError(f"qBittorrent login failed with HTTP {status}.")
        if body.strip() == "Fails.":
            raise AuthenticationError("qBittorrent login failed: invalid username or password.")
        if body.strip() != "Ok.":
            raise AuthenticationError(f"Unexpected qBittorrent login response: {body[:100]!r}")
        if not self._api_client.has_session_cookie():
            raise AuthenticationError("qBittorrent login response did not set a SID cookie.")

        log.info("[green]✓ Logged in to qBittorrent.[/green]")

    async def _probe_without_credentials(self) -> None:
        status, body = await self._api_client.raw_request("GET", VERSION_PATH)
        if status == 403:
            raise AuthenticationError(
                "qBittorrent requires authentication but no username/password is configured."
            )
        if status != 200:
            raise AuthenticationError(f"qBittorrent version probe failed with HTTP {status}.")
        log.info(f"Connected to qBittorrent {body.strip()} without authentication.")
