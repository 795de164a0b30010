"""
qBittorrent API Layer.

This package handles all communication with the qBittorrent WebUI.
"""

from .auth import QBittorrentAuthenticator
from .client import QBittorrentClient, is_completed

__all__ = ["QBittorrentAuthenticator", "QBittorrentClient", "is_completed"]
