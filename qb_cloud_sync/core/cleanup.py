"""
Post-verification steps: forget the torrent, free the disk, tell someone.
"""

import logging
from pathlib import Path
from typing import Optional, Protocol

from qb_cloud_sync.models.config import BehaviorSettings
from qb_cloud_sync.models.task import Task
from qb_cloud_sync.notify.mailer import Mailer
from qb_cloud_sync.transfer.file_manager import LocalFileManager

log = logging.getLogger(__name__)


class TorrentRemover(Protocol):
    async def delete_torrent(self, torrent_hash: str, delete_files: bool = False) -> None: ...


class CleanupHandler:
    """
    Runs the steps that follow a verified upload, in order.

    Deletion errors propagate to the caller; a failed notification does not.
    """

    def __init__(
        self,
        behavior: BehaviorSettings,
        source: TorrentRemover,
        files: Optional[LocalFileManager] = None,
        mailer: Optional[Mailer] = None,
    ):
        self.behavior = behavior
        self.source = source
        self.files = files or LocalFileManager()
        self.mailer = mailer

    async def run(self, task: Task, remote_destination: str) -> None:
        if self.behavior.delete_qb_task:
            # Content is removed below, by us, once qBittorrent no longer holds it
            await self.source.delete_torrent(task.hash, delete_files=False)
            log.info(f"Removed '{task.name}' from qBittorrent")

        if self.behavior.delete_local_files:
            await self.files.delete_path(task.local_path)
            if self.behavior.cleanup_empty_dirs:
                await self.files.prune_empty_dirs(
                    str(Path(task.local_path).parent), task.save_path
                )

        if self.mailer is not None:
            await self.mailer.send_completion(task, remote_destination)
