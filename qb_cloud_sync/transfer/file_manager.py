"""
Removes local torrent content once its remote copy has been verified.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path

from qb_cloud_sync.utils.path import is_strictly_within

log = logging.getLogger(__name__)


class LocalFileManager:
    """Blocking filesystem operations, run in worker threads."""

    @staticmethod
    def _delete_sync(path: Path) -> bool:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        else:
            return False
        return True

    async def delete_path(self, local_path: str) -> bool:
        """
        Deletes a file or a directory tree.

        Returns:
            True if something was deleted, False if the path was already gone.

        Raises:
            OSError: If the content exists but cannot be removed.
        """
        deleted = await asyncio.to_thread(self._delete_sync, Path(local_path))
        if deleted:
            log.info(f"Deleted local content '{local_path}'")
        else:
            log.warning(f"[yellow]Local content '{local_path}' was already gone.[/yellow]")
        return deleted

    @staticmethod
    def _prune_sync(start: Path, stop_at: Path) -> list[Path]:
        removed: list[Path] = []
        current = start
        while is_strictly_within(current, stop_at):
            if not current.is_dir():
                current = current.parent
                continue
            with os.scandir(current) as entries:
                if next(entries, None) is not None:
                    break
            current.rmdir()
            removed.append(current)
            current = current.parent
        return removed

    async def prune_empty_dirs(self, start: str, stop_at: str) -> list[Path]:
        """
        Removes `start` and its ancestors while they are empty.

        Walking stops at the first non-empty directory, and never removes
        `stop_at` itself or anything outside of it.
        """
        if not stop_at:
            return []
        removed = await asyncio.to_thread(self._prune_sync, Path(start), Path(stop_at))
        for directory in removed:
            log.debug(f"Removed empty directory '{directory}'")
        return removed
