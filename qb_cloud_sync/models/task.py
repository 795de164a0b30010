"""
Data structures for discovered torrents and the persisted upload tasks built from them.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any, Optional


class TaskStatus(str, Enum):
    """Lifecycle states of a task."""

    PENDING_UPLOAD = "PENDING_UPLOAD"
    UPLOADING = "UPLOADING"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    VERIFYING = "VERIFYING"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    UPLOAD_VERIFIED_SUCCESS = "UPLOAD_VERIFIED_SUCCESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


UPLOAD_STAGE_STATUSES = frozenset(
    {TaskStatus.PENDING_UPLOAD, TaskStatus.UPLOADING, TaskStatus.UPLOAD_FAILED}
)
VERIFICATION_STAGE_STATUSES = frozenset(
    {
        TaskStatus.PENDING_VERIFICATION,
        TaskStatus.VERIFYING,
        TaskStatus.VERIFICATION_FAILED,
    }
)
TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.UPLOAD_VERIFIED_SUCCESS,
        TaskStatus.COMPLETED,
        TaskStatus.SKIPPED,
        TaskStatus.ERROR,
    }
)


def failure_status_for(status: TaskStatus) -> TaskStatus:
    """Maps the status a task was in when an exception escaped to its fallback."""
    if status in UPLOAD_STAGE_STATUSES:
        return TaskStatus.UPLOAD_FAILED
    if status in VERIFICATION_STAGE_STATUSES:
        return TaskStatus.VERIFICATION_FAILED
    return TaskStatus.ERROR


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_unix(value: Any) -> Optional[datetime]:
    # qBittorrent reports -1 or 0 for "never"
    try:
        ts = int(value)
    except (TypeError, ValueError):
        return None
    if ts <= 0:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass(frozen=True)
class TorrentItem:
    """A torrent reported by qBittorrent, reduced to what task creation needs."""

    hash: str
    name: str
    category: str = ""
    tags: str = ""
    save_path: str = ""
    content_path: str = ""
    total_size: int = 0
    progress: float = 0.0
    state: str = ""
    added_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "TorrentItem":
        """Builds an item from a `/api/v2/torrents/info` entry."""
        return cls(
            hash=str(data["hash"]),
            name=str(data.get("name", "")),
            category=data.get("category") or "",
            tags=data.get("tags") or "",
            save_path=data.get("save_path") or "",
            content_path=data.get("content_path") or "",
            total_size=int(data.get("total_size") or data.get("size") or 0),
            progress=float(data.get("progress") or 0.0),
            state=data.get("state") or "",
            added_at=_from_unix(data.get("added_on")),
            completed_at=_from_unix(data.get("completion_on")),
        )

    @property
    def local_path(self) -> str:
        """
        The on-disk location of the torrent's content.

        qBittorrent reports `content_path` as the file itself for single-file
        torrents and as the root folder otherwise. Older versions omit it, in
        which case the content lives at `save_path/name`.
        """
        if self.content_path and self.content_path != self.save_path:
            return str(PurePath(self.content_path))
        return str(PurePath(self.save_path) / self.name)


@dataclass
class Task:
    """One persisted row of the task table."""

    hash: str
    name: str
    local_path: str
    save_path: str
    remote_path: Optional[str]
    added_at: datetime
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    status: TaskStatus = TaskStatus.PENDING_UPLOAD
    upload_attempts: int = 0
    verification_attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
    upload_size: int = 0
    upload_duration_ms: Optional[int] = None

    @classmethod
    def from_item(cls, item: TorrentItem, remote_path: Optional[str]) -> "Task":
        """Creates a fresh PENDING_UPLOAD task for a newly discovered torrent."""
        now = utcnow()
        return cls(
            hash=item.hash,
            name=item.name,
            local_path=item.local_path,
            save_path=item.save_path,
            remote_path=remote_path,
            added_at=item.added_at or now,
            completed_at=item.completed_at,
            created_at=now,
            updated_at=now,
            upload_size=item.total_size,
        )
