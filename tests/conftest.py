"""Shared fixtures for qb-cloud-sync tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from qb_cloud_sync.models.config import AppConfig
from qb_cloud_sync.models.task import Task, TorrentItem
from qb_cloud_sync.storage.task_store import TaskStore


def make_item(**overrides: Any) -> TorrentItem:
    """Build a completed TorrentItem with sensible defaults."""
    values: dict[str, Any] = {
        "hash": "a" * 40,
        "name": "Alpha (2020)",
        "category": "Movies",
        "tags": "",
        "save_path": "/downloads",
        "content_path": "/downloads/Alpha (2020)",
        "total_size": 1024,
        "progress": 1.0,
        "state": "uploading",
    }
    values.update(overrides)
    return TorrentItem(**values)


def make_task(**overrides: Any) -> Task:
    """Build a fresh PENDING_UPLOAD task, optionally overriding fields."""
    remote_path = overrides.pop("remote_path", "Movies/Alpha (2020)")
    item_fields = {
        key: overrides.pop(key)
        for key in list(overrides)
        if key in TorrentItem.__dataclass_fields__
    }
    task = Task.from_item(make_item(**item_fields), remote_path)
    for key, value in overrides.items():
        setattr(task, key, value)
    return task


def make_config(tmp_path: Path, **sections: Any) -> AppConfig:
    """Build a valid AppConfig; keyword arguments replace whole sections or fields."""
    values: dict[str, Any] = {
        "qbittorrent": {"url": "http://localhost:8080"},
        "rclone": {"remote_name": "remote"},
        "task_processor": {"max_concurrent_uploads": 2},
        "database_path": str(tmp_path / "tasks.sqlite"),
        "config_path": str(tmp_path / "config.ini"),
    }
    values.update(sections)
    return AppConfig(**values)


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    """A task store backed by a fresh database file."""
    return TaskStore(tmp_path / "tasks.sqlite")


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return make_config(tmp_path)
