"""
Core Business Logic Layer.

This package contains the rule resolver and the task processor that drives
every torrent from discovery to a verified, cleaned-up remote copy.
"""

from .cleanup import CleanupHandler
from .resolver import resolve_remote_path
from .task_processor import TaskProcessor

__all__ = ["CleanupHandler", "TaskProcessor", "resolve_remote_path"]
