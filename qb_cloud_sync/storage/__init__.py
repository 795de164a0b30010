"""
Storage Layer.

This package handles all data persistence: the INI configuration file and
the task database.
"""

from .config_manager import ConfigManager
from .task_store import TaskStore

__all__ = ["ConfigManager", "TaskStore"]
