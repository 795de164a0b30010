"""
Data Models Layer.

This package contains the data structures used throughout the application:
configuration, archiving rules, tasks and per-cycle statistics.
"""

from .config import AppConfig
from .rules import ArchivingRule, ConditionalRule, DefaultRule, parse_rules
from .stats import TickStats
from .task import Task, TaskStatus, TorrentItem

__all__ = [
    "AppConfig",
    "ArchivingRule",
    "ConditionalRule",
    "DefaultRule",
    "Task",
    "TaskStatus",
    "TickStats",
    "TorrentItem",
    "parse_rules",
]
