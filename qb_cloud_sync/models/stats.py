"""
Dataclass for tracking what a single processing cycle did.
"""

import time
from dataclasses import dataclass, field


@dataclass
class TickStats:
    """Counters for one processing cycle (tick)."""

    items_seen: int = 0
    tasks_created: int = 0
    tasks_dispatched: int = 0
    uploads_succeeded: int = 0
    uploads_failed: int = 0
    verifications_succeeded: int = 0
    verifications_failed: int = 0
    tasks_completed: int = 0
    tasks_errored: int = 0
    aborted: bool = False
    started_at: float = field(default_factory=time.monotonic, repr=False)
    duration_s: float = 0.0

    def finish(self) -> "TickStats":
        self.duration_s = time.monotonic() - self.started_at
        return self

    def as_dict(self) -> dict[str, int | float | bool]:
        return {
            "items_seen": self.items_seen,
            "tasks_created": self.tasks_created,
            "tasks_dispatched": self.tasks_dispatched,
            "uploads_succeeded": self.uploads_succeeded,
            "uploads_failed": self.uploads_failed,
            "verifications_succeeded": self.verifications_succeeded,
            "verifications_failed": self.verifications_failed,
            "tasks_completed": self.tasks_completed,
            "tasks_errored": self.tasks_errored,
            "aborted": self.aborted,
            "duration_s": round(self.duration_s, 2),
        }
