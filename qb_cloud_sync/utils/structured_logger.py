"""
Structured event logging for task lifecycle analysis.
Writes one JSON object per line next to the regular console log.
"""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Optional

log = logging.getLogger(__name__)


class StructuredLogger:
    """
    Logger that emits events both to the standard logger and to a JSONL file.

    Usage:
        logger = StructuredLogger("qb_cloud_sync.events", log_dir=Path("logs"))
        logger.info("stage_completed", hash="abc", stage="upload", duration_ms=5120)
    """

    def __init__(self, name: str, log_dir: Optional[Path] = None):
        """
        Args:
            name: Name of the standard logger that mirrors each event.
            log_dir: Directory for JSONL files; None disables the file output.
        """
        self.name = name
        self.log_dir = log_dir
        self._logger = logging.getLogger(name)
        self._json_file: Optional[IO[str]] = None

        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.json_log_path = log_dir / f"qb_cloud_sync_{timestamp}.jsonl"
            self._json_file = open(self.json_log_path, "a", encoding="utf-8")  # noqa: SIM115

        # Added to every JSON entry
        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    @property
    def writes_json(self) -> bool:
        return self._json_file is not None and not self._json_file.closed

    @staticmethod
    def _format_message(event: str, **context: Any) -> str:
        parts = [f"[{event}]"]
        parts.extend(f"{key}={value}" for key, value in context.items())
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context: Any) -> None:
        if not self.writes_json:
            return

        entry = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }
        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except OSError as e:
            log.warning(f"Structured event could not be written: {e}")

    def _emit(self, level: int, event: str, **context: Any) -> None:
        self._logger.log(level, self._format_message(event, **context))
        self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context: Any) -> None:
        self._emit(logging.DEBUG, event, **context)

    def info(self, event: str, **context: Any) -> None:
        self._emit(logging.INFO, event, **context)

    def warning(self, event: str, **context: Any) -> None:
        self._emit(logging.WARNING, event, **context)

    def error(self, event: str, **context: Any) -> None:
        self._emit(logging.ERROR, event, **context)

    def close(self) -> None:
        if self._json_file and not self._json_file.closed:
            self._json_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class TaskEventLogger:
    """Named events for the task lifecycle."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def task_discovered(self, task_hash: str, name: str, remote_path: Optional[str]):
        self.logger.info(
            "task_discovered", hash=task_hash, name=name, remote_path=remote_path
        )

    def stage_started(self, task_hash: str, stage: str, attempt: int):
        self.logger.debug("stage_started", hash=task_hash, stage=stage, attempt=attempt)

    def stage_completed(self, task_hash: str, stage: str, duration_ms: Optional[int] = None):
        self.logger.info(
            "stage_completed", hash=task_hash, stage=stage, duration_ms=duration_ms
        )

    def stage_failed(self, task_hash: str, stage: str, error: Optional[str], attempt: int):
        """Logs a failed stage; the error text is expected to be truncated already."""
        self.logger.error(
            "stage_failed", hash=task_hash, stage=stage, error=error, attempt=attempt
        )

    def tick_completed(self, stats: dict[str, Any]):
        self.logger.info("tick_completed", **stats)

    def close(self) -> None:
        self.logger.close()


def create_event_logger(log_dir: Optional[Path] = None) -> TaskEventLogger:
    """Creates the task event logger; JSON output is enabled when `log_dir` is given."""
    return TaskEventLogger(StructuredLogger("qb_cloud_sync.events", log_dir=log_dir))
