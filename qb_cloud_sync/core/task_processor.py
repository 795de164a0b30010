"""
The driver: discovers completed torrents, records tasks and moves them through
upload, verification and cleanup.
"""

import asyncio
import logging
from typing import List, Optional, Protocol, Sequence

from qb_cloud_sync.exceptions import QbCloudSyncError
from qb_cloud_sync.models.config import AppConfig
from qb_cloud_sync.models.stats import TickStats
from qb_cloud_sync.models.task import Task, TaskStatus, TorrentItem, failure_status_for
from qb_cloud_sync.storage.task_store import TaskStore
from qb_cloud_sync.transfer.rclone import UploadResult, VerificationResult
from qb_cloud_sync.utils.formatting import format_duration, truncate
from qb_cloud_sync.utils.structured_logger import TaskEventLogger

from .cleanup import CleanupHandler
from .resolver import resolve_remote_path

log = logging.getLogger(__name__)

UPLOADABLE = (TaskStatus.PENDING_UPLOAD, TaskStatus.UPLOAD_FAILED)
VERIFIABLE = (TaskStatus.PENDING_VERIFICATION, TaskStatus.VERIFICATION_FAILED)
MISSING_REMOTE_PATH = "No remote path was resolved for this task."


class CompletedItemSource(Protocol):
    async def list_completed_items(self) -> List[TorrentItem]: ...


class Transfer(Protocol):
    def remote_destination(self, remote_path: str) -> str: ...

    async def upload(self, local_path: str, remote_path: str) -> UploadResult: ...

    async def verify(self, local_path: str, remote_path: str) -> VerificationResult: ...


class TaskProcessor:
    """
    Runs processing cycles ("ticks"), either once or on a fixed schedule.

    A tick fetches the completed torrents, creates a task for every unseen
    hash, then dispatches the actionable tasks concurrently. Each task's
    failures are recorded on the task itself and never affect its siblings.
    """

    def __init__(
        self,
        config: AppConfig,
        source: CompletedItemSource,
        store: TaskStore,
        uploader: Transfer,
        cleanup: Optional[CleanupHandler] = None,
        events: Optional[TaskEventLogger] = None,
    ):
        """
        Args:
            config: Validated application configuration, shared read-only.
            source: Provides the list of completed torrents.
            store: Persistent task table.
            uploader: Upload and verification primitives.
            cleanup: Post-verification steps; without it verified tasks stay
                in UPLOAD_VERIFIED_SUCCESS.
            events: Optional structured event log.
        """
        self.config = config
        self.settings = config.task_processor
        self.source = source
        self.store = store
        self.uploader = uploader
        self.cleanup = cleanup
        self.events = events
        self.last_stats: Optional[TickStats] = None
        self._tick_running = False
        self._stop_event = asyncio.Event()

    @property
    def is_running_tick(self) -> bool:
        return self._tick_running

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Stops scheduling new ticks; a tick in progress runs to completion."""
        if not self._stop_event.is_set():
            log.info("Stop requested; no further processing cycles will be scheduled.")
            self._stop_event.set()

    async def recover_interrupted_tasks(self) -> int:
        """Re-queues tasks a previous run left mid-attempt; call before the first tick."""
        recovered = await self.store.recover_interrupted()
        if recovered:
            log.warning(
                f"[yellow]{recovered} task(s) were interrupted by a previous shutdown"
                " and will be retried.[/yellow]"
            )
        return recovered

    # --- scheduling ---

    async def run_forever(self) -> None:
        """
        Runs a tick immediately, then one per poll interval until `stop()`.

        Ticks start on a fixed grid. When a tick overruns one or more slots,
        those slots are dropped rather than run back to back.
        """
        loop = asyncio.get_running_loop()
        interval = self.settings.poll_interval_s
        next_run = loop.time()
        log.info(f"Processing torrents every {format_duration(interval)}.")

        while not self._stop_event.is_set():
            await self._run_tick_safely()

            next_run += interval
            now = loop.time()
            if next_run <= now:
                missed = int((now - next_run) // interval) + 1
                log.warning(
                    f"[yellow]Processing cycle overran the poll interval;"
                    f" skipping {missed} scheduled run(s).[/yellow]"
                )
                next_run += missed * interval

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=max(0.0, next_run - loop.time())
                )
            except asyncio.TimeoutError:
                pass

        log.info("Processing loop stopped.")

    async def _run_tick_safely(self) -> Optional[TickStats]:
        try:
            return await self.process_tasks()
        except Exception:
            log.exception("Unexpected error during processing cycle")
            return None

    # --- one tick ---

    async def process_tasks(self) -> Optional[TickStats]:
        """
        Runs one processing cycle.

        Returns:
            The cycle's counters, or None if a cycle was already in progress.
        """
        if self._tick_running:
            log.warning("[yellow]Previous processing cycle still running; skipping.[/yellow]")
            return None

        self._tick_running = True
        stats = TickStats()
        try:
            await self._run_tick(stats)
        finally:
            self._tick_running = False
            stats.finish()
            self.last_stats = stats
            self._log_tick(stats)
        return stats

    async def _run_tick(self, stats: TickStats) -> None:
        try:
            items = await self.source.list_completed_items()
        except QbCloudSyncError as e:
            log.error(f"[red]✗ Could not fetch completed torrents: {e}[/red]")
            stats.aborted = True
            return
        stats.items_seen = len(items)

        try:
            await self._sync_items(items, stats)
            tasks = await self.store.find_actionable_tasks(
                max_upload_attempts=self.settings.max_upload_attempts,
                max_verification_attempts=self.settings.max_verification_attempts,
                limit=self.settings.max_concurrent_uploads,
            )
        except QbCloudSyncError as e:
            log.error(f"[red]✗ Task database unavailable, aborting cycle: {e}[/red]")
            stats.aborted = True
            return

        stats.tasks_dispatched = len(tasks)
        if tasks:
            await self._dispatch(tasks, stats)

    async def _sync_items(self, items: Sequence[TorrentItem], stats: TickStats) -> None:
        """Creates a PENDING_UPLOAD task for every hash not yet stored."""
        known = await self.store.get_existing_hashes(item.hash for item in items)

        for item in items:
            if item.hash in known:
                continue
            known.add(item.hash)
            try:
                remote_path = resolve_remote_path(item, self.config.archiving_rules)
                created = await self.store.insert_task(Task.from_item(item, remote_path))
            except Exception as e:
                log.error(f"[red]✗ Could not record task for '{item.name}': {e}[/red]")
                continue

            if created:
                stats.tasks_created += 1
                log.info(f"New completed torrent '{item.name}' -> '{remote_path}'")
                if self.events:
                    self.events.task_discovered(item.hash, item.name, remote_path)

    async def _dispatch(self, tasks: Sequence[Task], stats: TickStats) -> None:
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_uploads)

        async def bounded(task: Task) -> Task:
            async with semaphore:
                return await self.handle_task(task, stats)

        results = await asyncio.gather(
            *(bounded(task) for task in tasks), return_exceptions=True
        )
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                log.error(f"[red]✗ Task '{task.name}' ended with an unhandled error: {result!r}[/red]")

    # --- per task ---

    async def handle_task(self, task: Task, stats: Optional[TickStats] = None) -> Task:
        """
        Advances one task as far as it can go in this cycle.

        A successful upload continues into verification, and a successful
        verification into cleanup. A failed stage stops here and waits for a
        later cycle. Exceptions are recorded on the task, never raised.
        """
        stats = stats if stats is not None else TickStats()
        current = task
        try:
            if current.status in UPLOADABLE:
                current = await self._upload(current, stats)
            if current.status in VERIFIABLE:
                current = await self._verify(current, stats)
            if current.status == TaskStatus.UPLOAD_VERIFIED_SUCCESS and self.cleanup:
                current = await self._finish(current, stats)
        except Exception as e:
            return await self._record_crash(task, e, stats)
        return current

    async def _upload(self, task: Task, stats: TickStats) -> Task:
        # remote_path is a nullable column; a row without one can never be uploaded
        if task.remote_path is None:
            return await self._mark_unrecoverable(task, stats)

        task = await self.store.begin_attempt(
            task.hash, TaskStatus.UPLOADING, "upload_attempts"
        )
        attempt = task.upload_attempts
        log.info(
            f"Uploading '{task.name}' (attempt {attempt}/{self.settings.max_upload_attempts})"
        )
        if self.events:
            self.events.stage_started(task.hash, "upload", attempt)

        result = await self.uploader.upload(task.local_path, task.remote_path)

        if result.success:
            stats.uploads_succeeded += 1
            if self.events:
                self.events.stage_completed(task.hash, "upload", result.duration_ms)
            return await self.store.update_task(
                task.hash,
                status=TaskStatus.PENDING_VERIFICATION,
                error_message=None,
                verification_attempts=0,
                upload_duration_ms=result.duration_ms,
            )

        message = truncate(result.message or "Upload failed without a message.")
        stats.uploads_failed += 1
        log.warning(
            f"[yellow]Upload of '{task.name}' failed on attempt {attempt}/"
            f"{self.settings.max_upload_attempts}.[/yellow]"
        )
        if self.events:
            self.events.stage_failed(task.hash, "upload", message, attempt)
        return await self.store.update_task(
            task.hash, status=TaskStatus.UPLOAD_FAILED, error_message=message
        )

    async def _verify(self, task: Task, stats: TickStats) -> Task:
        if task.remote_path is None:
            return await self._mark_unrecoverable(task, stats)

        task = await self.store.begin_attempt(
            task.hash, TaskStatus.VERIFYING, "verification_attempts"
        )
        attempt = task.verification_attempts
        log.info(
            f"Verifying '{task.name}' (attempt {attempt}/"
            f"{self.settings.max_verification_attempts})"
        )
        if self.events:
            self.events.stage_started(task.hash, "verification", attempt)

        result = await self.uploader.verify(task.local_path, task.remote_path)

        if result.verified:
            stats.verifications_succeeded += 1
            if self.events:
                self.events.stage_completed(task.hash, "verification", result.duration_ms)
            return await self.store.update_task(
                task.hash, status=TaskStatus.UPLOAD_VERIFIED_SUCCESS, error_message=None
            )

        message = truncate(result.message or "Verification failed without a message.")
        stats.verifications_failed += 1
        log.warning(
            f"[yellow]Verification of '{task.name}' failed on attempt {attempt}/"
            f"{self.settings.max_verification_attempts}.[/yellow]"
        )
        if self.events:
            self.events.stage_failed(task.hash, "verification", message, attempt)
        return await self.store.update_task(
            task.hash, status=TaskStatus.VERIFICATION_FAILED, error_message=message
        )

    async def _finish(self, task: Task, stats: TickStats) -> Task:
        if self.events:
            self.events.stage_started(task.hash, "cleanup", 1)
        await self.cleanup.run(task, self.uploader.remote_destination(task.remote_path))
        task = await self.store.update_task(
            task.hash, status=TaskStatus.COMPLETED, error_message=None
        )
        stats.tasks_completed += 1
        log.info(f"[green]✓ '{task.name}' archived and cleaned up.[/green]")
        if self.events:
            self.events.stage_completed(task.hash, "cleanup")
        return task

    async def _mark_unrecoverable(self, task: Task, stats: TickStats) -> Task:
        stats.tasks_errored += 1
        log.error(f"[red]✗ '{task.name}' has no remote path; marking it as ERROR.[/red]")
        if self.events:
            self.events.stage_failed(task.hash, "resolve", MISSING_REMOTE_PATH, 0)
        return await self.store.update_task(
            task.hash, status=TaskStatus.ERROR, error_message=MISSING_REMOTE_PATH
        )

    async def _record_crash(self, task: Task, error: Exception, stats: TickStats) -> Task:
        """Moves a task whose stage raised into the failure status of that stage."""
        message = truncate(f"{type(error).__name__}: {error}")
        log.error(f"[red]✗ Error while processing '{task.name}': {message}[/red]")
        try:
            latest = await self.store.get_task(task.hash) or task
            fallback = failure_status_for(latest.status)
            updated = await self.store.update_task(
                task.hash, status=fallback, error_message=message
            )
        except QbCloudSyncError as e:
            log.error(f"[red]✗ Could not record the failure of '{task.name}': {e}[/red]")
            return task

        if fallback == TaskStatus.UPLOAD_FAILED:
            stats.uploads_failed += 1
        elif fallback == TaskStatus.VERIFICATION_FAILED:
            stats.verifications_failed += 1
        else:
            stats.tasks_errored += 1
        if self.events:
            self.events.stage_failed(task.hash, fallback.value, message, 0)
        return updated

    def _log_tick(self, stats: TickStats) -> None:
        summary = (
            f"Cycle finished in {stats.duration_s:.1f}s: {stats.items_seen} completed,"
            f" {stats.tasks_created} new, {stats.tasks_dispatched} dispatched,"
            f" {stats.tasks_completed} archived"
        )
        if stats.aborted:
            log.warning(f"[yellow]{summary} (aborted)[/yellow]")
        else:
            log.info(summary)
        if self.events:
            self.events.tick_completed(stats.as_dict())
