"""Tests for the SQLite task store."""

from __future__ import annotations

import pytest

from qb_cloud_sync.exceptions import StoreError, TaskNotFoundError
from qb_cloud_sync.models.task import TaskStatus
from qb_cloud_sync.storage.task_store import TaskStore

from .conftest import make_task


def _hash(char: str) -> str:
    return char * 40


class TestInsert:
    """Task creation is idempotent per hash."""

    @pytest.mark.asyncio
    async def test_insert_then_read_back(self, store: TaskStore) -> None:
        task = make_task()
        assert await store.insert_task(task) is True

        stored = await store.get_task(task.hash)
        assert stored is not None
        assert stored.name == "Alpha (2020)"
        assert stored.status == TaskStatus.PENDING_UPLOAD
        assert stored.remote_path == "Movies/Alpha (2020)"
        assert stored.local_path == "/downloads/Alpha (2020)"
        assert stored.upload_attempts == 0
        assert stored.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_second_insert_is_ignored(self, store: TaskStore) -> None:
        await store.insert_task(make_task(name="First"))
        assert await store.insert_task(make_task(name="Second")) is False

        stored = await store.get_task(_hash("a"))
        assert stored is not None
        assert stored.name == "First"

    @pytest.mark.asyncio
    async def test_null_remote_path_is_stored(self, store: TaskStore) -> None:
        await store.insert_task(make_task(remote_path=None))
        stored = await store.get_task(_hash("a"))
        assert stored is not None
        assert stored.remote_path is None

    @pytest.mark.asyncio
    async def test_existing_hashes(self, store: TaskStore) -> None:
        await store.insert_task(make_task(hash=_hash("a")))
        await store.insert_task(make_task(hash=_hash("b")))

        existing = await store.get_existing_hashes([_hash("a"), _hash("c"), _hash("b")])
        assert existing == {_hash("a"), _hash("b")}
        assert await store.get_existing_hashes([]) == set()

    @pytest.mark.asyncio
    async def test_missing_task_is_none(self, store: TaskStore) -> None:
        assert await store.get_task(_hash("z")) is None


class TestFindActionable:
    """Selection of tasks that can make progress in a cycle."""

    @pytest.mark.asyncio
    async def test_pending_and_failed_below_ceiling(self, store: TaskStore) -> None:
        await store.insert_task(make_task(hash=_hash("a")))
        await store.insert_task(
            make_task(hash=_hash("b"), status=TaskStatus.UPLOAD_FAILED, upload_attempts=2)
        )
        await store.insert_task(
            make_task(hash=_hash("c"), status=TaskStatus.UPLOAD_FAILED, upload_attempts=3)
        )
        await store.insert_task(
            make_task(hash=_hash("d"), status=TaskStatus.PENDING_VERIFICATION)
        )
        await store.insert_task(
            make_task(
                hash=_hash("e"),
                status=TaskStatus.VERIFICATION_FAILED,
                verification_attempts=1,
            )
        )
        await store.insert_task(
            make_task(
                hash=_hash("f"),
                status=TaskStatus.VERIFICATION_FAILED,
                verification_attempts=2,
            )
        )

        tasks = await store.find_actionable_tasks(
            max_upload_attempts=3, max_verification_attempts=2, limit=10
        )
        assert {t.hash for t in tasks} == {_hash("a"), _hash("b"), _hash("d"), _hash("e")}

    @pytest.mark.asyncio
    async def test_terminal_and_in_progress_are_never_selected(self, store: TaskStore) -> None:
        for char, status in zip(
            "abcdef",
            (
                TaskStatus.UPLOADING,
                TaskStatus.VERIFYING,
                TaskStatus.UPLOAD_VERIFIED_SUCCESS,
                TaskStatus.COMPLETED,
                TaskStatus.SKIPPED,
                TaskStatus.ERROR,
            ),
        ):
            await store.insert_task(make_task(hash=_hash(char), status=status))

        assert (
            await store.find_actionable_tasks(
                max_upload_attempts=5, max_verification_attempts=5, limit=10
            )
            == []
        )

    @pytest.mark.asyncio
    async def test_ordered_by_status_then_creation(self, store: TaskStore) -> None:
        await store.insert_task(make_task(hash=_hash("v"), status=TaskStatus.VERIFICATION_FAILED))
        await store.insert_task(make_task(hash=_hash("u"), status=TaskStatus.UPLOAD_FAILED))
        await store.insert_task(make_task(hash=_hash("p")))
        await store.insert_task(make_task(hash=_hash("q")))
        await store.insert_task(
            make_task(hash=_hash("r"), status=TaskStatus.PENDING_VERIFICATION)
        )

        tasks = await store.find_actionable_tasks(
            max_upload_attempts=5, max_verification_attempts=5, limit=10
        )
        assert [t.hash[0] for t in tasks] == ["p", "q", "r", "u", "v"]

    @pytest.mark.asyncio
    async def test_limit(self, store: TaskStore) -> None:
        for char in "abcd":
            await store.insert_task(make_task(hash=_hash(char)))

        tasks = await store.find_actionable_tasks(
            max_upload_attempts=5, max_verification_attempts=5, limit=2
        )
        assert [t.hash for t in tasks] == [_hash("a"), _hash("b")]


class TestUpdates:
    """Field updates and attempt bookkeeping."""

    @pytest.mark.asyncio
    async def test_begin_attempt_counts_and_sets_status(self, store: TaskStore) -> None:
        await store.insert_task(make_task())

        task = await store.begin_attempt(_hash("a"), TaskStatus.UPLOADING, "upload_attempts")
        assert task.status == TaskStatus.UPLOADING
        assert task.upload_attempts == 1
        assert task.last_attempt_at is not None

        task = await store.begin_attempt(_hash("a"), TaskStatus.UPLOADING, "upload_attempts")
        assert task.upload_attempts == 2
        assert task.verification_attempts == 0

    @pytest.mark.asyncio
    async def test_update_returns_stored_row(self, store: TaskStore) -> None:
        original = make_task()
        await store.insert_task(original)

        task = await store.update_task(
            _hash("a"), status=TaskStatus.UPLOAD_FAILED, error_message="boom"
        )
        assert task.status == TaskStatus.UPLOAD_FAILED
        assert task.error_message == "boom"
        assert task.updated_at >= original.updated_at

    @pytest.mark.asyncio
    async def test_unknown_column_is_rejected(self, store: TaskStore) -> None:
        await store.insert_task(make_task())
        with pytest.raises(ValueError, match="hash"):
            await store.update_task(_hash("a"), hash="other")

    @pytest.mark.asyncio
    async def test_only_attempt_columns_can_be_incremented(self, store: TaskStore) -> None:
        await store.insert_task(make_task())
        with pytest.raises(ValueError):
            await store.update_task(_hash("a"), increment="upload_size")

    @pytest.mark.asyncio
    async def test_update_missing_task(self, store: TaskStore) -> None:
        with pytest.raises(TaskNotFoundError):
            await store.update_task(_hash("z"), status=TaskStatus.ERROR)

    @pytest.mark.asyncio
    async def test_counts_and_listing(self, store: TaskStore) -> None:
        await store.insert_task(make_task(hash=_hash("a")))
        await store.insert_task(make_task(hash=_hash("b")))
        await store.insert_task(make_task(hash=_hash("c"), status=TaskStatus.COMPLETED))

        counts = await store.count_by_status()
        assert counts == {TaskStatus.PENDING_UPLOAD: 2, TaskStatus.COMPLETED: 1}

        completed = await store.list_tasks([TaskStatus.COMPLETED])
        assert [t.hash for t in completed] == [_hash("c")]
        assert len(await store.list_tasks(limit=1)) == 1


class TestOperatorActions:
    """Retry, skip and crash recovery."""

    @pytest.mark.asyncio
    async def test_reset_upload_attempts(self, store: TaskStore) -> None:
        await store.insert_task(
            make_task(status=TaskStatus.UPLOAD_FAILED, upload_attempts=5)
        )
        task = await store.reset_attempts(_hash("a"))
        assert task.upload_attempts == 0
        assert task.status == TaskStatus.UPLOAD_FAILED

    @pytest.mark.asyncio
    async def test_reset_verification_attempts(self, store: TaskStore) -> None:
        await store.insert_task(
            make_task(status=TaskStatus.VERIFICATION_FAILED, verification_attempts=3)
        )
        task = await store.reset_attempts(_hash("a"))
        assert task.verification_attempts == 0

    @pytest.mark.asyncio
    async def test_reset_refuses_non_failed_tasks(self, store: TaskStore) -> None:
        await store.insert_task(make_task(status=TaskStatus.COMPLETED))
        with pytest.raises(ValueError, match="COMPLETED"):
            await store.reset_attempts(_hash("a"))

    @pytest.mark.asyncio
    async def test_reset_missing_task(self, store: TaskStore) -> None:
        with pytest.raises(TaskNotFoundError):
            await store.reset_attempts(_hash("z"))

    @pytest.mark.asyncio
    async def test_skip(self, store: TaskStore) -> None:
        await store.insert_task(make_task(status=TaskStatus.UPLOAD_FAILED))
        task = await store.mark_skipped(_hash("a"), "not wanted")
        assert task.status == TaskStatus.SKIPPED
        assert task.error_message == "not wanted"

    @pytest.mark.asyncio
    async def test_terminal_task_cannot_be_skipped(self, store: TaskStore) -> None:
        await store.insert_task(make_task(status=TaskStatus.COMPLETED))
        with pytest.raises(ValueError):
            await store.mark_skipped(_hash("a"))

        task = await store.get_task(_hash("a"))
        assert task is not None
        assert task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_skip_missing_task(self, store: TaskStore) -> None:
        with pytest.raises(TaskNotFoundError):
            await store.mark_skipped(_hash("z"))

    @pytest.mark.asyncio
    async def test_recover_interrupted(self, store: TaskStore) -> None:
        await store.insert_task(
            make_task(hash=_hash("a"), status=TaskStatus.UPLOADING, upload_attempts=1)
        )
        await store.insert_task(make_task(hash=_hash("b"), status=TaskStatus.VERIFYING))
        await store.insert_task(make_task(hash=_hash("c"), status=TaskStatus.COMPLETED))

        assert await store.recover_interrupted() == 2

        uploading = await store.get_task(_hash("a"))
        verifying = await store.get_task(_hash("b"))
        done = await store.get_task(_hash("c"))
        assert uploading is not None and uploading.status == TaskStatus.UPLOAD_FAILED
        assert uploading.upload_attempts == 1
        assert verifying is not None and verifying.status == TaskStatus.VERIFICATION_FAILED
        assert done is not None and done.status == TaskStatus.COMPLETED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path) -> None:
        path = tmp_path / "nested" / "tasks.sqlite"
        first = TaskStore(path)
        await first.insert_task(make_task())
        await first.close()

        second = TaskStore(path)
        assert await second.get_existing_hashes([_hash("a")]) == {_hash("a")}

    @pytest.mark.asyncio
    async def test_closed_store_refuses_operations(self, store: TaskStore) -> None:
        await store.close()
        with pytest.raises(StoreError, match="closed"):
            await store.get_task(_hash("a"))
        # closing twice is harmless
        await store.close()
