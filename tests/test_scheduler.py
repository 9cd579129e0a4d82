"""Tests for the task scheduler."""

import asyncio
import time

import pytest

from batch_imagegen.backends import GenerationError
from batch_imagegen.download_queue import DownloadQueue, DownloadSettings
from batch_imagegen.models import (
    BatchTask, ErrorLog, INTERRUPTED_ERROR, ModelFamily, RequestLog, ResponseLog,
    TaskItem, TaskItemSpec, TaskStatus, TaskType,
)
from batch_imagegen.scheduler import ResetScope, TaskScheduler
from batch_imagegen.store import MemoryTaskStore, PersistenceError, StorageQuotaError


PROMPTS = ["p1", "p2", "p3", "p4", "p5"]


def run(coro):
    return asyncio.run(coro)


def test_create_task_is_pending_and_persisted(store, fake_backend, task_config):
    scheduler = TaskScheduler(store, fake_backend())
    task_id = scheduler.create_task("batch", PROMPTS, task_config())

    task = scheduler.get_task(task_id)
    assert task.status == TaskStatus.PENDING
    assert task.total_items == 5
    assert task.progress == 0
    assert task.type == TaskType.TEXT_TO_IMAGE
    assert [item.prompt for item in task.items] == PROMPTS
    assert store.get_task(task_id).total_items == 5


def test_create_task_infers_mixed_type(store, fake_backend, task_config):
    scheduler = TaskScheduler(store, fake_backend())
    items = [
        "text only",
        {"prompt": "edit", "source_images": ["data:image/png;base64,AAAA"]},
        TaskItemSpec(prompt="edit again", source_images=["/tmp/a.png"]),
    ]
    task_id = scheduler.create_task("mixed", items, task_config())
    assert scheduler.get_task(task_id).type == TaskType.MIXED


def test_create_task_rejects_empty_items(store, fake_backend, task_config):
    scheduler = TaskScheduler(store, fake_backend())
    with pytest.raises(ValueError):
        scheduler.create_task("empty", [], task_config())
    assert scheduler.list_tasks() == []


def test_create_task_requires_backend_for_family(store, fake_backend, task_config):
    scheduler = TaskScheduler(store, {ModelFamily.DALLE: fake_backend()})
    with pytest.raises(ValueError):
        scheduler.create_task("gemini", ["p"], task_config(model_family=ModelFamily.GEMINI))


def test_create_task_rolls_back_when_store_is_full(fake_backend, task_config):
    store = MemoryTaskStore(max_tasks=1)
    scheduler = TaskScheduler(store, fake_backend())
    scheduler.create_task("first", ["p"], task_config())

    with pytest.raises(StorageQuotaError):
        scheduler.create_task("second", ["p"], task_config())

    assert [task.name for task in scheduler.list_tasks()] == ["first"]
    assert store.count() == 1


def test_partial_failure_completes_task(store, fake_backend, task_config):
    backend = fake_backend(outcomes={"p3": [GenerationError("content policy", code="400")]})
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("partial", PROMPTS, task_config(concurrent_limit=2))
        scheduler.start_task(task_id)
        return await scheduler.wait_until_settled(task_id, timeout=5)

    task = run(scenario())
    assert task.status == TaskStatus.COMPLETED
    assert task.completed_items == 4
    assert task.failed_items == 1
    assert task.progress == 100
    assert len(task.results) == 4
    failed = [item for item in task.items if item.status == TaskStatus.FAILED]
    assert [item.prompt for item in failed] == ["p3"]
    assert failed[0].error == "content policy"
    assert store.get_task(task.id).status == TaskStatus.COMPLETED


def test_items_start_in_order_with_limit_one(store, fake_backend, task_config):
    backend = fake_backend(delays={"p1": 0.01, "p2": 0.005, "p3": 0.001})
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("serial", ["p1", "p2", "p3"], task_config(concurrent_limit=1))
        started = time.monotonic()
        scheduler.start_task(task_id)
        await scheduler.wait_until_settled(task_id, timeout=5)
        return time.monotonic() - started

    elapsed = run(scenario())
    assert backend.calls == ["p1", "p2", "p3"]
    assert backend.max_in_flight == 1
    assert elapsed >= 0.015


def test_concurrency_limit_is_never_exceeded(store, fake_backend, task_config):
    backend = fake_backend(delay=0.005)
    scheduler = TaskScheduler(store, backend)
    prompts = [f"p{i}" for i in range(12)]

    async def scenario():
        task_id = scheduler.create_task("bounded", prompts, task_config(concurrent_limit=3))
        scheduler.start_task(task_id)
        return await scheduler.wait_until_settled(task_id, timeout=5)

    task = run(scenario())
    assert task.completed_items == 12
    assert backend.max_in_flight == 3


def test_item_retries_until_attempts_are_exhausted(store, fake_backend, task_config):
    backend = fake_backend(outcomes={"only": [GenerationError("boom")] * 10})
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("retry", ["only"], task_config(retry_attempts=2, retry_delay_ms=50))
        started = time.monotonic()
        scheduler.start_task(task_id)
        task = await scheduler.wait_until_settled(task_id, timeout=5)
        return task, time.monotonic() - started

    task, elapsed = run(scenario())
    item = task.items[0]
    assert item.attempt_count == 3
    assert item.status == TaskStatus.FAILED
    assert backend.calls == ["only"] * 3
    assert elapsed >= 0.1
    assert task.status == TaskStatus.FAILED
    assert task.failed_items == 1
    assert sum(1 for log in item.debug_logs if isinstance(log, ErrorLog)) == 3


def test_retry_succeeds_after_transient_error(store, fake_backend, task_config):
    backend = fake_backend(outcomes={"flaky": [GenerationError("503", code="503")]})
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("flaky", ["flaky"], task_config(retry_attempts=1))
        scheduler.start_task(task_id)
        return await scheduler.wait_until_settled(task_id, timeout=5)

    task = run(scenario())
    item = task.items[0]
    assert task.status == TaskStatus.COMPLETED
    assert item.attempt_count == 2
    assert item.error is None
    assert [log.kind for log in item.debug_logs] == ["request", "error", "request", "response"]
    assert isinstance(item.debug_logs[0], RequestLog)
    assert isinstance(item.debug_logs[-1], ResponseLog)


def test_call_timeout_fails_item(store, fake_backend, task_config):
    backend = fake_backend(delay=1.0)
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("slow", ["slow"], task_config(timeout_seconds=0.01))
        scheduler.start_task(task_id)
        return await scheduler.wait_until_settled(task_id, timeout=5)

    task = run(scenario())
    assert task.status == TaskStatus.FAILED
    assert "timed out" in task.items[0].error
    assert task.items[0].debug_logs[-1].code == "timeout"


def test_counters_stay_consistent_in_every_snapshot(store, fake_backend, task_config):
    backend = fake_backend(outcomes={"p2": [GenerationError("x")] * 2, "p4": [GenerationError("y")]})
    scheduler = TaskScheduler(store, backend)
    snapshots = []

    async def scenario():
        task_id = scheduler.create_task("invariants", PROMPTS, task_config(retry_attempts=1))
        scheduler.on_task_update(task_id, snapshots.append)
        scheduler.start_task(task_id)
        return await scheduler.wait_until_settled(task_id, timeout=5)

    task = run(scenario())
    assert snapshots
    for snapshot in snapshots:
        assert snapshot.completed_items + snapshot.failed_items <= snapshot.total_items
        assert 0 <= snapshot.progress <= 100
        assert all(item.attempt_count <= 2 for item in snapshot.items)
    assert task.completed_items == 4
    assert task.failed_items == 1


def test_pause_discards_in_flight_results(store, fake_backend, task_config, settle):
    backend = fake_backend()
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        backend.gates = {"p1": asyncio.Event(), "p2": asyncio.Event()}
        task_id = scheduler.create_task("pausable", PROMPTS, task_config(concurrent_limit=2))
        scheduler.start_task(task_id)
        await settle()

        in_flight = scheduler.get_task(task_id)
        assert [item.status for item in in_flight.items].count(TaskStatus.PROCESSING) == 2

        assert scheduler.pause_task(task_id)
        for gate in backend.gates.values():
            gate.set()
        await settle(20)

        paused = scheduler.get_task(task_id)
        assert paused.status == TaskStatus.PAUSED
        assert paused.completed_items == 0
        assert paused.results == []
        assert all(item.status == TaskStatus.PENDING for item in paused.items)
        assert all(item.attempt_count == 0 for item in paused.items)
        assert backend.calls == ["p1", "p2"]

        assert scheduler.resume_task(task_id)
        return await scheduler.wait_until_settled(task_id, timeout=5)

    task = run(scenario())
    assert task.status == TaskStatus.COMPLETED
    assert task.completed_items == 5
    assert len(task.results) == 5
    assert all(item.attempt_count == 1 for item in task.items)
    assert len(backend.calls) == 7


def test_pause_and_resume_are_no_ops_in_wrong_state(store, fake_backend, task_config):
    scheduler = TaskScheduler(store, fake_backend())
    task_id = scheduler.create_task("idle", ["p"], task_config())
    events = []
    scheduler.on_task_update(task_id, events.append)

    assert not scheduler.pause_task(task_id)
    assert not scheduler.resume_task(task_id)
    assert not scheduler.stop_task(task_id)
    assert not scheduler.start_task("missing")
    assert events == []
    assert scheduler.get_task(task_id).status == TaskStatus.PENDING


def test_stop_cancels_unfinished_items(store, fake_backend, task_config, settle):
    backend = fake_backend()
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        backend.gates = {"p1": asyncio.Event()}
        task_id = scheduler.create_task("stoppable", ["p1", "p2", "p3"], task_config(concurrent_limit=1))
        scheduler.start_task(task_id)
        await settle()
        assert scheduler.stop_task(task_id)
        backend.gates["p1"].set()
        await settle(20)
        return scheduler.get_task(task_id)

    task = run(scenario())
    assert task.status == TaskStatus.CANCELLED
    assert task.completed_at is not None
    assert all(item.status == TaskStatus.CANCELLED for item in task.items)
    assert task.results == []
    assert store.get_task(task.id).status == TaskStatus.CANCELLED


def test_retry_failed_items_keeps_successes(store, fake_backend, task_config):
    backend = fake_backend(outcomes={"p3": [GenerationError("nope")]})
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("retry-failed", PROMPTS, task_config())
        scheduler.start_task(task_id)
        await scheduler.wait_until_settled(task_id, timeout=5)
        assert scheduler.retry_failed_items(task_id) == 1
        return await scheduler.wait_until_settled(task_id, timeout=5)

    task = run(scenario())
    assert task.status == TaskStatus.COMPLETED
    assert task.completed_items == 5
    assert task.failed_items == 0
    assert len(task.results) == 5
    assert backend.calls.count("p1") == 1
    assert backend.calls.count("p3") == 2
    assert all(item.attempt_count == 1 for item in task.items)


def test_retry_failed_items_without_failures_is_a_no_op(store, fake_backend, task_config):
    scheduler = TaskScheduler(store, fake_backend())
    events = []

    async def scenario():
        task_id = scheduler.create_task("clean", ["p1", "p2"], task_config())
        scheduler.start_task(task_id)
        await scheduler.wait_until_settled(task_id, timeout=5)
        before = scheduler.get_task(task_id)
        scheduler.on_task_update(task_id, events.append)
        assert scheduler.retry_failed_items(task_id) == 0
        return before, scheduler.get_task(task_id)

    before, after = run(scenario())
    assert events == []
    assert after == before


def test_retry_task_regenerates_everything(store, fake_backend, task_config):
    backend = fake_backend()
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("again", ["p1", "p2"], task_config())
        scheduler.start_task(task_id)
        first = await scheduler.wait_until_settled(task_id, timeout=5)
        assert scheduler.retry_task(task_id) == 2
        second = await scheduler.wait_until_settled(task_id, timeout=5)
        return first, second

    first, second = run(scenario())
    assert second.status == TaskStatus.COMPLETED
    assert len(second.results) == 2
    assert {r.id for r in first.results}.isdisjoint({r.id for r in second.results})
    assert len(backend.calls) == 4


def test_retry_single_item_replaces_its_result(store, fake_backend, task_config):
    backend = fake_backend()
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("one", ["p1", "p2"], task_config())
        scheduler.start_task(task_id)
        first = await scheduler.wait_until_settled(task_id, timeout=5)
        item_id = first.items[0].id
        assert scheduler.retry_task_item(task_id, item_id) == 1
        second = await scheduler.wait_until_settled(task_id, timeout=5)
        return first, second, item_id

    first, second, item_id = run(scenario())
    assert len(second.results) == 2
    old = next(r for r in first.results if r.task_item_id == item_id)
    new = next(r for r in second.results if r.task_item_id == item_id)
    assert old.id != new.id
    assert backend.calls == ["p1", "p2", "p1"]


def test_reset_unknown_item_changes_nothing(store, fake_backend, task_config):
    scheduler = TaskScheduler(store, fake_backend())
    task_id = scheduler.create_task("x", ["p"], task_config())
    assert scheduler.reset(task_id, ResetScope.ITEM, "missing") == 0
    with pytest.raises(ValueError):
        scheduler.reset(task_id, ResetScope.ITEM)


def test_reset_of_paused_task_stays_paused(store, fake_backend, task_config, settle):
    backend = fake_backend()
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        backend.gates = {"p1": asyncio.Event()}
        task_id = scheduler.create_task("paused", ["p1", "p2"], task_config(concurrent_limit=1))
        scheduler.start_task(task_id)
        await settle()
        scheduler.pause_task(task_id)
        assert scheduler.retry_task(task_id) == 2
        backend.gates["p1"].set()
        await settle(20)
        return scheduler.get_task(task_id)

    task = run(scenario())
    assert task.status == TaskStatus.PAUSED
    assert all(item.status == TaskStatus.PENDING for item in task.items)
    assert backend.calls == ["p1"]


def test_interrupted_work_is_marked_failed_on_load(task_config):
    store = MemoryTaskStore()
    task = BatchTask(
        name="crashed",
        status=TaskStatus.PROCESSING,
        config=task_config(),
        items=[
            TaskItem(prompt="done", status=TaskStatus.COMPLETED, attempt_count=1),
            TaskItem(prompt="running", status=TaskStatus.PROCESSING, attempt_count=1),
            TaskItem(prompt="waiting"),
        ],
    )
    task.recount()
    store.upsert_task(task)

    scheduler = TaskScheduler(store, {})
    loaded = scheduler.get_task(task.id)

    assert loaded.status == TaskStatus.FAILED
    assert loaded.error == INTERRUPTED_ERROR
    assert [item.status for item in loaded.items] == [
        TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING,
    ]
    assert loaded.items[1].error == INTERRUPTED_ERROR
    assert loaded.failed_items == 1
    assert store.get_task(task.id).status == TaskStatus.FAILED


def test_delete_task_removes_everything(store, fake_backend, task_config, bus):
    scheduler = TaskScheduler(store, fake_backend(), bus=bus)
    task_id = scheduler.create_task("gone", ["p"], task_config())
    scheduler.on_task_update(task_id, lambda task: None)

    assert scheduler.delete_task(task_id)
    assert scheduler.get_task(task_id) is None
    assert store.get_task(task_id) is None
    assert bus.listener_count(task_id) == 0
    assert not scheduler.delete_task(task_id)


def test_stats_and_cleanup(store, fake_backend, task_config):
    scheduler = TaskScheduler(store, fake_backend())

    async def scenario():
        ids = [scheduler.create_task(f"t{i}", ["p"], task_config()) for i in range(3)]
        for task_id in ids[:2]:
            scheduler.start_task(task_id)
            await scheduler.wait_until_settled(task_id, timeout=5)
        return ids

    ids = run(scenario())
    stats = scheduler.stats()
    assert stats["total_tasks"] == 3
    assert stats["completed_tasks"] == 2
    assert stats["active_tasks"] == 0

    assert scheduler.cleanup_old_tasks(max_tasks_to_keep=1) == 2
    assert [task.id for task in scheduler.list_tasks()] == [ids[2]]
    assert store.count() == 1


def test_auto_download_records_local_path(store, fake_backend, fake_saver, task_config):
    saver = fake_saver()
    queue = DownloadQueue(saver, store, settings=DownloadSettings(organize_by_date=False))
    scheduler = TaskScheduler(store, fake_backend(), download_queue=queue)

    async def scenario():
        task_id = scheduler.create_task("saved", ["p1", "p2"], task_config(auto_download=True))
        scheduler.start_task(task_id)
        await scheduler.wait_until_settled(task_id, timeout=5)
        await queue.join()
        return task_id

    task_id = run(scenario())
    stored = store.get_task(task_id)
    assert len(stored.results) == 2
    assert all(result.downloaded for result in stored.results)
    assert all(result.local_path.startswith("/saved/saved/") for result in stored.results)

    in_memory = scheduler.get_task(task_id)
    assert all(result.downloaded for result in in_memory.results)
    assert sorted(saver.saved) == sorted(result.local_path for result in stored.results)


class FlakyStore(MemoryTaskStore):
    """Memory store whose writes start failing once ``failing`` is set."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def upsert_task(self, task):
        if self.failing:
            raise PersistenceError("disk unavailable")
        super().upsert_task(task)


def test_store_failure_during_run_is_recorded_on_task(fake_backend, task_config):
    store = FlakyStore()
    backend = fake_backend(outcomes={"p2": [GenerationError("rejected")]})
    scheduler = TaskScheduler(store, backend)

    async def scenario():
        task_id = scheduler.create_task("unsaved", ["p1", "p2", "p3"], task_config())
        store.failing = True
        scheduler.start_task(task_id)
        return await scheduler.wait_until_settled(task_id, timeout=5)

    task = run(scenario())
    assert task.status == TaskStatus.COMPLETED
    assert (task.completed_items, task.failed_items) == (2, 1)
    assert task.progress == 100
    assert task.error.startswith("Failed to save task state")
    assert store.get_task(task.id).status == TaskStatus.PENDING
