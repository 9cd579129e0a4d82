"""Task scheduler that runs batch generation tasks with bounded concurrency."""

import asyncio
import time
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from loguru import logger

from .backends import GenerationBackend, GenerationError
from .download_queue import DownloadContext, DownloadQueue, describe
from .events import NotificationBus, Unsubscribe
from .executor import BoundedExecutor
from .models import (
    BatchTask, BatchTaskConfig, DownloadJob, DownloadStatus, ErrorLog, GenerationRequest,
    GenerationResponse, INTERRUPTED_ERROR, ModelFamily, RequestLog, ResponseLog, TaskItem,
    TaskItemSpec, TaskResult, TaskStatus, TaskType, utcnow,
)
from .store import PersistenceError, TaskStore


ItemInput = Union[TaskItemSpec, Mapping, str]

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
SETTLED_STATUSES = TERMINAL_STATUSES | {TaskStatus.PAUSED}


class ResetScope(str, Enum):
    """Which items a reset puts back to pending."""
    ALL = "all"
    FAILED = "failed"
    ITEM = "item"


class TaskScheduler:
    """Owns batch tasks and drives their items through the generation backends.

    All state changes happen on the event loop thread between awaits, so
    no locking is needed. The only awaited calls are the backend calls and
    the retry delays. Each task carries an epoch that pause, stop and full
    resets increment; a backend result is applied only if it was dispatched
    in the current epoch, otherwise it is discarded.

    Pause and stop release the executor slots of in-flight calls without
    waiting for the network requests to return. Right after a resume the
    number of outstanding backend requests can therefore exceed
    ``concurrent_limit`` by the number of abandoned calls; the limit bounds
    calls whose results can still be applied.
    """

    def __init__(self, store: TaskStore,
                 backends: Union[GenerationBackend, Mapping[ModelFamily, GenerationBackend]], *,
                 bus: Optional[NotificationBus] = None,
                 download_queue: Optional[DownloadQueue] = None):
        """Initialize scheduler and load persisted tasks."""
        self.store = store
        self.download_queue = download_queue
        self.bus = bus or (download_queue.bus if download_queue is not None else NotificationBus())

        if isinstance(backends, GenerationBackend):
            self._default_backend: Optional[GenerationBackend] = backends
            self._backends: Dict[ModelFamily, GenerationBackend] = {}
        else:
            self._default_backend = None
            self._backends = dict(backends)

        self._tasks: Dict[str, BatchTask] = {}
        self._task_backends: Dict[str, GenerationBackend] = {}
        self._executors: Dict[str, BoundedExecutor] = {}
        self._epochs: Dict[str, int] = {}
        self._retry_timers: Dict[str, Dict[str, asyncio.Task]] = {}
        self._settled: Dict[str, asyncio.Event] = {}

        self._download_unsubscribe: Optional[Unsubscribe] = None
        if download_queue is not None:
            self._download_unsubscribe = download_queue.on_job_update(self._on_download_update)

        self._load_tasks()

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def create_task(self, name: str, items: Iterable[ItemInput], config: BatchTaskConfig,
                    task_type: Optional[TaskType] = None) -> str:
        """Create a pending task and persist it.

        Raises ``ValueError`` for an empty item list or an unsupported model
        family. If the store rejects the task it is dropped again and the
        store's error propagates.
        """
        specs = [self._coerce_item(item) for item in items]
        if not specs:
            raise ValueError("A batch task needs at least one item")
        backend = self._select_backend(config.model_family)

        task = BatchTask(
            name=name,
            type=task_type or self._infer_type(specs),
            config=config,
            items=[
                TaskItem(
                    prompt=spec.prompt,
                    source_images=list(spec.source_images),
                    mask=spec.mask,
                    priority=spec.priority,
                )
                for spec in specs
            ],
        )
        task.recount()

        self._tasks[task.id] = task
        try:
            self.store.upsert_task(task)
        except Exception as e:
            del self._tasks[task.id]
            logger.error(f"Failed to save new task {name}: {e}")
            raise

        self._task_backends[task.id] = backend
        self._epochs[task.id] = 0
        logger.info(f"Created task {task.id} ({name}) with {task.total_items} items")
        self._emit(task)
        return task.id

    def start_task(self, task_id: str) -> bool:
        """Start a pending task; must be called from a running event loop."""
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        asyncio.get_running_loop()
        self._ensure_backend(task)

        task.status = TaskStatus.PROCESSING
        task.started_at = utcnow()
        task.completed_at = None
        task.error = None
        self._settled_event(task_id).clear()
        logger.info(f"Starting task {task.name} ({task.total_items} items, "
                    f"concurrency {task.config.concurrent_limit})")
        self._persist(task)
        self._emit(task)
        self._pump(task_id)
        return True

    def pause_task(self, task_id: str) -> bool:
        """Pause a processing task; in-flight calls are abandoned and their items requeued."""
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PROCESSING:
            return False

        self._epochs[task_id] += 1
        waiting = self._cancel_retry_timers(task_id)
        for item in task.items:
            if item.status == TaskStatus.PROCESSING:
                item.status = TaskStatus.PENDING
                # The abandoned attempt never resolved
                item.attempt_count = max(0, item.attempt_count - 1)
            elif item.status == TaskStatus.FAILED and item.id in waiting:
                item.status = TaskStatus.PENDING
        abandoned = self._abandon_in_flight(task_id)

        task.status = TaskStatus.PAUSED
        task.recount()
        logger.info(f"Paused task {task.name}, abandoned {abandoned} in-flight calls")
        self._persist(task)
        self._emit(task)
        self._settled_event(task_id).set()
        return True

    def resume_task(self, task_id: str) -> bool:
        """Resume a paused task; must be called from a running event loop."""
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PAUSED:
            return False
        asyncio.get_running_loop()

        task.status = TaskStatus.PROCESSING
        task.recount()
        self._settled_event(task_id).clear()
        logger.info(f"Resuming task {task.name} at {task.progress}%")
        self._persist(task)
        self._emit(task)
        self._pump(task_id)
        return True

    def stop_task(self, task_id: str) -> bool:
        """Cancel a processing or paused task; unfinished items become cancelled."""
        task = self._tasks.get(task_id)
        if task is None or task.status not in (TaskStatus.PROCESSING, TaskStatus.PAUSED):
            return False

        self._epochs[task_id] += 1
        waiting = self._cancel_retry_timers(task_id)
        self._abandon_in_flight(task_id)
        for item in task.items:
            if item.status in (TaskStatus.PENDING, TaskStatus.PROCESSING) or item.id in waiting:
                item.status = TaskStatus.CANCELLED

        task.status = TaskStatus.CANCELLED
        task.completed_at = utcnow()
        task.recount()
        logger.info(f"Stopped task {task.name} ({task.completed_items}/{task.total_items} completed)")
        self._persist(task)
        self._emit(task)
        self._settled_event(task_id).set()
        return True

    def reset(self, task_id: str, scope: ResetScope = ResetScope.ALL, item_id: Optional[str] = None) -> int:
        """Put items back to pending and run them again.

        ``ALL`` resets every item and clears the results, ``FAILED`` only
        failed items and ``ITEM`` the single ``item_id``. A processing task
        picks the items up immediately, a paused one on resume, and a
        finished task restarts when an event loop is running. Returns the
        number of reset items; zero means nothing changed.
        """
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning(f"Cannot reset unknown task {task_id}")
            return 0
        if scope == ResetScope.ITEM and item_id is None:
            raise ValueError("item_id is required to reset a single item")

        if scope == ResetScope.ALL:
            targets = list(task.items)
        elif scope == ResetScope.FAILED:
            targets = [item for item in task.items if item.status == TaskStatus.FAILED]
        else:
            item = task.get_item(item_id)
            if item is None:
                logger.warning(f"Task {task.name} has no item {item_id}")
                targets = []
            elif item.status == TaskStatus.PROCESSING:
                logger.warning(f"Item {item_id} is still processing, not resetting it")
                targets = []
            else:
                targets = [item]

        if not targets:
            return 0

        target_ids = {item.id for item in targets}
        if scope == ResetScope.ALL:
            self._epochs[task_id] += 1
            self._cancel_retry_timers(task_id)
            self._abandon_in_flight(task_id)
            task.results = []
            task.started_at = None
        else:
            timers = self._retry_timers.get(task_id, {})
            for target_id in target_ids & set(timers):
                timers.pop(target_id).cancel()
            task.results = [r for r in task.results if r.task_item_id not in target_ids]

        for item in targets:
            item.status = TaskStatus.PENDING
            item.attempt_count = 0
            item.error = None
            item.processed_at = None

        task.error = None
        task.recount()
        logger.info(f"Reset {len(targets)} items of task {task.name} ({scope.value})")

        if task.status == TaskStatus.PROCESSING:
            self._persist(task)
            self._emit(task)
            self._pump(task_id)
        elif task.status == TaskStatus.PAUSED:
            self._persist(task)
            self._emit(task)
        else:
            task.status = TaskStatus.PENDING
            task.completed_at = None
            self._persist(task)
            self._emit(task)
            if self._has_running_loop():
                self.start_task(task_id)
        return len(targets)

    def retry_task(self, task_id: str) -> int:
        """Run every item of the task again from scratch."""
        return self.reset(task_id, ResetScope.ALL)

    def retry_failed_items(self, task_id: str) -> int:
        """Run only the failed items again; successes are kept."""
        return self.reset(task_id, ResetScope.FAILED)

    def retry_task_item(self, task_id: str, item_id: str) -> int:
        """Run one item again."""
        return self.reset(task_id, ResetScope.ITEM, item_id)

    def delete_task(self, task_id: str) -> bool:
        """Stop the task if active and remove it from memory and the store."""
        task = self._tasks.get(task_id)
        if task is None:
            return False
        if task.status in (TaskStatus.PROCESSING, TaskStatus.PAUSED):
            self.stop_task(task_id)

        self.store.delete_task(task_id)

        del self._tasks[task_id]
        self._cancel_retry_timers(task_id)
        self._task_backends.pop(task_id, None)
        self._epochs.pop(task_id, None)
        self._executors.pop(task_id, None)
        event = self._settled.pop(task_id, None)
        if event is not None:
            event.set()
        self.bus.clear(task_id)
        logger.info(f"Deleted task {task.name} ({task_id})")
        return True

    # ------------------------------------------------------------------
    # Queries and observers
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[BatchTask]:
        """Snapshot of one task."""
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def list_tasks(self) -> List[BatchTask]:
        """Snapshots of every task, newest first."""
        tasks = sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True)
        return [task.model_copy(deep=True) for task in tasks]

    def active_tasks(self) -> List[BatchTask]:
        """Snapshots of the tasks currently processing."""
        return [t.model_copy(deep=True) for t in self._tasks.values() if t.status == TaskStatus.PROCESSING]

    def stats(self) -> Dict[str, int]:
        """Task counts by state."""
        tasks = list(self._tasks.values())
        return {
            "total_tasks": len(tasks),
            "active_tasks": sum(1 for t in tasks if t.status == TaskStatus.PROCESSING),
            "paused_tasks": sum(1 for t in tasks if t.status == TaskStatus.PAUSED),
            "completed_tasks": sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
            "failed_tasks": sum(1 for t in tasks if t.status == TaskStatus.FAILED),
        }

    def cleanup_old_tasks(self, max_tasks_to_keep: int = 100) -> int:
        """Delete the oldest inactive tasks beyond ``max_tasks_to_keep``."""
        tasks = sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True)
        removed = 0
        for task in tasks[max(0, max_tasks_to_keep):]:
            if task.status in (TaskStatus.PROCESSING, TaskStatus.PAUSED):
                continue
            if self.delete_task(task.id):
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old tasks")
        return removed

    def on_task_update(self, task_id: str, listener: Callable[[BatchTask], None]) -> Unsubscribe:
        """Subscribe to snapshots of a task after every change."""
        return self.bus.subscribe(task_id, listener)

    async def wait_until_settled(self, task_id: str, timeout: Optional[float] = None) -> BatchTask:
        """Wait until the task is finished, cancelled or paused and return its snapshot."""
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        if task.status not in SETTLED_STATUSES:
            await asyncio.wait_for(self._settled_event(task_id).wait(), timeout)
        snapshot = self.get_task(task_id)
        if snapshot is None:
            raise KeyError(task_id)
        return snapshot

    async def shutdown(self) -> None:
        """Cancel retry timers and in-flight calls; unfinished items stay processing."""
        for task_id in list(self._retry_timers):
            self._cancel_retry_timers(task_id)
        executors = list(self._executors.values())
        for executor in executors:
            executor.cancel_all()
        await asyncio.gather(*(executor.join() for executor in executors))
        if self._download_unsubscribe is not None:
            self._download_unsubscribe()
            self._download_unsubscribe = None

    # ------------------------------------------------------------------
    # Scheduling loop
    # ------------------------------------------------------------------

    def _pump(self, task_id: str) -> None:
        """Fill free slots with eligible items, or finish the task when nothing is left."""
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PROCESSING:
            return

        waiting = self._retry_timers.get(task_id, {})
        processing = sum(1 for item in task.items if item.status == TaskStatus.PROCESSING)
        eligible = [item for item in task.items if self._is_eligible(task, item, waiting)]

        if not eligible:
            if processing == 0 and not waiting:
                self._finalize(task)
            return

        executor = self._executor_for(task)
        free = min(task.config.concurrent_limit - processing, executor.free_slots())
        if free <= 0:
            return

        epoch = self._epochs[task_id]
        for item in eligible[:free]:
            item.status = TaskStatus.PROCESSING
            item.attempt_count += 1
            item.processed_at = utcnow()
            logger.debug(f"Dispatching item {item.id} (attempt {item.attempt_count}/{task.config.max_attempts})")
            executor.submit(item.id, self._execute_item(task_id, item.id, epoch))

        self._persist(task)
        self._emit(task)

    def _is_eligible(self, task: BatchTask, item: TaskItem, waiting: Mapping[str, asyncio.Task]) -> bool:
        if item.status == TaskStatus.PENDING:
            return True
        return (item.status == TaskStatus.FAILED
                and item.attempt_count < task.config.max_attempts
                and item.id not in waiting)

    async def _execute_item(self, task_id: str, item_id: str, epoch: int) -> None:
        task = self._tasks.get(task_id)
        item = task.get_item(item_id) if task else None
        if task is None or item is None:
            return

        backend = self._task_backends[task_id]
        request = self._build_request(task.config, item)
        item.add_log(RequestLog(task_item_id=item.id, request=request))

        started = time.monotonic()
        try:
            response = await self._call_backend(backend, request)
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._resolve_failure(task_id, item_id, epoch, e, duration_ms)
        else:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._resolve_success(task_id, item_id, epoch, response, duration_ms)

    async def _call_backend(self, backend: GenerationBackend, request: GenerationRequest) -> GenerationResponse:
        if request.timeout_seconds is None:
            return await backend.generate(request)
        try:
            return await asyncio.wait_for(backend.generate(request), request.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise GenerationError(f"Generation timed out after {request.timeout_seconds}s", code="timeout") from e

    def _current(self, task_id: str, item_id: str, epoch: int):
        """Task and item if a resolution dispatched in ``epoch`` may still be applied."""
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning(f"Discarding result for unknown task {task_id}")
            return None
        item = task.get_item(item_id)
        if item is None:
            logger.warning(f"Discarding result for unknown item {item_id} of task {task_id}")
            return None
        if (task.status != TaskStatus.PROCESSING or self._epochs.get(task_id) != epoch
                or item.status != TaskStatus.PROCESSING):
            logger.debug(f"Discarding stale result for item {item_id} of task {task.name}")
            return None
        return task, item

    def _resolve_success(self, task_id: str, item_id: str, epoch: int,
                         response: GenerationResponse, duration_ms: int) -> None:
        current = self._current(task_id, item_id, epoch)
        if current is None:
            return
        task, item = current

        item.add_log(ResponseLog(task_item_id=item.id, image_ref=describe(response.image_ref),
                                 duration_ms=duration_ms))
        result = TaskResult(task_item_id=item.id, image_ref=response.image_ref, duration_ms=duration_ms)
        task.results = [r for r in task.results if r.task_item_id != item.id]
        task.results.append(result)
        item.status = TaskStatus.COMPLETED
        item.error = None
        task.recount()
        logger.info(f"Item {item.id} of task {task.name} completed in {duration_ms}ms "
                    f"({task.completed_items}/{task.total_items})")

        self._persist(task)
        self._emit(task)

        if task.config.auto_download and self.download_queue is not None:
            self.download_queue.enqueue(result, DownloadContext(task_id=task.id, task_name=task.name))

    def _resolve_failure(self, task_id: str, item_id: str, epoch: int,
                         error: Exception, duration_ms: int) -> None:
        current = self._current(task_id, item_id, epoch)
        if current is None:
            logger.debug(f"Ignored error from abandoned call for item {item_id}: {error}")
            return
        task, item = current

        message = getattr(error, "message", None) or str(error) or type(error).__name__
        code = getattr(error, "code", None)
        item.add_log(ErrorLog(task_item_id=item.id, message=message,
                              code=str(code) if code is not None else None, duration_ms=duration_ms))
        item.status = TaskStatus.FAILED
        item.error = message
        task.recount()

        if item.attempt_count < task.config.max_attempts:
            delay = task.config.retry_delay_ms / 1000
            logger.warning(f"Item {item.id} of task {task.name} failed "
                           f"(attempt {item.attempt_count}/{task.config.max_attempts}), "
                           f"retrying in {delay:.2f}s: {message}")
            self._schedule_retry(task, item, delay)
        else:
            logger.error(f"Item {item.id} of task {task.name} permanently failed "
                         f"after {item.attempt_count} attempts: {message}")

        self._persist(task)
        self._emit(task)

    def _schedule_retry(self, task: BatchTask, item: TaskItem, delay: float) -> None:
        timers = self._retry_timers.setdefault(task.id, {})
        timers[item.id] = asyncio.get_running_loop().create_task(
            self._retry_later(task.id, item.id, self._epochs[task.id], delay),
            name=f"retry-{item.id}",
        )

    async def _retry_later(self, task_id: str, item_id: str, epoch: int, delay: float) -> None:
        await asyncio.sleep(delay)

        timers = self._retry_timers.get(task_id, {})
        if timers.get(item_id) is asyncio.current_task():
            del timers[item_id]

        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PROCESSING or self._epochs.get(task_id) != epoch:
            return
        item = task.get_item(item_id)
        if item is None or item.status != TaskStatus.FAILED:
            return

        item.status = TaskStatus.PENDING
        task.recount()
        self._emit(task)
        self._pump(task_id)

    def _finalize(self, task: BatchTask) -> None:
        task.recount()
        task.status = TaskStatus.COMPLETED if task.completed_items > 0 else TaskStatus.FAILED
        task.completed_at = utcnow()
        if task.status == TaskStatus.FAILED:
            task.error = f"All {task.failed_items} items failed"
            logger.error(f"Task {task.name} failed ({task.failed_items} failed)")
        else:
            logger.info(f"Task {task.name} completed ({task.completed_items}/{task.total_items}, "
                        f"{task.failed_items} failed)")
        self._persist(task)
        self._emit(task)
        self._settled_event(task.id).set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_tasks(self) -> None:
        try:
            saved_tasks = self.store.list_tasks()
        except PersistenceError as e:
            logger.error(f"Failed to load saved tasks: {e}")
            return

        for task in saved_tasks:
            interrupted = self._recover_interrupted(task)
            self._tasks[task.id] = task
            self._epochs[task.id] = 0
            try:
                self._task_backends[task.id] = self._select_backend(task.config.model_family)
            except ValueError as e:
                logger.warning(f"Task {task.name} cannot run: {e}")
            if interrupted:
                self._persist(task)
        if saved_tasks:
            logger.info(f"Loaded {len(saved_tasks)} saved tasks")

    def _recover_interrupted(self, task: BatchTask) -> bool:
        """Force work left processing by an earlier process to failed."""
        interrupted = 0
        for item in task.items:
            if item.status == TaskStatus.PROCESSING:
                item.status = TaskStatus.FAILED
                item.error = INTERRUPTED_ERROR
                interrupted += 1
        task_interrupted = task.status == TaskStatus.PROCESSING
        if task_interrupted:
            task.status = TaskStatus.FAILED
            task.error = INTERRUPTED_ERROR
            task.completed_at = utcnow()
        if interrupted or task_interrupted:
            task.recount()
            logger.warning(f"Task {task.name} was interrupted, marked {interrupted} items failed")
            return True
        return False

    def _select_backend(self, family: ModelFamily) -> GenerationBackend:
        backend = self._backends.get(family, self._default_backend)
        if backend is None:
            raise ValueError(f"No generation backend registered for model family {family.value}")
        return backend

    def _ensure_backend(self, task: BatchTask) -> None:
        if task.id not in self._task_backends:
            self._task_backends[task.id] = self._select_backend(task.config.model_family)

    def _executor_for(self, task: BatchTask) -> BoundedExecutor:
        executor = self._executors.get(task.id)
        if executor is None:
            task_id = task.id
            executor = BoundedExecutor(
                task.config.concurrent_limit,
                name=f"task-{task_id[:8]}",
                on_release=lambda _item_id: self._pump(task_id),
            )
            self._executors[task_id] = executor
        return executor

    def _abandon_in_flight(self, task_id: str) -> int:
        executor = self._executors.get(task_id)
        return executor.abandon() if executor is not None else 0

    def _cancel_retry_timers(self, task_id: str) -> List[str]:
        timers = self._retry_timers.pop(task_id, {})
        for timer in timers.values():
            timer.cancel()
        return list(timers)

    def _settled_event(self, task_id: str) -> asyncio.Event:
        event = self._settled.get(task_id)
        if event is None:
            event = asyncio.Event()
            self._settled[task_id] = event
        return event

    def _persist(self, task: BatchTask) -> None:
        try:
            self.store.upsert_task(task)
        except PersistenceError as e:
            task.error = f"Failed to save task state: {e}"
            logger.error(f"Failed to save task {task.name}: {e}")

    def _emit(self, task: BatchTask) -> None:
        self.bus.publish(task.id, task)

    def _on_download_update(self, job: DownloadJob) -> None:
        if job.status != DownloadStatus.COMPLETED or not job.task_id:
            return
        task = self._tasks.get(job.task_id)
        result = task.get_result(job.id) if task else None
        if result is None:
            return
        result.downloaded = True
        result.local_path = job.local_path
        self._emit(task)

    @staticmethod
    def _has_running_loop() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    @staticmethod
    def _build_request(config: BatchTaskConfig, item: TaskItem) -> GenerationRequest:
        return GenerationRequest(
            prompt=item.prompt,
            model=config.model,
            model_family=config.model_family,
            source_images=list(item.source_images),
            mask=item.mask,
            size=config.size,
            aspect_ratio=config.aspect_ratio,
            quality=config.quality,
            timeout_seconds=config.timeout_seconds,
        )

    @staticmethod
    def _coerce_item(value: ItemInput) -> TaskItemSpec:
        if isinstance(value, TaskItemSpec):
            return value
        if isinstance(value, str):
            return TaskItemSpec(prompt=value)
        if isinstance(value, Mapping):
            return TaskItemSpec.model_validate(dict(value))
        raise TypeError(f"Unsupported task item: {value!r}")

    @staticmethod
    def _infer_type(specs: List[TaskItemSpec]) -> TaskType:
        with_source = sum(1 for spec in specs if spec.source_images)
        if with_source == 0:
            return TaskType.TEXT_TO_IMAGE
        if with_source == len(specs):
            return TaskType.IMAGE_TO_IMAGE
        return TaskType.MIXED
