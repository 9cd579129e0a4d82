"""Download queue that persists generated images with bounded concurrency."""

import asyncio
from collections import deque
from dataclasses import dataclass
from functools import partial
from typing import Callable, Deque, Dict, Iterable, List, Optional

from loguru import logger

from .events import DOWNLOAD_JOBS, NotificationBus, Unsubscribe
from .executor import BoundedExecutor
from .filenames import DEFAULT_TEMPLATE, destination_path, render_filename
from .models import DownloadJob, DownloadStatus, TaskResult
from .saver import ArtifactSaver, UnsupportedEnvironmentError
from .store import PersistenceError, TaskStore


MAX_CONCURRENT_DOWNLOADS = 10


@dataclass
class DownloadSettings:
    """Download queue settings."""
    max_concurrent: int = 3
    retry_attempts: int = 2
    retry_backoff_ms: int = 300
    filename_template: str = DEFAULT_TEMPLATE
    organize_by_date: bool = True
    organize_by_task: bool = True


@dataclass(frozen=True)
class DownloadContext:
    """Where a result came from; used for naming and write-back."""
    task_id: Optional[str] = None
    task_name: Optional[str] = None


def describe(source: str) -> str:
    """Short printable form of an image reference."""
    if source.startswith("data:"):
        return f"{source.split(',', 1)[0]},... ({len(source)} chars)"
    return source if len(source) <= 80 else source[:77] + "..."


class DownloadQueue:
    """FIFO queue of download jobs processed by a bounded pool of workers.

    Jobs are deduplicated by source reference while queued or in flight.
    A job that still fails after its retries is kept in the failed records,
    published on the bus and handed to ``fallback`` so the artifact can be
    retrieved by other means.
    """

    def __init__(self, saver: ArtifactSaver, store: Optional[TaskStore] = None, *,
                 bus: Optional[NotificationBus] = None,
                 settings: Optional[DownloadSettings] = None,
                 fallback: Optional[Callable[[DownloadJob], None]] = None):
        """Initialize download queue."""
        self.saver = saver
        self.store = store
        self.bus = bus or NotificationBus()
        self.settings = settings or DownloadSettings()
        self.fallback = fallback

        self._queue: Deque[DownloadJob] = deque()
        self._active: Dict[str, DownloadJob] = {}
        self._failed: Dict[str, DownloadJob] = {}
        self._completed_count = 0
        self._executor = BoundedExecutor(
            max(1, min(self.settings.max_concurrent, MAX_CONCURRENT_DOWNLOADS)),
            name="download",
            on_release=lambda _job_id: self._pump(),
        )

    def enqueue(self, result: TaskResult, context: Optional[DownloadContext] = None) -> bool:
        """Queue ``result`` for download; False if its source is already queued or in flight."""
        context = context or DownloadContext()
        if self._is_tracked(result.image_ref):
            logger.debug(f"Download already queued: {describe(result.image_ref)}")
            return False

        job = self._build_job(result, context)
        self._failed.pop(job.id, None)
        self._queue.append(job)
        logger.info(f"Queued download {job.id} -> {job.filename}")
        self._publish(job)
        self._pump()
        return True

    def enqueue_batch(self, results: Iterable[TaskResult], context: Optional[DownloadContext] = None) -> int:
        """Queue several results; returns how many were accepted."""
        accepted = sum(1 for result in results if self.enqueue(result, context))
        if accepted:
            logger.info(f"Added {accepted} files to the download queue")
        return accepted

    def retry(self, job_id: str) -> bool:
        """Re-enqueue a permanently failed job."""
        job = self._failed.get(job_id)
        if job is None:
            logger.warning(f"No failed download {job_id} to retry")
            return False
        if self._is_tracked(job.source):
            logger.debug(f"Download already queued: {describe(job.source)}")
            return False

        del self._failed[job_id]
        job.status = DownloadStatus.PENDING
        job.retry_count = 0
        job.error = None
        job.progress = 0.0
        job.bytes_per_sec = 0.0
        self._queue.append(job)
        logger.info(f"Retrying download {job.id}")
        self._publish(job)
        self._pump()
        return True

    def retry_failed(self, task_id: Optional[str] = None) -> int:
        """Re-enqueue stored results not yet marked downloaded, optionally for one task."""
        return self._requeue_from_store(task_id, include_downloaded=False)

    def retry_all(self, force: bool = False) -> int:
        """Re-enqueue results of every task; ``force`` also repeats completed downloads."""
        return self._requeue_from_store(None, include_downloaded=force)

    def cancel_all(self) -> int:
        """Drop every queued job; downloads in flight finish normally."""
        dropped = len(self._queue)
        self._queue.clear()
        if dropped:
            logger.info(f"Cancelled {dropped} queued downloads")
        return dropped

    def set_max_concurrent(self, max_concurrent: int) -> int:
        """Change the number of parallel downloads (clamped to 1..10)."""
        value = max(1, min(max_concurrent, MAX_CONCURRENT_DOWNLOADS))
        self.settings.max_concurrent = value
        self._executor.set_limit(value)
        self._pump()
        return value

    def status(self) -> dict:
        """Queue statistics."""
        return {
            "is_downloading": bool(self._active or self._queue),
            "queue_length": len(self._queue),
            "active_downloads": len(self._active),
            "max_concurrent": self._executor.limit,
            "completed": self._completed_count,
            "failed": len(self._failed),
        }

    def pending_jobs(self) -> List[DownloadJob]:
        """Copies of the queued jobs in FIFO order."""
        return [job.model_copy(deep=True) for job in self._queue]

    def active_jobs(self) -> List[DownloadJob]:
        """Copies of the jobs currently downloading."""
        return [job.model_copy(deep=True) for job in self._active.values()]

    def failed_jobs(self) -> List[DownloadJob]:
        """Copies of the jobs that exhausted their retries."""
        return [job.model_copy(deep=True) for job in self._failed.values()]

    def on_job_progress(self, job_id: str, listener: Callable[[float, float], None]) -> Unsubscribe:
        """Subscribe to ``(progress, bytes_per_sec)`` updates of one job."""
        return self.bus.subscribe(job_id, listener)

    def on_job_update(self, listener: Callable[[DownloadJob], None]) -> Unsubscribe:
        """Subscribe to state changes of every job."""
        return self.bus.subscribe(DOWNLOAD_JOBS, listener)

    async def join(self) -> None:
        """Wait until the queue is empty and no download is running."""
        self._pump()
        while self._queue or self._executor.active_count:
            await self._executor.join()
            self._pump()

    async def shutdown(self) -> None:
        """Drop queued jobs and cancel running downloads."""
        self.cancel_all()
        self._executor.cancel_all()
        await self._executor.join()

    def _build_job(self, result: TaskResult, context: DownloadContext) -> DownloadJob:
        filename = render_filename(self.settings.filename_template, result, context.task_name)
        path = destination_path(
            filename,
            context.task_name,
            organize_by_date=self.settings.organize_by_date,
            organize_by_task=self.settings.organize_by_task,
        )
        return DownloadJob(
            id=result.id,
            source=result.image_ref,
            filename=path,
            task_id=context.task_id,
            task_item_id=result.task_item_id,
            task_name=context.task_name,
        )

    def _is_tracked(self, source: str) -> bool:
        if any(job.source == source for job in self._queue):
            return True
        return any(job.source == source for job in self._active.values())

    def _requeue_from_store(self, task_id: Optional[str], include_downloaded: bool) -> int:
        if self.store is None:
            logger.warning("No task store configured, nothing to retry")
            return 0

        try:
            tasks = [self.store.get_task(task_id)] if task_id else self.store.list_tasks()
        except PersistenceError as e:
            logger.error(f"Failed to load tasks for download retry: {e}")
            return 0

        retried = 0
        for task in tasks:
            if task is None:
                logger.warning(f"Task {task_id} not found for download retry")
                continue
            context = DownloadContext(task_id=task.id, task_name=task.name)
            for result in task.results:
                if result.downloaded and not include_downloaded:
                    continue
                if self.enqueue(result, context):
                    retried += 1

        if retried:
            logger.info(f"Retrying {retried} downloads")
        else:
            logger.info("No downloads need retrying")
        return retried

    def _pump(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Jobs wait until the queue is driven from an event loop
            return

        while self._queue and self._executor.free_slots() > 0:
            job = self._queue[0]
            if self._executor.is_active(job.id):
                break
            self._queue.popleft()
            self._active[job.id] = job
            self._executor.submit(job.id, self._download(job))

    async def _download(self, job: DownloadJob) -> None:
        job.status = DownloadStatus.DOWNLOADING
        job.progress = 0.0
        job.error = None
        self._publish(job)

        try:
            while True:
                try:
                    path = await self.saver.save(job.source, job.filename, progress=partial(self._on_progress, job))
                except UnsupportedEnvironmentError as e:
                    self._fail(job, str(e))
                    return
                except Exception as e:
                    error_message = str(e) or type(e).__name__
                    if job.retry_count < self.settings.retry_attempts:
                        job.retry_count += 1
                        delay = self.settings.retry_backoff_ms * job.retry_count / 1000
                        logger.warning(f"Download {job.id} failed, retry {job.retry_count}/{self.settings.retry_attempts} "
                                       f"in {delay:.1f}s: {error_message}")
                        await asyncio.sleep(delay)
                        continue
                    self._fail(job, error_message)
                    return
                self._complete(job, path)
                return
        finally:
            self._active.pop(job.id, None)

    def _on_progress(self, job: DownloadJob, downloaded: int, total: int, bytes_per_sec: float) -> None:
        if job.status != DownloadStatus.DOWNLOADING:
            return
        job.progress = min(1.0, downloaded / total) if total > 0 else 0.0
        job.bytes_per_sec = bytes_per_sec
        self.bus.publish(job.id, job.progress, job.bytes_per_sec)

    def _complete(self, job: DownloadJob, path: str) -> None:
        job.status = DownloadStatus.COMPLETED
        job.progress = 1.0
        job.local_path = path
        job.error = None
        self._completed_count += 1
        self._failed.pop(job.id, None)
        logger.info(f"Saved {job.filename} to {path}")

        self._write_back(job)
        self.bus.publish(job.id, job.progress, job.bytes_per_sec)
        self._publish(job)

    def _fail(self, job: DownloadJob, error_message: str) -> None:
        job.status = DownloadStatus.FAILED
        job.error = error_message
        self._failed[job.id] = job
        logger.error(f"Download {job.id} permanently failed after {job.retry_count + 1} attempts: {error_message}")
        self._publish(job)

        if self.fallback is not None:
            try:
                self.fallback(job.model_copy(deep=True))
            except Exception:
                logger.exception(f"Download fallback failed for {job.id}")

    def _write_back(self, job: DownloadJob) -> None:
        if self.store is None:
            return
        try:
            task = self.store.find_result_owner(job.id, job.task_id)
            if task is None:
                logger.warning(f"No task result {job.id} found to record local path")
                return
            result = task.get_result(job.id)
            result.downloaded = True
            result.local_path = job.local_path
            self.store.upsert_task(task)
            logger.debug(f"Recorded local path for result {job.id}: {job.local_path}")
        except PersistenceError as e:
            logger.error(f"Failed to record local path for result {job.id}: {e}")

    def _publish(self, job: DownloadJob) -> None:
        self.bus.publish(DOWNLOAD_JOBS, job)
