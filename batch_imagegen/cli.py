"""Command-line interface for the batch image generator."""

import sys
import json
import asyncio
from pathlib import Path
from typing import List, Optional, Union

import click
from loguru import logger

from .backends import build_backends
from .config import AppConfig, ConfigManager, get_config_manager
from .download_queue import DownloadContext, DownloadQueue, DownloadSettings
from .models import BatchTask, BatchTaskConfig, DownloadJob, ModelFamily, TaskStatus
from .redis_client import RedisTaskStore
from .saver import LocalFileSaver
from .scheduler import ResetScope, TaskScheduler
from .store import MemoryTaskStore, PersistenceError, TaskStore


@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--redis-host', default=None, help='Redis server host')
@click.option('--redis-port', default=None, type=int, help='Redis server port')
@click.option('--redis-password', default=None, help='Redis server password')
@click.option('--redis-username', default=None, help='Redis server username (Redis 6.0+ ACL)')
@click.option('--store', type=click.Choice(['redis', 'memory']), default=None, help='Task store backend')
@click.option('--log-level', default=None, help='Log level (DEBUG, INFO, WARNING, ERROR)')
@click.pass_context
def main(ctx, config, redis_host, redis_port, redis_password, redis_username, store, log_level):
    """Batch image generator."""
    config_manager = get_config_manager(config)

    config_manager.update_from_cli_args(
        redis_host=redis_host,
        redis_port=redis_port,
        redis_password=redis_password,
        redis_username=redis_username,
        store=store,
        log_level=log_level
    )

    app_config = config_manager.get_config()

    # Configure logging
    logger.remove()
    logger.add(
        sys.stderr,
        level=app_config.log_level.upper(),
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )

    ctx.ensure_object(dict)
    ctx.obj['config'] = app_config
    ctx.obj['config_manager'] = config_manager


def _build_store(app_config: AppConfig) -> TaskStore:
    """Create the configured task store, exiting when Redis is unreachable."""
    if app_config.store == "memory":
        logger.warning("Using in-memory task store, tasks are lost on exit")
        return MemoryTaskStore()

    store = RedisTaskStore(
        host=app_config.redis.host,
        port=app_config.redis.port,
        password=app_config.redis.password,
        username=app_config.redis.username,
        db=app_config.redis.db,
        key_prefix=app_config.redis.key_prefix
    )

    if not store.ping():
        logger.error("Cannot connect to Redis server")
        sys.exit(1)
    return store


def _open_in_browser(job: DownloadJob) -> None:
    if job.source.startswith(("http://", "https://")):
        logger.info(f"Opening {job.source} for manual download")
        click.launch(job.source)


def _build_runtime(app_config: AppConfig, store: TaskStore,
                   output_dir: Optional[str] = None, open_failed: bool = False):
    """Wire saver, download queue and scheduler together."""
    download_config = app_config.download
    saver = LocalFileSaver(
        output_dir or download_config.output_dir,
        timeout=download_config.timeout,
        verify_ssl=not download_config.disable_ssl_verify
    )
    if not saver.validate():
        logger.error(f"Download directory {saver.base_dir} is not usable")
        sys.exit(1)

    queue = DownloadQueue(
        saver,
        store,
        settings=DownloadSettings(
            max_concurrent=download_config.max_concurrent,
            retry_attempts=download_config.retry_attempts,
            retry_backoff_ms=download_config.retry_backoff_ms,
            filename_template=download_config.filename_template,
            organize_by_date=download_config.organize_by_date,
            organize_by_task=download_config.organize_by_task
        ),
        fallback=_open_in_browser if open_failed else None
    )

    try:
        backends = build_backends(
            app_config.api.base_url,
            app_config.api.api_key,
            verify_ssl=not app_config.api.disable_ssl_verify
        )
    except ValueError as e:
        logger.error(f"{e}; set IMAGEGEN_API_KEY or the [api] section of the config file")
        sys.exit(1)

    return TaskScheduler(store, backends, download_queue=queue), queue


def _read_prompts(path: str) -> List[Union[str, dict]]:
    """Read prompts from a JSON list or a text file with one prompt per line."""
    content = Path(path).read_text(encoding="utf-8")
    if path.endswith(".json"):
        items = json.loads(content)
        if not isinstance(items, list):
            raise ValueError("JSON prompts file must contain a list")
        return items
    return [line.strip() for line in content.splitlines() if line.strip() and not line.lstrip().startswith("#")]


def _print_task(task: BatchTask, verbose: bool = False) -> None:
    click.echo(f"{task.name} ({task.id})")
    click.echo(f"  Status: {task.status.value}")
    click.echo(f"  Model: {task.config.model} ({task.config.model_family.value})")
    click.echo(f"  Progress: {task.progress}% - {task.completed_items} completed, "
               f"{task.failed_items} failed of {task.total_items}")
    downloaded = sum(1 for result in task.results if result.downloaded)
    click.echo(f"  Results: {len(task.results)} ({downloaded} downloaded)")
    if task.error:
        click.echo(f"  Error: {task.error}")
    if verbose:
        for item in task.items:
            line = f"    [{item.status.value:<10}] {item.id[-6:]} {item.prompt[:60]}"
            if item.error:
                line += f" - {item.error}"
            click.echo(line)
        for result in task.results:
            if result.local_path:
                click.echo(f"    saved: {result.local_path}")


async def _drive(scheduler: TaskScheduler, queue: DownloadQueue, task_id: str) -> BatchTask:
    """Report progress until the task settles and its downloads are done."""
    last_progress = [-1]

    def report(task: BatchTask) -> None:
        if task.progress != last_progress[0]:
            last_progress[0] = task.progress
            click.echo(f"[{task.progress:3d}%] {task.completed_items} completed, {task.failed_items} failed "
                       f"of {task.total_items}")

    unsubscribe = scheduler.on_task_update(task_id, report)
    try:
        task = await scheduler.wait_until_settled(task_id)
        await queue.join()
        return scheduler.get_task(task_id) or task
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Interrupted, pausing task")
        scheduler.pause_task(task_id)
        raise
    finally:
        unsubscribe()
        await queue.shutdown()
        await scheduler.shutdown()


@main.command()
@click.argument('prompts_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--name', '-n', help='Task name (defaults to the file name)')
@click.option('--model', '-m', help='Model name')
@click.option('--family', type=click.Choice([f.value for f in ModelFamily]), help='Model family')
@click.option('--concurrency', type=click.IntRange(min=1), help='Parallel generation calls')
@click.option('--retries', type=click.IntRange(min=0), help='Retries per item')
@click.option('--retry-delay', type=click.IntRange(min=0), help='Delay between retries in milliseconds')
@click.option('--size', help='Image size, e.g. 1024x1024')
@click.option('--quality', help='Image quality')
@click.option('--aspect-ratio', help='Aspect ratio, e.g. 16:9')
@click.option('--no-download', is_flag=True, help='Do not save results locally')
@click.option('--output-dir', '-o', help='Output directory for downloads')
@click.option('--open-failed', is_flag=True, help='Open failed downloads in the browser')
@click.pass_context
def run(ctx, prompts_file, name, model, family, concurrency, retries, retry_delay, size, quality,
        aspect_ratio, no_download, output_dir, open_failed):
    """Generate one image per prompt in PROMPTS_FILE."""
    app_config = ctx.obj['config']
    defaults = app_config.scheduler

    try:
        items = _read_prompts(prompts_file)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read prompts file {prompts_file}: {e}")
        sys.exit(1)

    if not items:
        logger.error("No prompts provided")
        sys.exit(1)

    task_config = BatchTaskConfig(
        model=model or defaults.model,
        model_family=ModelFamily(family or defaults.model_family),
        concurrent_limit=concurrency or defaults.concurrent_limit,
        retry_attempts=defaults.retry_attempts if retries is None else retries,
        retry_delay_ms=defaults.retry_delay_ms if retry_delay is None else retry_delay,
        auto_download=defaults.auto_download and not no_download,
        size=size,
        aspect_ratio=aspect_ratio,
        quality=quality,
        timeout_seconds=defaults.call_timeout
    )
    task_name = name or Path(prompts_file).stem
    store = _build_store(app_config)

    async def _run() -> BatchTask:
        scheduler, queue = _build_runtime(app_config, store, output_dir, open_failed)
        task_id = scheduler.create_task(task_name, items, task_config)
        click.echo(f"Task ID: {task_id}")
        scheduler.start_task(task_id)
        return await _drive(scheduler, queue, task_id)

    try:
        task = asyncio.run(_run())
    except (ValueError, PersistenceError) as e:
        logger.error(f"Failed to run task: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
        sys.exit(130)

    _print_task(task)
    if task.status != TaskStatus.COMPLETED:
        sys.exit(1)


@main.command()
@click.pass_context
def tasks(ctx):
    """List all tasks and their status."""
    store = _build_store(ctx.obj['config'])
    stored_tasks = sorted(store.list_tasks(), key=lambda t: t.created_at, reverse=True)

    if not stored_tasks:
        click.echo("No tasks found")
        return

    click.echo(f"Tasks ({len(stored_tasks)}):")
    click.echo("=" * 60)
    for task in stored_tasks:
        click.echo(f"  {task.id}  {task.status.value:<10} {task.progress:3d}%  {task.name}")


@main.command()
@click.argument('task_id')
@click.option('--verbose', '-v', is_flag=True, help='Show every item')
@click.pass_context
def status(ctx, task_id, verbose):
    """Show status of one task."""
    store = _build_store(ctx.obj['config'])
    task = store.get_task(task_id)
    if task is None:
        click.echo(f"Task '{task_id}' not found")
        sys.exit(1)
    _print_task(task, verbose)


@main.command()
@click.argument('task_id')
@click.option('--failed-only', is_flag=True, help='Only retry failed items')
@click.option('--item', 'item_id', help='Retry a single item')
@click.option('--output-dir', '-o', help='Output directory for downloads')
@click.pass_context
def retry(ctx, task_id, failed_only, item_id, output_dir):
    """Run items of a task again."""
    app_config = ctx.obj['config']
    if failed_only and item_id:
        raise click.UsageError("--failed-only and --item cannot be combined")
    scope = ResetScope.ITEM if item_id else ResetScope.FAILED if failed_only else ResetScope.ALL
    store = _build_store(app_config)

    async def _retry() -> Optional[BatchTask]:
        scheduler, queue = _build_runtime(app_config, store, output_dir)
        if scheduler.get_task(task_id) is None:
            click.echo(f"Task '{task_id}' not found")
            return None
        reset = scheduler.reset(task_id, scope, item_id)
        if not reset:
            click.echo("Nothing to retry")
            await scheduler.shutdown()
            return scheduler.get_task(task_id)
        click.echo(f"Retrying {reset} items")
        return await _drive(scheduler, queue, task_id)

    try:
        task = asyncio.run(_retry())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
        sys.exit(130)

    if task is None:
        sys.exit(1)
    _print_task(task)


@main.command()
@click.argument('task_id', required=False)
@click.option('--force', is_flag=True, help='Also repeat downloads that already succeeded')
@click.option('--output-dir', '-o', help='Output directory for downloads')
@click.option('--open-failed', is_flag=True, help='Open failed downloads in the browser')
@click.pass_context
def downloads(ctx, task_id, force, output_dir, open_failed):
    """Download results that have not been saved yet.

    Without TASK_ID every task is checked.
    """
    app_config = ctx.obj['config']
    store = _build_store(app_config)

    async def _download() -> dict:
        _, queue = _build_runtime(app_config, store, output_dir, open_failed)
        if task_id and not force:
            queued = queue.retry_failed(task_id)
        elif task_id:
            task = store.get_task(task_id)
            queued = queue.enqueue_batch(task.results, DownloadContext(task.id, task.name)) if task else 0
        else:
            queued = queue.retry_all(force)
        click.echo(f"Queued {queued} downloads")
        await queue.join()
        return queue.status()

    stats = asyncio.run(_download())
    click.echo(f"Completed: {stats['completed']}, failed: {stats['failed']}")
    if stats['failed']:
        sys.exit(1)


@main.command()
@click.argument('task_id')
@click.pass_context
def delete(ctx, task_id):
    """Delete a task."""
    store = _build_store(ctx.obj['config'])
    if store.delete_task(task_id):
        click.echo(f"Deleted task {task_id}")
    else:
        click.echo(f"Task '{task_id}' not found")
        sys.exit(1)


@main.command()
@click.option('--keep', default=100, show_default=True, type=click.IntRange(min=0), help='Number of tasks to keep')
@click.pass_context
def cleanup(ctx, keep):
    """Delete the oldest tasks."""
    store = _build_store(ctx.obj['config'])
    removed = store.cleanup_old_tasks(keep)
    click.echo(f"Removed {removed} tasks")


@main.command()
@click.option('--output', '-o', default='config.ini', help='Output file path')
def init_config(output):
    """Create a sample configuration file."""
    config_manager = ConfigManager()
    config_manager.create_sample_config(output)
    click.echo(f"Created sample configuration file: {output}")
    click.echo("Edit the file and uncomment the settings you want to use.")


if __name__ == '__main__':
    main()
