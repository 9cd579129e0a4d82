"""Simple example of using the batch image generator programmatically."""

import asyncio
import os

from batch_imagegen.backends import build_backends
from batch_imagegen.download_queue import DownloadQueue
from batch_imagegen.models import BatchTaskConfig, ModelFamily
from batch_imagegen.saver import LocalFileSaver
from batch_imagegen.scheduler import TaskScheduler
from batch_imagegen.store import MemoryTaskStore


async def run_example():
    """Generate two images and save them under ./downloads."""
    store = MemoryTaskStore()
    queue = DownloadQueue(LocalFileSaver("downloads"), store)
    backends = build_backends(os.getenv("IMAGEGEN_BASE_URL", "https://api.openai.com"),
                              os.environ["IMAGEGEN_API_KEY"])
    scheduler = TaskScheduler(store, backends, download_queue=queue)

    task_id = scheduler.create_task(
        "example",
        ["a lighthouse at dawn", "a lighthouse at dusk"],
        BatchTaskConfig(model="dall-e-3", model_family=ModelFamily.DALLE, concurrent_limit=2),
    )
    scheduler.start_task(task_id)
    task = await scheduler.wait_until_settled(task_id)
    await queue.join()
    print(f"{task.name}: {task.status.value}, {task.completed_items}/{task.total_items} generated")


def main():
    """Example of using the batch image generator."""
    if not os.getenv("IMAGEGEN_API_KEY"):
        print("Batch Image Generator")
        print("Use the CLI for production usage: imagegen-batch --help")
        print()
        print("Example CLI usage:")
        print("1. Create config: imagegen-batch init-config")
        print("2. Run a batch:   imagegen-batch run prompts.txt --concurrency 3")
        print("3. Check status:  imagegen-batch status <task_id>")
        print("Set IMAGEGEN_API_KEY to run the programmatic example.")
        return
    asyncio.run(run_example())


if __name__ == "__main__":
    main()
