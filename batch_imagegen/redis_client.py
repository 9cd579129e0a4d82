"""Redis-backed task store."""

from typing import Optional, List

import redis
from loguru import logger

from .models import BatchTask
from .store import TaskStore, PersistenceError, StorageQuotaError


class RedisTaskStore(TaskStore):
    """Stores each batch task as a JSON document in one Redis hash."""

    def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0,
                 password: Optional[str] = None, username: Optional[str] = None,
                 key_prefix: str = "imagegen", client: Optional[redis.Redis] = None):
        """Initialize Redis task store."""
        if client is not None:
            self.redis_client = client
        elif username and password:
            # Redis 6.0+ ACL authentication
            self.redis_client = redis.Redis(
                host=host,
                port=port,
                db=db,
                username=username,
                password=password,
                decode_responses=True
            )
        else:
            self.redis_client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True
            )

        self.tasks_key = f"{key_prefix}:tasks"

    def ping(self) -> bool:
        """Check Redis connection."""
        try:
            return bool(self.redis_client.ping())
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            return False

    def list_tasks(self) -> List[BatchTask]:
        try:
            raw_tasks = self.redis_client.hgetall(self.tasks_key)
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to list tasks: {e}") from e

        tasks = []
        for task_id, task_data in raw_tasks.items():
            try:
                tasks.append(BatchTask.model_validate_json(task_data))
            except ValueError as e:
                logger.error(f"Skipping unreadable task {task_id}: {e}")
        return tasks

    def get_task(self, task_id: str) -> Optional[BatchTask]:
        try:
            task_data = self.redis_client.hget(self.tasks_key, task_id)
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to load task {task_id}: {e}") from e
        if not task_data:
            return None
        return BatchTask.model_validate_json(task_data)

    def upsert_task(self, task: BatchTask) -> None:
        try:
            self.redis_client.hset(self.tasks_key, task.id, task.model_dump_json())
            logger.debug(f"Saved task {task.id} ({task.status.value})")
        except redis.exceptions.ResponseError as e:
            # maxmemory reached with a noeviction policy
            if str(e).startswith("OOM"):
                raise StorageQuotaError(f"Redis is out of memory, task {task.id} not saved") from e
            raise PersistenceError(f"Failed to save task {task.id}: {e}") from e
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to save task {task.id}: {e}") from e

    def delete_task(self, task_id: str) -> bool:
        try:
            removed = self.redis_client.hdel(self.tasks_key, task_id)
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to delete task {task_id}: {e}") from e
        if removed:
            logger.info(f"Deleted task {task_id}")
        return bool(removed)

    def count(self) -> int:
        try:
            return int(self.redis_client.hlen(self.tasks_key))
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to count tasks: {e}") from e
