"""Bounded-concurrency executor shared by the scheduler and the download queue."""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set

from loguru import logger


class BoundedExecutor:
    """Runs keyed coroutines with at most ``limit`` of them holding a slot.

    After a coroutine finishes its slot is released and ``on_release`` is
    invoked with the key, so the owner can immediately hand the freed slot
    to the next piece of work. Abandoned coroutines keep running but no
    longer count against the limit.
    """

    def __init__(self, limit: int, name: str = "executor",
                 on_release: Optional[Callable[[str], None]] = None):
        """Initialize executor."""
        if limit < 1:
            raise ValueError(f"Executor limit must be at least 1, got {limit}")
        self.limit = limit
        self.name = name
        self._on_release = on_release
        self._active: Dict[str, asyncio.Task] = {}
        self._detached: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        """Number of coroutines currently holding a slot."""
        return len(self._active)

    def free_slots(self) -> int:
        """Number of slots available for new work."""
        return max(0, self.limit - len(self._active))

    def is_active(self, key: str) -> bool:
        """Whether ``key`` currently holds a slot."""
        return key in self._active

    def set_limit(self, limit: int) -> None:
        """Change the concurrency limit; running work is not interrupted."""
        if limit < 1:
            raise ValueError(f"Executor limit must be at least 1, got {limit}")
        self.limit = limit

    def submit(self, key: str, coro: Awaitable) -> asyncio.Task:
        """Start ``coro`` under ``key``; requires a free slot and a running loop."""
        if key in self._active:
            coro.close()
            raise RuntimeError(f"{self.name}: {key} is already running")
        if self.free_slots() == 0:
            coro.close()
            raise RuntimeError(f"{self.name}: no free slot for {key}")

        task = asyncio.get_running_loop().create_task(self._run(key, coro), name=f"{self.name}-{key}")
        self._active[key] = task
        return task

    async def _run(self, key: str, coro: Awaitable) -> None:
        current = asyncio.current_task()
        released = False
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"{self.name}: unhandled error in {key}")
        finally:
            if self._active.get(key) is current:
                del self._active[key]
                released = True
            self._detached.discard(current)

        # Only a slot holder refills; abandoned work has already given its slot back
        if released and self._on_release is not None:
            self._on_release(key)

    def abandon(self) -> int:
        """Detach running coroutines from slot accounting without cancelling them."""
        count = len(self._active)
        self._detached.update(self._active.values())
        self._active.clear()
        return count

    def cancel_all(self) -> None:
        """Cancel every running or abandoned coroutine."""
        for task in list(self._active.values()) + list(self._detached):
            task.cancel()

    async def join(self) -> None:
        """Wait until no coroutine, active or abandoned, is left running."""
        while self._active or self._detached:
            pending = list(self._active.values()) + list(self._detached)
            await asyncio.gather(*pending, return_exceptions=True)
            # Let the finished tasks' cleanup run before re-checking
            await asyncio.sleep(0)
