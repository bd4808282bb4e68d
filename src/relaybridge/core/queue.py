"""Per-key FIFO task queue.

Tasks submitted under the same key run one at a time in submission
order; different keys drain concurrently on the running event loop.
Everything lives in memory: queued work is lost if the process exits.
"""
from __future__ import annotations

import asyncio
from collections import deque
import logging
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger("relaybridge.queue")

Task = Callable[[], Awaitable[Any]]


class KeyedTaskQueue:
    def __init__(self) -> None:
        self._pending: Dict[str, Deque[Tuple[Task, asyncio.Future]]] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    def enqueue(self, key: str, task: Task) -> asyncio.Future:
        """Queue *task* under *key* and return a future for its result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending.setdefault(key, deque()).append((task, future))
        if key not in self._workers:
            self._workers[key] = loop.create_task(self._drain(key), name=f"queue-{key}")
        logger.debug("Queued task for key %r (pending=%d)", key, self.length(key))
        return future

    async def _drain(self, key: str) -> None:
        try:
            while True:
                fifo = self._pending.get(key)
                if not fifo:
                    break
                task, future = fifo.popleft()
                if future.cancelled():
                    continue
                try:
                    result = await task()
                except asyncio.CancelledError:
                    if not future.done():
                        future.cancel()
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
                    # The task cancelled itself; its successors still run.
                    logger.debug("Task for key %r was cancelled", key)
                except Exception as exc:  # noqa: BLE001
                    logger.debug("Task for key %r failed: %s", key, exc)
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
        finally:
            self._workers.pop(key, None)
            if not self._pending.get(key):
                self._pending.pop(key, None)

    def length(self, key: Optional[str] = None) -> int:
        """Number of tasks waiting to start, for one key or all keys."""
        if key is not None:
            return len(self._pending.get(key, ()))
        return sum(len(fifo) for fifo in self._pending.values())

    def active_keys(self) -> list[str]:
        return list(self._workers.keys())
