"""
tasks.py — a supervised set of background tasks.

Every timer loop, per-event handler and fire-and-forget send is spawned here
instead of being left dangling on the loop, so shutdown can cancel and await
all of them deterministically. Exceptions are logged when a task finishes.

Tasks spawned with critical=True are ones the process can't run without
(the relay supervisor, the timer loops). When one of those dies with an
exception, `on_critical_failure(name, exc)` is called.
"""

import asyncio
import logging
from typing import Callable, Coroutine, Optional, Set

log = logging.getLogger(__name__)

FailureCallback = Callable[[str, BaseException], None]


class BackgroundTasks:
    def __init__(self, on_critical_failure: Optional[FailureCallback] = None) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._critical: Set[asyncio.Task] = set()
        self.on_critical_failure = on_critical_failure
        self.closed = False

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: Optional[str] = None, *, critical: bool = False) -> Optional[asyncio.Task]:
        """Start `coro` as a tracked task. After close() new work is refused."""
        if self.closed:
            coro.close()
            log.debug("Refusing task %s after shutdown", name)
            return None
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        if critical:
            self._critical.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        critical = task in self._critical
        self._critical.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        log.error("Background task %s failed", task.get_name(), exc_info=exc)
        if critical and not self.closed and self.on_critical_failure is not None:
            self.on_critical_failure(task.get_name(), exc)

    async def wait_idle(self) -> None:
        """Wait until every task spawned so far (and any they spawn) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel everything still running and wait for it to unwind."""
        self.closed = True
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._critical.clear()
