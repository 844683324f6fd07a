"""Per-key trailing-edge debouncing on the running event loop."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Hashable, Optional

logger = logging.getLogger("copilot_usage.watcher")


class Debouncer:
    """Run the most recently scheduled callback for a key once activity settles.

    Scheduling a key cancels that key's pending run and starts a new delay, so
    only the final notification of a burst is processed. Callbacks may be
    plain functions or coroutine functions.
    """

    def __init__(self, delay_ms: int):
        self.delay = max(0, delay_ms) / 1000.0
        self._pending: dict[Hashable, asyncio.Task] = {}

    def schedule(self, key: Hashable, callback: Callable[[], Any]) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, callback))
        self._pending[key] = task
        return task

    async def _run(self, key: Hashable, callback: Callable[[], Any]) -> None:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            return
        # Past the delay this run is no longer cancellable by a newer schedule.
        if self._pending.get(key) is asyncio.current_task():
            del self._pending[key]
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Debounced handler for %s failed", key)

    def cancel(self, key: Hashable) -> bool:
        task: Optional[asyncio.Task] = self._pending.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        return len(tasks)

    @property
    def pending(self) -> int:
        return len(self._pending)
