"""Periodic task runner shared by the background services."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

TaskCallback = Callable[[], Union[Any, Awaitable[Any]]]


class SchedulingService:
    """Run named callbacks on a fixed period inside the event loop.

    Runs are spaced by the interval measured start to start, so a slow
    callback does not push later runs back. Ticks that pass while a
    callback is still running are skipped.

    A callback that raises is logged and keeps its schedule; only
    ``remove_task`` or ``stop`` deregisters it.
    """

    def __init__(self):
        self._callbacks: dict[str, tuple[TaskCallback, int]] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def task_names(self) -> list[str]:
        return list(self._callbacks)

    def add_task(self, name: str, callback: TaskCallback, interval_ms: int) -> None:
        """Invoke ``callback`` every ``interval_ms``. Replaces a task of the same name.

        The first run happens one interval after registration.
        """
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")
        self.remove_task(name)
        self._callbacks[name] = (callback, interval_ms)
        self._tasks[name] = asyncio.create_task(self._run(name, callback, interval_ms), name=name)
        logger.info("Scheduled task %s every %d ms", name, interval_ms)

    def remove_task(self, name: str) -> bool:
        self._callbacks.pop(name, None)
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def run_all_once(self) -> None:
        """Run every registered callback once, in registration order."""
        for name, (callback, _) in list(self._callbacks.items()):
            await self._invoke(name, callback)

    async def stop(self) -> None:
        """Cancel every task and wait for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._callbacks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Stopped %d scheduled task(s)", len(tasks))

    async def _run(self, name: str, callback: TaskCallback, interval_ms: int) -> None:
        loop = asyncio.get_running_loop()
        interval = interval_ms / 1000
        deadline = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            await self._invoke(name, callback)
            deadline += interval
            # Ticks missed while a slow callback ran are dropped
            if deadline <= loop.time():
                missed = int((loop.time() - deadline) // interval) + 1
                deadline += missed * interval

    async def _invoke(self, name: str, callback: TaskCallback) -> None:
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Scheduled task %s failed: %s", name, e, exc_info=True)
