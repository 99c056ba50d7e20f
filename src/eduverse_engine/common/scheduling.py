"""Clock and cancellable scheduler used for timers, polling and background retries.

Every component that waits or schedules work does it through a
``Scheduler`` it was given, so teardown can cancel all outstanding work
and tests can substitute a manually advanced clock.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)


class Clock:
    """Wall clock returning timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ScheduledTask:
    """Handle for a callback scheduled with ``Scheduler.call_later``."""

    def __init__(self, when: datetime, name: str = ""):
        self.when = when
        self.name = name
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        if self._cancelled:
            return True
        return self._task is not None and self._task.done()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else ("done" if self.done() else "pending")
        return f"<ScheduledTask {self.name or '?'} at {self.when.isoformat()} {state}>"


class Scheduler:
    """asyncio-backed scheduler that owns every task it starts."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def call_later(
        self,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
        name: str = "",
    ) -> ScheduledTask:
        """Run ``callback()`` after ``delay`` seconds unless cancelled first."""
        delay = max(0.0, delay)
        handle = ScheduledTask(self.clock.now() + timedelta(seconds=delay), name)

        async def _run() -> None:
            await asyncio.sleep(delay)
            await callback()

        handle._task = self.spawn(_run(), name=name)
        return handle

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        name: str = "",
        report_errors: bool = True,
    ) -> asyncio.Task:
        """Start ``coro`` as a tracked background task.

        With ``report_errors=False`` the task's exception is left for
        whoever awaits it instead of being logged here.
        """
        if self._closed:
            coro.close()
            raise RuntimeError("Scheduler is shut down")
        task = asyncio.get_running_loop().create_task(coro, name=name or None)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, report_errors))
        return task

    def _finished(self, task: asyncio.Task, report_errors: bool = True) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and report_errors:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))

    async def shutdown(self) -> None:
        """Cancel every tracked task and refuse new work."""
        self._closed = True
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
