"""
Coarse-grained, non-blocking progress reporting
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Set

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Any]


class ProgressReporter:
    """
    Turns (done, total) counts into milestone percentages.

    Only multiples of ``step`` are emitted, each at most once and in
    increasing order, with 100 always emitted on completion. Callbacks are
    scheduled on the running loop and never awaited by the reporter, so a
    slow consumer cannot stall the work being reported on. Callback errors
    are logged.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None, step: int = 10):
        if not 1 <= step <= 100:
            raise ValueError("step must be between 1 and 100")
        self.callback = callback
        self.step = step
        self.last_percent = 0
        self._tasks: Set[asyncio.Task] = set()

    def milestone(self, done: int, total: int) -> int:
        """Highest step multiple reached by done/total"""
        if total <= 0:
            return 100
        done = max(0, min(done, total))
        if done == total:
            return 100
        percent = (done * 100) // total
        return (percent // self.step) * self.step

    def report(self, done: int, total: int) -> Optional[int]:
        """Emit a milestone if one was crossed; returns the emitted percent"""
        percent = self.milestone(done, total)
        if percent <= self.last_percent:
            return None
        self.last_percent = percent
        self._emit(percent)
        return percent

    def complete(self) -> None:
        if self.last_percent < 100:
            self.last_percent = 100
            self._emit(100)

    def _emit(self, percent: int) -> None:
        if self.callback is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self._invoke_sync(percent)
            return

        if inspect.iscoroutinefunction(self.callback):
            task = loop.create_task(self.callback(percent))
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
        else:
            loop.call_soon(self._invoke_sync, percent)

    def _invoke_sync(self, percent: int) -> None:
        try:
            result = self.callback(percent)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)
        except Exception as e:
            logger.warning(f"Progress callback failed at {percent}%: {e}")

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Progress callback failed: {error}")

    async def drain(self) -> None:
        """Wait for callbacks still in flight (shutdown and tests)"""
        # Let call_soon callbacks run first
        await asyncio.sleep(0)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
