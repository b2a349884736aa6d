"""
Cancellable human-review timeouts, one per run.
"""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class HumanReviewScheduler:
    """
    Schedules the automatic continuation of a run waiting at a human gate.

    The timer entry is removed before its callback runs, so cancel() returns
    False once the continuation has started. A human decision and a timeout
    can therefore never both resume the same run.
    """

    def __init__(self):
        self._timers: dict[str, asyncio.Task] = {}

    def schedule(self, run_id: str, delay_seconds: float, callback: Callable[[], None]) -> None:
        """Replace any pending timer for the run with a new one."""
        self.cancel(run_id)
        self._timers[run_id] = asyncio.create_task(
            self._fire(run_id, delay_seconds, callback),
            name=f"human-review-timeout:{run_id}",
        )
        logger.info(f"Human review timeout for run {run_id} scheduled in {delay_seconds}s")

    async def _fire(self, run_id: str, delay_seconds: float, callback: Callable[[], None]) -> None:
        await asyncio.sleep(delay_seconds)
        if self._timers.get(run_id) is not asyncio.current_task():
            return
        del self._timers[run_id]
        callback()

    def cancel(self, run_id: str) -> bool:
        """
        Cancel the pending timer of a run.

        Returns:
            True if a timer was pending and is now cancelled
        """
        task = self._timers.pop(run_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def is_pending(self, run_id: str) -> bool:
        return run_id in self._timers

    async def cancel_all(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
