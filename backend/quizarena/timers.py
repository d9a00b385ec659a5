from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerRegistry:
    """One pending deferred transition per key (usually a session id).

    Scheduling a key replaces whatever was pending for it. A timer that is
    currently running its callback is never cancelled by that same callback,
    so a round-close can schedule the next round-open for its own session.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay: float, callback: TimerCallback, label: str = "") -> asyncio.Task:
        self.cancel(key)
        task = asyncio.create_task(self._run(key, delay, callback, label))
        self._tasks[key] = task
        return task

    def cancel(self, key: str) -> bool:
        task = self._tasks.get(key)
        if task is None:
            return False
        if task is asyncio.current_task():
            return False
        self._tasks.pop(key, None)
        if task.done():
            return False
        task.cancel()
        logger.debug("timer_cancelled key=%s", key)
        return True

    def pending(self, key: str) -> Optional[asyncio.Task]:
        task = self._tasks.get(key)
        if task is None or task.done():
            return None
        return task

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    async def _run(self, key: str, delay: float, callback: TimerCallback, label: str) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        me = asyncio.current_task()
        # the slot belongs to the running callback from here on; anything it
        # schedules for the same key takes the slot over
        if self._tasks.get(key) is me:
            self._tasks.pop(key, None)
        logger.debug("timer_fired key=%s label=%s", key, label)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("timer_callback_failed key=%s label=%s", key, label)
