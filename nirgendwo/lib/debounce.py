"""
SaveTrigger — coalesces bursts of "something changed, please persist"
signals into one save per cool-down window.

    trigger = SaveTrigger(save_everything, cooldown=300)
    trigger.start()
    trigger.try_signal()    # cheap, never blocks; extra calls are no-ops

The worker saves as soon as a signal arrives, then sleeps for the
cool-down before it looks at the next one.  Signals arriving during the
sleep collapse into a single pending save.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

SAVE_COOLDOWN = 300.0   # 5 minutes


class SaveTrigger:

    def __init__(self, persist: Callable[[], Awaitable[None] | None], cooldown: float = SAVE_COOLDOWN):
        self._persist = persist
        self.cooldown = cooldown
        self._signals: asyncio.Queue[None] = asyncio.Queue(maxsize=1)
        self._task: asyncio.Task | None = None
        self.saves = 0

    def try_signal(self) -> bool:
        """Request a save.  Returns False if one is already pending."""
        try:
            self._signals.put_nowait(None)
        except asyncio.QueueFull:
            return False
        return True

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="save-trigger")
            logger.info("Save trigger started (cool-down %.0fs)", self.cooldown)

    async def stop(self, flush: bool = False):
        """Stop the worker.  With *flush*, run a still-pending save first."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if flush and not self._signals.empty():
            self._signals.get_nowait()
            await self._save()

    async def _run(self):
        while True:
            await self._signals.get()
            await self._save()
            await asyncio.sleep(self.cooldown)

    async def _save(self):
        try:
            result = self._persist()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Save failed")
        else:
            self.saves += 1
            logger.info("Saved (%d saves since start)", self.saves)
