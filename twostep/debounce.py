"""Debounce scheduler: one pending timer, reset by every notify()."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)

DelaySource = int | Callable[[], int]


class DebounceScheduler:
    """Coalesce bursts of events into a single quiet-period callback.

    notify() cancels the pending timer and starts a new one, so `on_fire`
    runs at most once per burst and only after `delay_ms` with no further
    notify(). The callback takes no arguments. cancel() tears the timer down
    without firing.
    """

    def __init__(self, on_fire: Callable[[], None], delay_ms: DelaySource = 100) -> None:
        self._on_fire = on_fire
        self._delay = delay_ms
        self._task: asyncio.Task | None = None
        self.fire_count = 0

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def delay_ms(self) -> int:
        return self._delay() if callable(self._delay) else self._delay

    def notify(self, event: object = None, *, delay_ms: int | None = None) -> None:
        """Restart the quiet-period timer. The event payload is not retained."""
        self.cancel()
        delay = self.delay_ms() if delay_ms is None else delay_ms
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._wait(delay / 1000))

    def cancel(self) -> None:
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            self._task = None

    async def _wait(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        self._task = None
        self.fire_count += 1
        try:
            self._on_fire()
        except Exception:
            logger.exception("debounce callback failed")

    def __repr__(self) -> str:
        state = "pending" if self.pending else "idle"
        return f"DebounceScheduler({state}, fired={self.fire_count})"
