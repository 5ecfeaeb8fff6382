# Simple async scheduler that triggers one trader tick every N seconds.

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

log = logging.getLogger(__name__)

TickFn = Callable[[], Dict[str, Any]]


class TickScheduler:
    def __init__(self, tick: TickFn, interval_sec: float = 60.0) -> None:
        self._tick = tick
        self.interval_sec = float(interval_sec)
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_result: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="trader_tick_scheduler")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                # the tick is synchronous (HTTP + sqlite); keep it off the event loop
                self.last_result = await asyncio.to_thread(self._tick)
            except Exception:
                log.exception("scheduled tick error")
            await asyncio.sleep(self.interval_sec)

    async def stop(self) -> None:
        self._running = False
        task = self._task
        self._task = None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
