from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class PeriodicTimer:
    """
    Fire `body` every `interval_sec` on the current event loop.

    The first firing happens one interval after `start()`. Each firing runs as its own task,
    so a slow body does not delay the next tick; overlap control belongs to the body.
    A failing body is logged and the timer keeps going. `stop()` cancels the ticking only;
    bodies already running finish on their own (await them with `drain()`).
    """

    def __init__(self, name: str, interval_sec: float, body: Callable[[], Awaitable[None]]) -> None:
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec}")
        self.name = name
        self._interval_sec = float(interval_sec)
        self._body = body
        self._task: Optional[asyncio.Task[None]] = None
        self._inflight: Set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"timer:{self.name}")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def drain(self) -> None:
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_sec)
            self.fire()

    def fire(self) -> asyncio.Task[None]:
        """Run the body once, now, as a tracked task."""
        task = asyncio.create_task(self._run_once())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run_once(self) -> None:
        try:
            await self._body()
        except Exception:
            logger.exception("timer body failed timer=%s", self.name)
