from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

TickCallback = Callable[[], None]


class Clock(Protocol):
    """Tick source that calls ``on_tick`` once per interval while running."""

    @property
    def running(self) -> bool: ...

    def start(self, on_tick: TickCallback) -> None: ...

    def stop(self) -> None: ...


class AsyncioClock:
    """Real-time clock backed by a task on the running event loop."""

    def __init__(self, interval: float = 1.0) -> None:
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, on_tick: TickCallback) -> None:
        self.stop()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(on_tick))

    async def _run(self, on_tick: TickCallback) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                on_tick()
            except Exception:
                logger.exception("tick handler failed")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


class ManualClock:
    """Simulated clock; time only moves when :meth:`advance` is called."""

    def __init__(self) -> None:
        self._on_tick: Optional[TickCallback] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._on_tick is not None

    def start(self, on_tick: TickCallback) -> None:
        self._on_tick = on_tick

    def stop(self) -> None:
        self._on_tick = None

    def advance(self, seconds: int = 1) -> int:
        """Deliver up to ``seconds`` ticks and return how many were delivered.

        Delivery stops early if a tick handler stops the clock.
        """
        delivered = 0
        for _ in range(seconds):
            if self._on_tick is None:
                break
            self._on_tick()
            delivered += 1
            self.ticks += 1
        return delivered
