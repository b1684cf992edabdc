from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from loguru import logger


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class AlarmTimer:
    """One pending wake point per scheduler key; arming a key replaces its previous alarm.

    Delivery is at-least-once: if the callback raises, the alarm is re-armed
    after ``redelivery_delay`` seconds unless the key was re-armed meanwhile.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        trigger: Callable[[str], Awaitable[None]],
        clock: Callable[[], int] | None = None,
        redelivery_delay: float = 5.0,
    ):
        self._loop = loop
        self._trigger = trigger
        self._clock = clock or wall_clock_ms
        self._redelivery_delay = max(0.0, float(redelivery_delay))
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._due_ms: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    def arm(self, key: str, at_ms: int) -> None:
        self.cancel(key)
        delay = max(0.0, (int(at_ms) - self._clock()) / 1000.0)
        due = int(at_ms)
        self._due_ms[key] = due

        def _run() -> None:
            self._handles.pop(key, None)
            self._due_ms.pop(key, None)
            task = self._loop.create_task(self._deliver(key))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        self._handles[key] = self._loop.call_later(delay, _run)

    async def _deliver(self, key: str) -> None:
        try:
            await self._trigger(key)
        except Exception:
            logger.exception(f"AlarmTimer: alarm for key={key} failed, redelivering in {self._redelivery_delay}s")
            if key not in self._handles:
                self.arm(key, self._clock() + int(self._redelivery_delay * 1000))

    def cancel(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._due_ms.pop(key, None)

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    def due_at(self, key: str) -> int | None:
        return self._due_ms.get(key)

    def armed_keys(self) -> list[str]:
        return sorted(self._handles)

    async def drain(self) -> None:
        """Wait for alarm callbacks that are already running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
