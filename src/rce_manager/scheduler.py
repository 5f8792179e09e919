"""
Named, cancellable timers on the running asyncio loop.

Each component that needs delayed or periodic work owns a TaskScheduler.
Scheduling a name that is already in use cancels the earlier task first, so
there is never more than one heartbeat, one token refresh or one player
refresh per server in flight. ``cancel_all`` is called from the owner's
close path.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger("rce-manager.scheduler")

Callback = Callable[[], Awaitable[Any]]


class TaskScheduler:
    """
    Owns a set of named asyncio tasks.

    Attributes:
        _owner: Label used in log messages
        _tasks: Dict mapping task name -> running task
    """

    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._tasks: dict[str, asyncio.Task] = {}

    def call_later(self, name: str, delay: float, callback: Callback) -> asyncio.Task:
        """Run ``callback`` once after ``delay`` seconds."""

        async def _later() -> None:
            await asyncio.sleep(delay)
            await self._invoke(name, callback)

        return self._start(name, _later())

    def call_every(self, name: str, interval: float, callback: Callback) -> asyncio.Task:
        """Run ``callback`` every ``interval`` seconds until cancelled.

        The first call happens one interval after scheduling.
        """

        async def _every() -> None:
            current = asyncio.current_task()
            while True:
                await asyncio.sleep(interval)
                await self._invoke(name, callback)
                # the callback may have cancelled or replaced this task
                if self._tasks.get(name) is not current:
                    break

        return self._start(name, _every())

    def cancel(self, name: str) -> bool:
        """Cancel a named task; returns False if nothing was scheduled."""
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every task this scheduler owns."""
        names = list(self._tasks)
        for name in names:
            self.cancel(name)
        if names:
            logger.debug(f"[{self._owner}] Cancelled {len(names)} scheduled tasks")
        return len(names)

    def is_scheduled(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    @property
    def names(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def _start(self, name: str, coro: Awaitable[None]) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.ensure_future(coro)
        self._tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._forget(n, t))
        return task

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]

    async def _invoke(self, name: str, callback: Callback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self._owner}] Scheduled task '{name}' failed: {e}")


@dataclass
class Backoff:
    """
    Bounded exponential backoff for reconnect attempts.

    The first delay is ``initial``; each following delay is multiplied by
    ``factor`` and capped at ``maximum``. ``reset`` is called after every
    successful connection.
    """

    initial: float = 1.0
    maximum: float = 60.0
    factor: float = 2.0
    attempts: int = field(default=0, init=False)

    def next_delay(self) -> float:
        delay = min(self.initial * (self.factor ** self.attempts), self.maximum)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


__all__ = [
    "TaskScheduler",
    "Backoff",
]
