"""Timer scheduling, abstracted so that tests can drive a virtual clock."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Protocol, runtime_checkable


__all__ = ["TimerHandle", "Scheduler", "AsyncioScheduler"]


@runtime_checkable
class TimerHandle(Protocol):
    """A scheduled callback that can be cancelled."""

    def cancel(self) -> None:
        """Cancel the callback, if it has not run yet."""


class Scheduler(ABC):
    """Schedules one-shot callbacks and sleeps."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """
        Run a callback once, after a delay.

        :param delay: the delay in seconds.
        :param callback: the callback to run.
        :return: a handle to cancel the callback.
        """

    async def sleep(self, delay: float) -> None:
        """Suspend the current task for the given delay."""
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        handle = self.call_later(delay, wake)
        try:
            await future
        finally:
            handle.cancel()


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:  # noqa: D102
        return asyncio.get_running_loop().call_later(delay, callback)

    async def sleep(self, delay: float) -> None:  # noqa: D102
        await asyncio.sleep(delay)
