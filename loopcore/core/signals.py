"""Publish/subscribe channels.

One ``Signal`` per notification type (reservoir level, manual override,
pump expiry, errors, ...). Signals are sent from the owning serial queue, so
synchronous subscribers observe values in exactly the order they were sent.
Coroutine subscribers are started as tasks so a slow consumer never holds the
queue.
"""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from loopcore.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_UNSET: Any = object()


class Signal(Generic[T]):
    """Fan-out channel without memory."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[[T], Any]] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, callback: Callable[[T], Any]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def send(self, value: T) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(value)
            except Exception as e:
                logger.error(
                    "Signal subscriber failed",
                    signal=self.name,
                    error=str(e),
                    exc_info=True,
                )
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    async def drain(self) -> None:
        """Wait for coroutine subscribers started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Signal subscriber failed",
                signal=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )


class ValueSignal(Signal[T]):
    """Signal that remembers the last value sent."""

    def __init__(self, name: str, initial: T = _UNSET):
        super().__init__(name)
        self._value = initial

    @property
    def value(self) -> T | None:
        return None if self._value is _UNSET else self._value

    def send(self, value: T) -> None:
        self._value = value
        super().send(value)

    def send_if_changed(self, value: T) -> bool:
        """Send only when ``value`` differs from the last value sent."""
        if self._value is not _UNSET and self._value == value:
            return False
        self.send(value)
        return True
