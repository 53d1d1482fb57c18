"""Serialized execution context.

One ``SerialQueue`` owns all mutable state of one pump/orchestrator pair.
Jobs run strictly one after another on a single worker task, in submission
order. A job that itself submits with ``run()`` is executed inline, so code
on the queue can call queue-protected methods without deadlocking.
"""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from loopcore.logging_config import get_logger

logger = get_logger(__name__)

_Job = tuple[Callable[..., Any], tuple, dict, asyncio.Future]


async def _call(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class SerialQueue:
    """FIFO job queue drained by a single asyncio task."""

    def __init__(self, label: str):
        self.label = label
        self._jobs: asyncio.Queue[_Job] | None = None
        self._worker: asyncio.Task | None = None

    def _ensure_worker(self) -> asyncio.Queue[_Job]:
        if self._jobs is None or self._worker is None or self._worker.done():
            jobs: asyncio.Queue[_Job] = asyncio.Queue()
            self._jobs = jobs
            self._worker = asyncio.create_task(self._drain(jobs), name=f"serial:{self.label}")
            return jobs
        return self._jobs

    def is_current(self) -> bool:
        """True when called from a job running on this queue."""
        return self._worker is not None and asyncio.current_task() is self._worker

    async def run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` on the queue and return its result.

        Exceptions raised by the job propagate to the caller.
        """
        if self.is_current():
            return await _call(func, *args, **kwargs)
        jobs = self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        jobs.put_nowait((func, args, kwargs, future))
        return await future

    def dispatch(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Future:
        """Enqueue ``func`` without waiting for it.

        Always enqueues, even from the queue itself (the job runs after the
        current one). Exceptions are logged.
        """
        jobs = self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        future.add_done_callback(self._log_failure)
        jobs.put_nowait((func, args, kwargs, future))
        return future

    async def join(self) -> None:
        """Wait until every job submitted so far (and any they enqueue) is done."""
        if self._jobs is not None and self._worker is not None and not self._worker.done():
            await self._jobs.join()

    async def close(self) -> None:
        """Stop the worker; jobs still waiting are cancelled."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        if self._jobs is not None:
            while not self._jobs.empty():
                *_, future = self._jobs.get_nowait()
                future.cancel()
        self._worker = None
        self._jobs = None

    async def _drain(self, jobs: asyncio.Queue[_Job]) -> None:
        while True:
            func, args, kwargs, future = await jobs.get()
            try:
                if future.cancelled():
                    continue
                result = await _call(func, *args, **kwargs)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                jobs.task_done()

    def _log_failure(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Queued job failed",
                queue=self.label,
                error=str(exc),
                error_type=type(exc).__name__,
            )
