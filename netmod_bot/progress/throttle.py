from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Throttle(Generic[T]):
    """
    Call an async function at most once every ``interval`` seconds.

    The first call runs immediately. Calls arriving inside the window only keep
    their argument; when the window closes the latest argument is delivered, so
    the final state always gets through even if calls stop mid-window.
    Invocations never overlap: a slow call delays the next window.
    """

    def __init__(self, func: Callable[[T], Awaitable[Any]], interval: float) -> None:
        if interval < 0:
            raise ValueError("interval must not be negative")
        self._func = func
        self._interval = interval
        self._latest: Optional[T] = None
        self._again = False
        self._task: Optional[asyncio.Task[None]] = None

    def __call__(self, value: T) -> None:
        self._latest = value
        if self._task is None or self._task.done():
            self._again = False
            self._task = asyncio.create_task(self._run(value))
        else:
            self._again = True

    @property
    def idle(self) -> bool:
        return self._task is None or self._task.done()

    async def flush(self) -> None:
        """Wait until every pending call has been delivered."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self, value: T) -> None:
        while True:
            try:
                await self._func(value)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("throttled_call_failed", error=str(exc))
            await asyncio.sleep(self._interval)
            if not self._again:
                return
            self._again = False
            value = self._latest
