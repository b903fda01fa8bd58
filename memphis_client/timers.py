"""
Asyncio timers used for token refresh and the consumer pull loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


async def _invoke(callback: TimerCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class Timer:
    """
    One-shot timer that runs ``callback`` after ``delay_ms`` milliseconds.

    The callback may be a plain function or a coroutine function. Cancelling
    a timer that already fired is a no-op.
    """

    def __init__(self, delay_ms: float, callback: TimerCallback):
        self.delay_ms = delay_ms
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "Timer":
        self._task = asyncio.ensure_future(self._run())
        return self

    async def _run(self) -> None:
        await asyncio.sleep(max(self.delay_ms, 0) / 1000.0)
        try:
            await _invoke(self._callback)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Timer callback failed", extra={"error": str(e)})

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None


class IntervalTimer:
    """
    Repeating timer that runs ``callback`` every ``interval_ms`` milliseconds.

    The first run happens one interval after ``start()``. Each run is awaited
    before the next interval starts counting, so runs never overlap.
    """

    def __init__(self, interval_ms: float, callback: TimerCallback):
        self.interval_ms = interval_ms
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "IntervalTimer":
        self._task = asyncio.ensure_future(self._run())
        return self

    async def _run(self) -> None:
        interval = max(self.interval_ms, 0) / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                await _invoke(self._callback)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Interval callback failed", extra={"error": str(e)})

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
