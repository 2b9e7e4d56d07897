"""Signal processors that shape bursts of editor events into handler calls.

All three run on the current asyncio event loop and must be fired from
inside it. Timer lengths are given in milliseconds.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[], None]
AsyncHandler = Callable[[], Awaitable[None]]


class Debouncer:
    """Debounces a signal with a settling time of `millis` milliseconds.

    ```
    Input:   xx  x x x   x
    Output:                   x
    ```

    - We wait `millis` milliseconds after the last input before calling the
      handler.
    - If an input is received, the handler is called after that, eventually,
      unless the debouncer is cancelled.
    """

    def __init__(self, millis: float, handler: Handler) -> None:
        self.millis = millis
        self.handler = handler
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def fire(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.millis / 1000, self._elapsed)

    def _elapsed(self) -> None:
        self._timer = None
        self.handler()


class RateLimiter:
    """Rate-limits a signal to an interval of `millis` milliseconds.

    ```
    Input:   xx  x x x   x
    Output:  x    x    x    x
    ```

    - The handler is called at most once every `millis` milliseconds.
    - If an input is received, the handler is called after at most `millis`
      milliseconds.
    """

    def __init__(self, millis: float, handler: Handler) -> None:
        self.millis = millis
        self.handler = handler
        self._missed_fire = False
        self._timer: asyncio.TimerHandle | None = None

    def fire(self) -> None:
        if self._timer is not None:
            self._missed_fire = True
            return
        loop = asyncio.get_running_loop()
        self._open_window(loop)
        # Run on the next loop iteration, not inside the caller's stack.
        loop.call_soon(self.handler)

    def cancel(self) -> None:
        self._missed_fire = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _open_window(self, loop: asyncio.AbstractEventLoop) -> None:
        self._timer = loop.call_later(self.millis / 1000, self._window_elapsed)

    def _window_elapsed(self) -> None:
        self._timer = None
        if self._missed_fire:
            self._missed_fire = False
            self._open_window(asyncio.get_running_loop())
            self.handler()


class AsyncRateLimiter:
    """Rate-limits asynchronous handlers to an interval of `millis` milliseconds.

    ```
    Input:   AB   C D E   F
    Output:  AAAA CCC  EEEEEEFFFF
    ```

    - Handlers are never run concurrently.
    - While a handler runs, only the most recently fired one is kept; the
      others are dropped without running.
    - The kept handler starts `millis` milliseconds after the running one
      completes.
    - `settled` completes when the handler that was current at the time of
      reading it has completed.
    """

    def __init__(self, millis: float) -> None:
        self.millis = millis
        self._missed_fire: AsyncHandler | None = None
        self._running = False
        self._settled: asyncio.Future[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def settled(self) -> Awaitable[None]:
        if self._settled is None:
            done = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done
        return self._settled

    def fire(self, k: AsyncHandler) -> None:
        loop = asyncio.get_running_loop()
        if self._running:
            if self._missed_fire is None:
                self._settled = loop.create_future()
            self._missed_fire = k
            return
        self._running = True
        self._settled = loop.create_future()
        self._go(k, self._settled)

    def cancel(self) -> None:
        self._missed_fire = None
        self._running = False
        for task in list(self._tasks):
            task.cancel()
        if self._settled is not None and not self._settled.done():
            self._settled.set_result(None)

    def _go(self, k: AsyncHandler, settled: asyncio.Future[None]) -> None:
        task = asyncio.get_running_loop().create_task(self._run(k, settled))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, k: AsyncHandler, settled: asyncio.Future[None]) -> None:
        try:
            await k()
        except Exception:
            logger.exception("rate-limited handler failed")
        if not settled.done():
            settled.set_result(None)
        await asyncio.sleep(self.millis / 1000)
        pending, self._missed_fire = self._missed_fire, None
        if pending is None or self._settled is None:
            self._running = False
            return
        self._go(pending, self._settled)
