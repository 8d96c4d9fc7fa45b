import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PollBackoff:
    """Exponential backoff shared by an agent's polling timers.

    Every failure doubles (by ``factor``) the delay up to ``ceiling``; one
    success resets it. ``exhausted`` turns true after ``max_failures``
    consecutive failures.
    """

    def __init__(self, factor: float = 2.0, ceiling: float = 30.0, max_failures: int = 10):
        self.factor = factor
        self.ceiling = ceiling
        self.max_failures = max_failures
        self.failures = 0

    def delay(self, base: float) -> float:
        if self.failures == 0:
            return base
        return min(base * (self.factor ** self.failures), max(self.ceiling, base))

    def record_success(self):
        self.failures = 0

    def record_failure(self) -> bool:
        self.failures += 1
        return self.exhausted

    @property
    def exhausted(self) -> bool:
        return self.failures >= self.max_failures


class IntervalTimer:
    """Runs ``callback`` every ``interval`` seconds without ever queueing ticks.

    A tick that comes due while the previous one is still running is skipped,
    so a slow request never builds a backlog. Errors escaping the callback are
    logged and the timer keeps going.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "timer",
        backoff: Optional[PollBackoff] = None,
        run_immediately: bool = True,
    ):
        self.interval = interval
        self.callback = callback
        self.name = name
        self.backoff = backoff
        self.run_immediately = run_immediately
        self.skipped = 0
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    def stop(self):
        # callable from inside the callback itself; never cancels the caller
        current = asyncio.current_task()
        for task in (self._task, self._inflight):
            if task is not None and not task.done() and task is not current:
                task.cancel()
        self._task = None

    def _next_delay(self) -> float:
        return self.backoff.delay(self.interval) if self.backoff else self.interval

    async def _run(self):
        first = True
        while True:
            if not (first and self.run_immediately):
                await asyncio.sleep(self._next_delay())
            first = False
            if self._inflight is not None and not self._inflight.done():
                self.skipped += 1
                continue
            self._inflight = asyncio.create_task(self._tick())

    async def _tick(self):
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{self.name} tick failed: {e}", exc_info=True)
