"""
Timers, retry policy and task tracking.

All delays and intervals in the pipeline go through a ``BaseScheduler`` so
that components never own module-level timer handles and tests can drive
time by hand. Scheduler callbacks are plain callables; components that need
to do async work from a callback hand the coroutine to a ``TaskTracker``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)


class TimerHandle(ABC):
    """A pending one-shot or repeating timer."""

    @abstractmethod
    def cancel(self) -> None:
        pass

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        pass


class BaseScheduler(ABC):
    """Clock and timer abstraction."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        pass

    @abstractmethod
    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        pass


# =============================================================================
# ASYNCIO IMPLEMENTATION
# =============================================================================

class _AsyncioTimer(TimerHandle):

    def __init__(self) -> None:
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler(BaseScheduler):
    """Scheduler backed by the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _AsyncioTimer()

        def fire() -> None:
            timer._handle = None
            if not timer.cancelled:
                timer._cancelled = True
                _run_callback(callback)

        timer._handle = self.loop.call_later(delay, fire)
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _AsyncioTimer()

        def fire() -> None:
            if timer.cancelled:
                return
            # Re-armed before the callback runs
            timer._handle = self.loop.call_later(interval, fire)
            _run_callback(callback)

        timer._handle = self.loop.call_later(interval, fire)
        return timer


def _run_callback(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception:
        logger.exception("Timer callback failed")


# =============================================================================
# RETRY POLICY
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """
    Fixed-delay retry policy.

    Attributes:
        delay: Seconds to wait before every attempt
        max_attempts: Consecutive attempts allowed (None = retry forever)
    """
    delay: float = 5.0
    max_attempts: Optional[int] = None

    def next_delay(self, attempt: int) -> Optional[float]:
        """
        Delay before attempt number ``attempt`` (1-based), or None to give up.
        """
        if self.max_attempts is not None and attempt > self.max_attempts:
            return None
        return self.delay


# =============================================================================
# TASK TRACKING
# =============================================================================

class TaskTracker:
    """
    Owns the asyncio tasks a component spawns, so teardown can cancel them.
    """

    def __init__(self, name: str):
        self.name = name
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> Optional[asyncio.Task]:
        if self._closed:
            coro.close()
            return None
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] background task failed: {exc!r}", exc_info=exc)

    async def drain(self) -> None:
        """Wait until every spawned task (including ones spawned meanwhile) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
