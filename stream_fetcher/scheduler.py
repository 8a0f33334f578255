"""Request scheduler: FIFO admission with bounded concurrency and rate window"""

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Tuple, TypeVar

from loguru import logger

from .config import DEFAULT_CONCURRENCY
from .exceptions import FetchCancelledError, QueueTimeoutError

T = TypeVar("T")


class RequestScheduler:
    """
    Bounded-concurrency task queue.

    Tasks are admitted strictly in arrival order while fewer than
    ``concurrency`` are running and, when a rate window is configured, fewer
    than ``interval_cap`` were admitted in the current ``interval``. Each
    admitted task may be bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout: Optional[float] = None,
        interval_cap: Optional[int] = None,
        interval: Optional[float] = None,
    ):
        """
        Initialize scheduler.

        Args:
            concurrency: Maximum number of running tasks
            timeout: Optional per-task timeout in seconds
            interval_cap: Maximum admissions per rate window
            interval: Rate window length in seconds
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.timeout = timeout
        self.interval_cap = interval_cap if interval is not None else None
        self.interval = interval if interval_cap is not None else None

        self._queue: Deque[Tuple[asyncio.Future, float]] = deque()
        self._pending = 0
        self._paused = False
        self._window_start: Optional[float] = None
        self._window_count = 0
        self._wakeup: Optional[asyncio.TimerHandle] = None
        self._idle: Optional[asyncio.Event] = None

        logger.debug(
            f"Request scheduler initialized: concurrency={concurrency}, "
            f"timeout={timeout}, rate={self.interval_cap}/{self.interval}s"
        )

    @property
    def pending(self) -> int:
        """Number of running tasks"""
        return self._pending

    @property
    def size(self) -> int:
        """Number of queued tasks waiting for admission"""
        return len(self._queue)

    @property
    def queue_depth(self) -> int:
        return self._pending + len(self._queue)

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` once admitted.

        Raises:
            QueueTimeoutError: if the task exceeds the per-task timeout
            FetchCancelledError: if the task was dropped by ``clear()``
        """
        await self._admit()
        try:
            if self.timeout is None:
                return await operation()
            try:
                return await asyncio.wait_for(operation(), self.timeout)
            except asyncio.TimeoutError as e:
                logger.warning(f"Queued task exceeded {self.timeout}s timeout")
                raise QueueTimeoutError(
                    f"Task timed out after {self.timeout}s in request queue"
                ) from e
        finally:
            self._pending -= 1
            self._dispatch()
            self._check_idle()

    async def _admit(self) -> None:
        loop = asyncio.get_running_loop()
        if not self._queue and self._can_start(loop):
            self._start_one()
            return

        waiter = loop.create_future()
        self._queue.append((waiter, loop.time()))
        self._mark_busy()
        self._dispatch()
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Admitted just before the caller was cancelled
                self._pending -= 1
                self._dispatch()
            else:
                self._remove_waiter(waiter)
            self._check_idle()
            raise

    def _can_start(self, loop: asyncio.AbstractEventLoop) -> bool:
        if self._paused or self._pending >= self.concurrency:
            return False
        if self.interval_cap is None:
            return True
        now = loop.time()
        if self._window_start is None or now - self._window_start >= self.interval:
            self._window_start = now
            self._window_count = 0
        return self._window_count < self.interval_cap

    def _start_one(self) -> None:
        self._pending += 1
        self._window_count += 1
        self._mark_busy()

    def _dispatch(self) -> None:
        """Admit queued tasks in FIFO order while limits allow"""
        loop = asyncio.get_running_loop()
        while self._queue and self._can_start(loop):
            waiter, enqueued_at = self._queue.popleft()
            if waiter.done():
                continue
            self._start_one()
            waiter.set_result(None)
            logger.debug(f"Admitted task after {loop.time() - enqueued_at:.3f}s in queue")

        if (
            self._queue
            and not self._paused
            and self._pending < self.concurrency
            and self.interval_cap is not None
            and self._wakeup is None
        ):
            # Rate window exhausted: wake up when it rolls over
            delay = max(0.0, self._window_start + self.interval - loop.time())
            self._wakeup = loop.call_later(delay, self._on_window_rollover)

    def _on_window_rollover(self) -> None:
        self._wakeup = None
        self._dispatch()

    def _remove_waiter(self, waiter: asyncio.Future) -> None:
        for entry in self._queue:
            if entry[0] is waiter:
                self._queue.remove(entry)
                break

    def _mark_busy(self) -> None:
        if self._idle is not None:
            self._idle.clear()

    def _check_idle(self) -> None:
        if self._idle is not None and self.queue_depth == 0:
            self._idle.set()

    def pause(self) -> None:
        """Stop admitting queued tasks; running tasks continue"""
        if not self._paused:
            self._paused = True
            logger.info("Request scheduler paused")

    def start(self) -> None:
        """Resume admissions after ``pause()``"""
        if self._paused:
            self._paused = False
            logger.info("Request scheduler resumed")
            self._dispatch()

    resume = start

    def clear(self) -> None:
        """Drop queued tasks that have not started; their callers are cancelled"""
        dropped = 0
        while self._queue:
            waiter, _ = self._queue.popleft()
            if not waiter.done():
                waiter.set_exception(FetchCancelledError("Task cleared from request queue"))
                dropped += 1
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        if dropped:
            logger.info(f"Cleared {dropped} queued tasks")
        self._check_idle()

    async def on_idle(self) -> None:
        """Wait until no task is running or queued"""
        if self.queue_depth == 0:
            return
        if self._idle is None:
            self._idle = asyncio.Event()
        await self._idle.wait()
