"""Cooperative cancellation primitives for fetches and conversions.

A :class:`CancellationToken` fires once and notifies every registered
listener. :class:`LinkedCancellation` owns a token that fires when any parent
token fires or when its timer expires, and deregisters itself from the
parents when disposed. :meth:`CancellationToken.guard` races an awaitable
against the token so an in-flight call can be abandoned at its suspension
point.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from loguru import logger

from .exceptions import FetchCancelledError, FetchError
from .models import ErrorKind

T = TypeVar("T")

Listener = Callable[["CancellationToken"], None]


class CancellationToken:
    """Fire-once cancellation signal with multiple listeners"""

    def __init__(self) -> None:
        self._reason: Optional[ErrorKind] = None
        self._listeners: List[Listener] = []
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[ErrorKind]:
        """Why the token fired: CANCELLED, or NETWORK_TIMEOUT for deadlines"""
        return self._reason

    def cancel(self, reason: ErrorKind = ErrorKind.CANCELLED) -> None:
        if self._reason is not None:
            return
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(self)
        if self._event is not None:
            self._event.set()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that removes it.

        A listener added after the token fired is invoked immediately.
        """
        if self._reason is not None:
            listener(self)
            return lambda: None
        self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._reason is not None:
                self._event.set()
        await self._event.wait()

    def error(self, url: Optional[str] = None) -> FetchError:
        """The classified error matching this token's reason"""
        suffix = f" for {url}" if url else ""
        if self._reason is ErrorKind.NETWORK_TIMEOUT:
            return FetchError(
                f"Request timed out{suffix}", ErrorKind.NETWORK_TIMEOUT, url=url
            )
        return FetchCancelledError(f"Request aborted{suffix}", url=url)

    def raise_if_cancelled(self, url: Optional[str] = None) -> None:
        if self._reason is not None:
            raise self.error(url)

    async def guard(self, awaitable: Awaitable[T], url: Optional[str] = None) -> T:
        """
        Await ``awaitable`` unless this token fires first.

        When the token wins, the pending awaitable is cancelled and allowed to
        unwind before the token's error is raised.
        """
        if self._reason is not None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise self.error(url)

        task = asyncio.ensure_future(awaitable)
        fired = asyncio.get_running_loop().create_future()

        def on_cancel(_token: "CancellationToken") -> None:
            if not fired.done():
                fired.set_result(None)

        remove = self.add_listener(on_cancel)
        try:
            await asyncio.wait({task, fired}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            remove()
            if not fired.done():
                fired.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise self.error(url)


class LinkedCancellation:
    """
    Internally owned token fed by parent tokens and an optional deadline.

    Whichever source fires first wins. ``dispose()`` removes the listeners on
    the parents and cancels the timer so the losing sources hold no
    references.
    """

    def __init__(
        self,
        *parents: Optional[CancellationToken],
        timeout: Optional[float] = None,
    ):
        self.token = CancellationToken()
        self._removers: List[Callable[[], None]] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._disposed = False

        for parent in parents:
            if parent is None:
                continue
            self._removers.append(parent.add_listener(self._on_parent))

        if timeout is not None and not self.token.cancelled:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout, self._on_deadline, timeout)

    def _on_parent(self, parent: CancellationToken) -> None:
        self.token.cancel(parent.reason or ErrorKind.CANCELLED)

    def _on_deadline(self, timeout: float) -> None:
        self._timer = None
        logger.debug(f"Deadline of {timeout:.1f}s reached, cancelling")
        self.token.cancel(ErrorKind.NETWORK_TIMEOUT)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for remove in self._removers:
            remove()
        self._removers.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def __enter__(self) -> CancellationToken:
        return self.token

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()
