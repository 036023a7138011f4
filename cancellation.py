"""
Cooperative cancellation token threaded through model calls, tool dispatch
and plan execution.

A controller owns exactly one signal. Once aborted a signal stays aborted;
resuming work means creating a new controller.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional


class AbortedError(Exception):
    """Raised when an awaited operation loses the race against its abort signal."""


class AbortSignal:
    def __init__(self):
        self._aborted = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None
        self._listeners: List[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._aborted:
                self._event.set()
        return self._event

    def add_listener(self, callback: Callable[[], None]) -> None:
        if self._aborted:
            callback()
        else:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _fire(self, reason: str) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            callback()

    def throw_if_aborted(self) -> None:
        if self._aborted:
            raise AbortedError(self._reason or "Aborted")

    async def wait(self) -> None:
        await self._get_event().wait()

    async def race(self, awaitable: Awaitable[Any]) -> Any:
        """Await *awaitable* unless the signal fires first, then raise AbortedError."""
        self.throw_if_aborted()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        raise AbortedError(self._reason or "Aborted")


class AbortController:
    def __init__(self):
        self.signal = AbortSignal()

    def abort(self, reason: str = "Aborted") -> None:
        self.signal._fire(reason)
