"""
Coalescing buffer for streamed text.

The first chunk of a message is delivered immediately so the user sees output
start; later chunks are batched and delivered at most once per interval.
"""

import asyncio
from typing import Callable, List, Optional


class StreamingBuffer:
    def __init__(self, on_flush: Callable[[str], None], interval: float = 0.016):
        self._on_flush = on_flush
        self._interval = interval
        self._pending: List[str] = []
        self._started = False
        self._handle: Optional[asyncio.TimerHandle] = None

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        self._pending.append(chunk)
        if not self._started:
            self._started = True
            self.flush()
            return
        if self._handle is None:
            self._handle = asyncio.get_running_loop().call_later(self._interval, self._on_timer)

    def _on_timer(self) -> None:
        self._handle = None
        self.flush()

    def flush(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._pending:
            return
        text = "".join(self._pending)
        self._pending.clear()
        self._on_flush(text)

    def reset(self) -> None:
        """Deliver anything pending and start a new message."""
        self.flush()
        self._started = False

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)
