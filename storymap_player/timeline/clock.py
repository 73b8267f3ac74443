"""
Clock and cancellation primitives shared by the sequencer and scheduler.

All waiting goes through a Clock so playback can run against wall time in
production and against a manually advanced clock in tests.
"""

import asyncio
import time
from typing import Optional, Protocol


class Clock(Protocol):
    def now_ms(self) -> float:
        ...

    async def sleep(self, ms: float) -> None:
        ...


class SystemClock:
    """Wall-clock time (epoch milliseconds) with asyncio sleeps."""

    def now_ms(self) -> float:
        return time.time() * 1000

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(max(0.0, ms) / 1000)


class CancellationToken:
    """Captures an epoch; becomes cancelled once the epoch moves on."""

    __slots__ = ("_source", "epoch")

    def __init__(self, source: "SegmentEpoch", epoch: int):
        self._source = source
        self.epoch = epoch

    @property
    def cancelled(self) -> bool:
        return self._source.current != self.epoch

    def __repr__(self) -> str:
        return f"CancellationToken(epoch={self.epoch}, cancelled={self.cancelled})"


class SegmentEpoch:
    """
    Monotonic counter bumped on every reset.

    Async chains take a token when they start and compare it before each
    state-mutating step; a stale chain sees ``token.cancelled`` and stops.
    """

    def __init__(self):
        self.current = 0

    def advance(self) -> int:
        self.current += 1
        return self.current

    def token(self) -> CancellationToken:
        return CancellationToken(self, self.current)


def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel a pending timer task; a task never cancels itself."""
    if task is None or task.done():
        return
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    if task is not current:
        task.cancel()
