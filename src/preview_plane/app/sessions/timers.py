"""Clock/timer source for the state machines.

Every timer is cancelable and cancellation is idempotent: cancelling a timer
that already fired or was already cancelled is a no-op.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Protocol


class TimerHandle:
    """Cancelable handle to one delayed callback."""

    __slots__ = ("_handle", "_fired", "_cancelled")

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self._fired = False
        self._cancelled = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        return not (self._fired or self._cancelled)

    def cancel(self) -> None:
        if not self.pending:
            return
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()


class TimerSource(Protocol):
    """Delayed callbacks, sleeps and a monotonic clock."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    async def sleep(self, delay: float) -> None: ...

    def monotonic(self) -> float: ...


class AsyncioTimerSource:
    """TimerSource on the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = TimerHandle()

        def _fire() -> None:
            if timer.cancelled:
                return
            timer._fired = True
            callback()

        timer._handle = asyncio.get_running_loop().call_later(max(delay, 0.0), _fire)
        return timer

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0.0))

    def monotonic(self) -> float:
        return time.monotonic()
