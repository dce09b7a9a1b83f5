"""Shared fixtures for preview_plane unit tests."""

from __future__ import annotations

import asyncio

import pytest

from preview_plane.app.inmemory import InMemoryBranchService, InMemorySandboxService
from preview_plane.app.sessions.timers import TimerHandle


class ManualTimers:
    """TimerSource driven by the test.

    Delayed callbacks fire only on ``advance``; ``sleep`` just yields to the
    loop so poll loops run as fast as their checks answer.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self._scheduled: list[tuple[float, TimerHandle, object]] = []

    def call_later(self, delay, callback) -> TimerHandle:
        handle = TimerHandle()
        self._scheduled.append((self.now + delay, handle, callback))
        return handle

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = sorted(
            (item for item in self._scheduled if item[0] <= self.now),
            key=lambda item: item[0],
        )
        self._scheduled = [item for item in self._scheduled if item[0] > self.now]
        for _, handle, callback in due:
            if handle.pending:
                handle._fired = True
                callback()

    @property
    def pending(self) -> int:
        return sum(1 for _, handle, _ in self._scheduled if handle.pending)

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        await asyncio.sleep(0)

    def monotonic(self) -> float:
        return self.now


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0)


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def branch_service():
    return InMemoryBranchService(
        branches=[
            "roseram-edit-1690000000000-older1",
            "roseram-edit-1700000000000-newer1",
            "feature/unrelated",
        ],
    )


@pytest.fixture
def sandbox_service():
    return InMemorySandboxService()
