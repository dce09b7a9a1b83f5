"""Shared polling primitive.

A poll loop issues one check per interval, strictly serialized: the next
tick is not scheduled until the previous check has returned and its result
has been applied. Two budgets bound the loop:

  - ``max_attempts``: checks that returned a non-terminal answer.
  - ``max_transport_failures``: consecutive checks that failed at the
    network level. These never count toward ``max_attempts``.

Authoritative check errors propagate to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from ..errors import describe_error, is_transient
from .timers import TimerSource

logger = logging.getLogger(__name__)


class PollOutcome(Enum):
    """Why a poll loop ended."""

    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True, slots=True)
class PollResult:
    """One status round trip."""

    attempt_number: int
    elapsed: float
    result_status: str


# A check receives the 1-based tick number and returns True once the
# polled resource reached a terminal state (or polling should stop).
StatusCheck = Callable[[int], Awaitable[bool]]
TransportFailureHook = Callable[[BaseException, int], None]


async def run_poll_loop(
    check: StatusCheck,
    *,
    timers: TimerSource,
    interval: float,
    max_attempts: int,
    max_transport_failures: int,
    on_transport_failure: TransportFailureHook | None = None,
) -> PollOutcome:
    """Poll until ``check`` reports completion or a budget runs out."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempts = 0
    consecutive_failures = 0
    tick = 0
    while True:
        await timers.sleep(interval)
        tick += 1
        try:
            done = await check(tick)
        except Exception as exc:
            if not is_transient(exc):
                raise
            consecutive_failures += 1
            logger.warning(
                "Poll tick %d failed at transport level (%d consecutive): %s",
                tick,
                consecutive_failures,
                describe_error(exc),
            )
            if on_transport_failure is not None:
                on_transport_failure(exc, consecutive_failures)
            if consecutive_failures >= max_transport_failures:
                return PollOutcome.UNREACHABLE
            continue

        consecutive_failures = 0
        if done:
            return PollOutcome.COMPLETED
        attempts += 1
        if attempts >= max_attempts:
            return PollOutcome.EXHAUSTED
