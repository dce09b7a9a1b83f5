"""Working-branch acquisition state machine.

Obtains a branch the editor can safely write to, created for this editing
session, without leaving the user stuck when creation stalls:

  idle -> requesting -> succeeded
                     -> failed -> awaiting_user_choice -> succeeded

While ``requesting``, a grace timer (3s by default) marks the attempt slow
and fetches existing branches so the user can pick one without waiting. The
create call itself is never cancelled; its result is simply ignored if a
terminal transition happened first.

Every async completion carries the generation it was started under. Any
transition that must invalidate in-flight work (select, cancel, reset) bumps
the generation, so late results are dropped on arrival.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Callable

from ..errors import describe_error
from ..github.branches import generate_working_branch_name
from ..observability.logging import bind_session_key
from ..observability.metrics import (
    BRANCH_SLOW_TOTAL,
    BRANCH_TRANSITIONS_TOTAL,
    STALE_RESULTS_DROPPED_TOTAL,
)
from ..protocols import BranchInfo, BranchService
from .model import (
    BRANCH_PENDING_STATES,
    BranchSnapshot,
    BranchState,
    SessionKey,
    utcnow,
)
from .tasks import BackgroundTasks
from .timers import TimerHandle, TimerSource

logger = logging.getLogger(__name__)

BRANCH_TIMEOUT_REASON = "branch creation timeout"

DEFAULT_GRACE_SECONDS = 3.0
DEFAULT_TIMEOUT_SECONDS = 60.0


class BranchAcquisition:
    """Branch acquisition for one session key.

    Commands (``acquire``, ``select_existing``, ``cancel``, ``reset``) are
    synchronous: they apply their transition immediately and return whether
    it was accepted. Network work runs in background tasks.
    """

    def __init__(
        self,
        key: SessionKey,
        *,
        service: BranchService,
        timers: TimerSource,
        on_change: Callable[[BranchSnapshot], None],
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_ref: str = "",
        branch_namer: Callable[[], str] = generate_working_branch_name,
    ) -> None:
        self._service = service
        self._timers = timers
        self._on_change = on_change
        self._grace_seconds = grace_seconds
        self._timeout_seconds = timeout_seconds
        self._base_ref = base_ref
        self._branch_namer = branch_namer
        self._snapshot = BranchSnapshot(key=key)
        self._grace_timer: TimerHandle | None = None
        self._timeout_timer: TimerHandle | None = None
        self._tasks = BackgroundTasks(f"branch {key}")

    @property
    def key(self) -> SessionKey:
        return self._snapshot.key

    @property
    def snapshot(self) -> BranchSnapshot:
        return self._snapshot

    # ── Commands ─────────────────────────────────────────────────

    def acquire(self) -> bool:
        """Start a branch create unless one is running or already succeeded."""
        if self._snapshot.state in (BranchState.REQUESTING, BranchState.SUCCEEDED):
            return False

        self._cancel_timers()
        generation = self._snapshot.generation + 1
        now = utcnow()
        timeout_at = None
        if self._timeout_seconds > 0:
            timeout_at = now + timedelta(seconds=self._timeout_seconds)

        self._transition(
            state=BranchState.REQUESTING,
            generation=generation,
            branch_name=None,
            reason=None,
            existing_branches=(),
            slow=False,
            attempt_started_at=now,
            timeout_at=timeout_at,
        )
        self._grace_timer = self._timers.call_later(
            self._grace_seconds, lambda: self._on_grace(generation),
        )
        if self._timeout_seconds > 0:
            self._timeout_timer = self._timers.call_later(
                self._timeout_seconds, lambda: self._on_timeout(generation),
            )
        self._tasks.spawn(
            self._create(generation), name=f"create-branch-{generation}",
        )
        return True

    def select_existing(self, name: str) -> bool:
        """Adopt an existing branch; first terminal transition wins."""
        name = (name or "").strip()
        if not name or not self._snapshot.accepts_selection:
            return False

        self._cancel_timers()
        self._transition(
            state=BranchState.SUCCEEDED,
            generation=self._snapshot.generation + 1,
            branch_name=name,
            reason=None,
            existing_branches=(),
            slow=False,
            timeout_at=None,
        )
        return True

    def cancel(self) -> bool:
        """Return to idle from any non-terminal state."""
        if self._snapshot.state not in BRANCH_PENDING_STATES:
            return False
        self.reset()
        return True

    def reset(self) -> None:
        """Back to idle from any state; pending results become stale."""
        self._cancel_timers()
        self._snapshot = BranchSnapshot(
            key=self._snapshot.key,
            generation=self._snapshot.generation + 1,
        )
        BRANCH_TRANSITIONS_TOTAL.labels(state=BranchState.IDLE.value).inc()
        self._on_change(self._snapshot)

    async def close(self) -> None:
        self._cancel_timers()
        await self._tasks.cancel_all()

    # ── Internals ────────────────────────────────────────────────

    def _transition(self, **changes) -> None:
        previous = self._snapshot.state
        self._snapshot = replace(self._snapshot, updated_at=utcnow(), **changes)
        if self._snapshot.state is not previous:
            BRANCH_TRANSITIONS_TOTAL.labels(state=self._snapshot.state.value).inc()
            logger.info(
                "Branch acquisition %s -> %s",
                previous.value,
                self._snapshot.state.value,
                extra={
                    "session_key": str(self.key),
                    "branch": self._snapshot.branch_name,
                    "generation": self._snapshot.generation,
                },
            )
        self._on_change(self._snapshot)

    def _is_requesting(self, generation: int, operation: str) -> bool:
        """True if a result from ``generation`` may still be applied."""
        if (
            generation == self._snapshot.generation
            and self._snapshot.state is BranchState.REQUESTING
        ):
            return True
        STALE_RESULTS_DROPPED_TOTAL.labels(operation=operation).inc()
        logger.info(
            "Dropping %s result from generation %d (now %d, state=%s)",
            operation,
            generation,
            self._snapshot.generation,
            self._snapshot.state.value,
            extra={"session_key": str(self.key)},
        )
        return False

    def _cancel_timers(self) -> None:
        for timer in (self._grace_timer, self._timeout_timer):
            if timer is not None:
                timer.cancel()
        self._grace_timer = None
        self._timeout_timer = None

    async def _create(self, generation: int) -> None:
        key = self.key
        with bind_session_key(key):
            try:
                from_ref = self._base_ref
                if not from_ref:
                    repo_info = await self._service.get_repo_info(key.owner, key.repo)
                    from_ref = repo_info.default_branch
                branch_name = await self._service.create_branch(
                    key.owner, key.repo, from_ref, self._branch_namer(),
                )
            except Exception as exc:
                if self._is_requesting(generation, "create_branch"):
                    await self._fail(generation, describe_error(exc))
                return

            if not self._is_requesting(generation, "create_branch"):
                return
            self._cancel_timers()
            self._transition(
                state=BranchState.SUCCEEDED,
                branch_name=branch_name,
                reason=None,
                existing_branches=(),
                slow=False,
                timeout_at=None,
            )

    async def _fail(self, generation: int, reason: str) -> None:
        """Record the failure, then offer existing branches."""
        if not self._is_requesting(generation, "fail"):
            return
        self._cancel_timers()
        logger.warning(
            "Branch acquisition failed: %s",
            reason,
            extra={"session_key": str(self.key)},
        )
        self._transition(state=BranchState.FAILED, reason=reason, timeout_at=None)

        existing = self._snapshot.existing_branches
        if not existing:
            existing = await self._fetch_existing()

        if (
            generation != self._snapshot.generation
            or self._snapshot.state is not BranchState.FAILED
        ):
            STALE_RESULTS_DROPPED_TOTAL.labels(operation="list_branches").inc()
            return
        self._transition(
            state=BranchState.AWAITING_USER_CHOICE,
            existing_branches=existing,
        )

    async def _fetch_existing(self) -> tuple[BranchInfo, ...]:
        key = self.key
        try:
            branches = await self._service.list_branches(key.owner, key.repo)
        except Exception as exc:
            logger.warning(
                "Listing existing branches failed: %s",
                describe_error(exc),
                extra={"session_key": str(key)},
            )
            return ()
        return tuple(branches)

    def _on_grace(self, generation: int) -> None:
        if (
            generation != self._snapshot.generation
            or self._snapshot.state is not BranchState.REQUESTING
        ):
            return
        BRANCH_SLOW_TOTAL.inc()
        logger.info(
            "Branch create still pending after %.1fs; fetching existing branches",
            self._grace_seconds,
            extra={"session_key": str(self.key)},
        )
        self._transition(slow=True)
        self._tasks.spawn(
            self._fetch_fallback(generation), name=f"list-branches-{generation}",
        )

    async def _fetch_fallback(self, generation: int) -> None:
        with bind_session_key(self.key):
            existing = await self._fetch_existing()
            if self._is_requesting(generation, "list_branches"):
                self._transition(existing_branches=existing)

    def _on_timeout(self, generation: int) -> None:
        if (
            generation != self._snapshot.generation
            or self._snapshot.state is not BranchState.REQUESTING
        ):
            return
        self._tasks.spawn(
            self._fail(generation, BRANCH_TIMEOUT_REASON),
            name=f"branch-timeout-{generation}",
        )
