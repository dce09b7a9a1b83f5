"""Preview sandbox provisioning state machine.

  not_started -> launching -> provisioning -> running
                           -> running
                           -> error
  (any) -> stopped

``error`` and ``stopped`` are terminal; leaving them requires ``reset``.
Once provisioning, the status endpoint is polled on a fixed cadence with one
outstanding request at a time. Transport failures have their own budget and
never count as provisioning attempts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable

from ..errors import describe_error
from ..observability.logging import bind_session_key
from ..observability.metrics import (
    PREVIEW_DESTROY_FAILURES_TOTAL,
    PREVIEW_POLL_TICKS_TOTAL,
    PREVIEW_TIME_TO_READY_SECONDS,
    PREVIEW_TRANSITIONS_TOTAL,
    STALE_RESULTS_DROPPED_TOTAL,
)
from ..protocols import (
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_PROVISIONING,
    STATUS_RUNNING,
    InstanceStatus,
    SandboxService,
)
from .model import (
    PreviewSnapshot,
    PreviewState,
    SessionKey,
    utcnow,
)
from .polling import PollOutcome, PollResult, run_poll_loop
from .tasks import BackgroundTasks
from .timers import TimerSource

logger = logging.getLogger(__name__)

PROVISIONING_FAILED_REASON = "provisioning failed"
PROVISIONING_TIMEOUT_REASON = "provisioning timeout"
UNREACHABLE_REASON = "status endpoint unreachable"

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_POLL_ATTEMPTS = 120
DEFAULT_MAX_TRANSPORT_FAILURES = 120

_TICK_LABELS = frozenset({STATUS_PENDING, STATUS_PROVISIONING, STATUS_RUNNING, STATUS_ERROR})


class PreviewProvisioning:
    """Provisioning lifecycle of one preview for ``(key, branch)``."""

    def __init__(
        self,
        key: SessionKey,
        branch: str,
        *,
        service: SandboxService,
        timers: TimerSource,
        on_change: Callable[[PreviewSnapshot], None],
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        max_transport_failures: int = DEFAULT_MAX_TRANSPORT_FAILURES,
        assume_ready_on_timeout: bool = False,
    ) -> None:
        self._service = service
        self._timers = timers
        self._on_change = on_change
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts
        self._max_transport_failures = max_transport_failures
        self._assume_ready_on_timeout = assume_ready_on_timeout
        self._snapshot = PreviewSnapshot(key=key, branch=branch)
        self._run_task: asyncio.Task | None = None
        self._started_monotonic: float | None = None
        self._tasks = BackgroundTasks(f"preview {key}@{branch}")
        self._cleanup = BackgroundTasks(f"preview cleanup {key}@{branch}")

    @property
    def key(self) -> SessionKey:
        return self._snapshot.key

    @property
    def branch(self) -> str:
        return self._snapshot.branch

    @property
    def snapshot(self) -> PreviewSnapshot:
        return self._snapshot

    # ── Commands ─────────────────────────────────────────────────

    def start(self) -> bool:
        """Launch the sandbox. Only valid from ``not_started``."""
        if self._snapshot.state is not PreviewState.NOT_STARTED:
            return False

        generation = self._snapshot.generation + 1
        self._started_monotonic = self._timers.monotonic()
        self._transition(
            state=PreviewState.LAUNCHING,
            generation=generation,
            started_at=utcnow(),
            message=None,
        )
        self._run_task = self._tasks.spawn(
            self._launch(generation), name=f"launch-preview-{generation}",
        )
        return True

    def stop(self) -> bool:
        """Stop from any state; the remote instance is destroyed in the background.

        The transition to ``stopped`` is applied immediately, so a slow or
        failing destroy never holds up the caller.
        """
        previous = self._snapshot
        if previous.state is PreviewState.STOPPED:
            return False

        # A launch in flight is left to finish: its result is stale and the
        # instance it created gets destroyed on arrival.
        if (
            previous.state is PreviewState.PROVISIONING
            and self._run_task is not None
            and not self._run_task.done()
        ):
            self._run_task.cancel()

        self._transition(
            state=PreviewState.STOPPED,
            generation=previous.generation + 1,
            remote_id=None,
            url=None,
        )
        if previous.remote_id:
            self._release(previous.remote_id)
        return True

    def refresh(self) -> bool:
        """Ask consumers to reload the running preview."""
        if self._snapshot.state is not PreviewState.RUNNING:
            return False
        self._transition(refresh_count=self._snapshot.refresh_count + 1)
        return True

    def reset(self) -> bool:
        """Return a finished preview to ``not_started`` so it can be started again."""
        previous = self._snapshot
        if previous.is_live:
            return False

        self._snapshot = PreviewSnapshot(
            key=previous.key,
            branch=previous.branch,
            generation=previous.generation + 1,
        )
        PREVIEW_TRANSITIONS_TOTAL.labels(state=PreviewState.NOT_STARTED.value).inc()
        self._on_change(self._snapshot)
        if previous.remote_id:
            self._release(previous.remote_id)
        return True

    async def close(self) -> None:
        """Cancel the launch and poll tasks; pending destroys keep running."""
        await self._tasks.cancel_all()

    async def wait_for_cleanup(self) -> None:
        await self._cleanup.wait()

    # ── Internals ────────────────────────────────────────────────

    def _transition(self, **changes) -> None:
        previous = self._snapshot.state
        self._snapshot = replace(self._snapshot, updated_at=utcnow(), **changes)
        if self._snapshot.state is not previous:
            PREVIEW_TRANSITIONS_TOTAL.labels(state=self._snapshot.state.value).inc()
            logger.info(
                "Preview %s -> %s",
                previous.value,
                self._snapshot.state.value,
                extra={
                    "session_key": str(self.key),
                    "branch": self.branch,
                    "remote_id": self._snapshot.remote_id,
                    "generation": self._snapshot.generation,
                },
            )
        self._on_change(self._snapshot)

    def _is_current(self, generation: int, operation: str) -> bool:
        if generation == self._snapshot.generation:
            return True
        STALE_RESULTS_DROPPED_TOTAL.labels(operation=operation).inc()
        logger.info(
            "Dropping %s result from generation %d (now %d)",
            operation,
            generation,
            self._snapshot.generation,
            extra={"session_key": str(self.key), "branch": self.branch},
        )
        return False

    async def _launch(self, generation: int) -> None:
        key = self.key
        with bind_session_key(key):
            try:
                status = await self._service.create_instance(
                    key.owner, key.repo, self.branch,
                )
            except Exception as exc:
                if self._is_current(generation, "create_instance"):
                    self._fail(describe_error(exc))
                return

            if not self._is_current(generation, "create_instance"):
                # Stopped while launching; nobody owns this instance now.
                if status.remote_id and status.remote_id != self._snapshot.remote_id:
                    self._release(status.remote_id)
                return

            if self._apply_status(status):
                return
            self._transition(
                state=PreviewState.PROVISIONING,
                remote_id=status.remote_id,
                poll_started_at=utcnow(),
            )
            await self._poll(generation)

    async def _poll(self, generation: int) -> None:
        try:
            outcome = await run_poll_loop(
                lambda tick: self._check_status(generation, tick),
                timers=self._timers,
                interval=self._poll_interval,
                max_attempts=self._max_poll_attempts,
                max_transport_failures=self._max_transport_failures,
                on_transport_failure=lambda exc, count: self._on_transport_failure(generation),
            )
        except Exception as exc:
            if self._is_current(generation, "get_status"):
                self._fail(describe_error(exc))
            return

        if outcome is PollOutcome.COMPLETED or not self._is_current(generation, "poll"):
            return
        if outcome is PollOutcome.EXHAUSTED:
            self._on_poll_budget_exhausted()
        else:
            self._fail(UNREACHABLE_REASON)

    async def _check_status(self, generation: int, tick: int) -> bool:
        if generation != self._snapshot.generation:
            return True
        remote_id = self._snapshot.remote_id
        status = await self._service.get_status(remote_id)
        if not self._is_current(generation, "get_status"):
            return True

        started = self._snapshot.poll_started_at or self._snapshot.updated_at
        result = PollResult(
            attempt_number=tick,
            elapsed=(utcnow() - started).total_seconds(),
            result_status=status.status,
        )
        label = status.status if status.status in _TICK_LABELS else "other"
        PREVIEW_POLL_TICKS_TOTAL.labels(result=label).inc()
        logger.debug(
            "Status poll %d for %s: %s after %.1fs",
            result.attempt_number,
            remote_id,
            result.result_status,
            result.elapsed,
        )

        if self._apply_status(status):
            return True
        self._transition(
            remote_id=status.remote_id or remote_id,
            poll_attempt=self._snapshot.poll_attempt + 1,
            transport_failures=0,
        )
        return False

    def _apply_status(self, status: InstanceStatus) -> bool:
        """Apply a terminal status; return False if still provisioning."""
        if status.is_running:
            url = status.url or self._service.preview_url(status.remote_id)
            if url:
                self._mark_running(status.remote_id, url)
                return True
            # Running without an address yet; keep polling.
            return False
        if status.is_error:
            self._fail(
                status.error_message or PROVISIONING_FAILED_REASON,
                remote_id=status.remote_id,
            )
            return True
        return False

    def _on_transport_failure(self, generation: int) -> None:
        PREVIEW_POLL_TICKS_TOTAL.labels(result="transport_error").inc()
        if generation != self._snapshot.generation:
            return
        self._transition(transport_failures=self._snapshot.transport_failures + 1)

    def _on_poll_budget_exhausted(self) -> None:
        remote_id = self._snapshot.remote_id
        url = None
        if self._assume_ready_on_timeout and remote_id:
            url = self._service.preview_url(remote_id)
        if not url:
            self._fail(PROVISIONING_TIMEOUT_REASON)
            return
        logger.warning(
            "Poll budget exhausted after %d attempts; assuming %s is ready",
            self._snapshot.poll_attempt,
            remote_id,
            extra={"session_key": str(self.key), "branch": self.branch},
        )
        self._mark_running(remote_id, url, assumed_ready=True)

    def _mark_running(self, remote_id: str, url: str, *, assumed_ready: bool = False) -> None:
        if self._started_monotonic is not None:
            PREVIEW_TIME_TO_READY_SECONDS.observe(
                self._timers.monotonic() - self._started_monotonic,
            )
        self._transition(
            state=PreviewState.RUNNING,
            remote_id=remote_id,
            url=url,
            message=None,
            assumed_ready=assumed_ready,
        )

    def _fail(self, message: str, *, remote_id: str | None = None) -> None:
        logger.warning(
            "Preview failed: %s",
            message,
            extra={"session_key": str(self.key), "branch": self.branch},
        )
        changes = {"state": PreviewState.ERROR, "message": message}
        if remote_id:
            changes["remote_id"] = remote_id
        self._transition(**changes)

    def _release(self, remote_id: str) -> None:
        self._cleanup.spawn(self._destroy(remote_id), name=f"destroy-{remote_id}")

    async def _destroy(self, remote_id: str) -> None:
        try:
            await self._service.destroy_instance(remote_id)
        except Exception as exc:
            PREVIEW_DESTROY_FAILURES_TOTAL.inc()
            logger.warning(
                "Destroying sandbox %s failed: %s",
                remote_id,
                describe_error(exc),
                extra={"session_key": str(self.key), "branch": self.branch},
            )
