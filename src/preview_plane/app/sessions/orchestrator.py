"""Session orchestrator.

Composition root binding one branch acquisition and zero-or-one preview to
each ``SessionKey``. Guarantees:

  - single-flight: at most one branch create and one non-terminal preview
    per key; repeated commands return the existing state.
  - clean switching: activating another key cancels the previous key's
    pending branch acquisition. Its preview keeps running in the background
    until the session is evicted from the bounded retention list.
  - every transition is published on the event bus as a full snapshot.

Commands never raise service errors; they return a ``CommandResult``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from ..observability.logging import bind_session_key
from ..observability.metrics import LIVE_SESSIONS
from ..protocols import BranchService, SandboxService
from ..settings import PreviewPlaneSettings
from .branch_acquisition import BranchAcquisition
from .events import EventBus, StateChangeEvent, Subscriber
from .model import (
    BranchSnapshot,
    CommandResult,
    SessionKey,
    SessionSnapshot,
)
from .preview_provisioning import PreviewProvisioning
from .tasks import BackgroundTasks
from .timers import AsyncioTimerSource, TimerSource

logger = logging.getLogger(__name__)


@dataclass
class _SessionEntry:
    key: SessionKey
    branch: BranchAcquisition
    preview: PreviewProvisioning | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionOrchestrator:
    """Owns every live branch acquisition and preview, indexed by key."""

    def __init__(
        self,
        *,
        branch_service: BranchService,
        sandbox_service: SandboxService,
        settings: PreviewPlaneSettings | None = None,
        timers: TimerSource | None = None,
        events: EventBus | None = None,
        branch_namer: Callable[[], str] | None = None,
    ) -> None:
        self._branch_service = branch_service
        self._sandbox_service = sandbox_service
        self._settings = settings or PreviewPlaneSettings()
        self._timers = timers or AsyncioTimerSource()
        self._events = events or EventBus()
        self._branch_namer = branch_namer
        # Ordered least to most recently active.
        self._sessions: OrderedDict[SessionKey, _SessionEntry] = OrderedDict()
        self._active_key: SessionKey | None = None
        self._cleanups = BackgroundTasks("session cleanup")

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def active_key(self) -> SessionKey | None:
        return self._active_key

    def keys(self) -> list[SessionKey]:
        return list(self._sessions)

    # ── Queries and subscriptions ────────────────────────────────

    def snapshot(self, key: SessionKey) -> SessionSnapshot:
        entry = self._sessions.get(key)
        if entry is None:
            return SessionSnapshot(
                key=key,
                branch=BranchSnapshot(key=key),
                active=key == self._active_key,
            )
        return self._session_snapshot(entry)

    def subscribe(
        self,
        callback: Subscriber,
        key: SessionKey | None = None,
    ) -> Callable[[], None]:
        return self._events.subscribe(callback, key=key)

    def stream(self, key: SessionKey | None = None) -> AsyncIterator[StateChangeEvent]:
        return self._events.stream(key)

    # ── Branch commands ──────────────────────────────────────────

    async def acquire_branch(self, key: SessionKey) -> CommandResult:
        entry = await self._get_or_create(key)
        async with entry.lock:
            accepted = entry.branch.acquire()
        if accepted:
            return self._result(entry, True)
        state = entry.branch.snapshot.state.value
        return self._result(entry, False, f"branch acquisition already {state}")

    async def select_existing_branch(self, key: SessionKey, name: str) -> CommandResult:
        entry = self._sessions.get(key)
        if entry is None:
            return self._rejected(key, "no branch acquisition for this session")
        async with entry.lock:
            accepted = entry.branch.select_existing(name)
        if accepted:
            return self._result(entry, True)
        snapshot = entry.branch.snapshot
        if not (name or "").strip():
            detail = "branch name is required"
        else:
            detail = f"cannot select an existing branch while {snapshot.state.value}"
        logger.info(
            "Rejected branch selection %r: %s",
            name,
            detail,
            extra={"session_key": str(key)},
        )
        return self._result(entry, False, detail)

    async def cancel(self, key: SessionKey) -> CommandResult:
        entry = self._sessions.get(key)
        if entry is None:
            return self._rejected(key, "nothing to cancel")
        async with entry.lock:
            accepted = entry.branch.cancel()
        if accepted:
            return self._result(entry, True)
        return self._result(entry, False, "nothing to cancel")

    # ── Preview commands ─────────────────────────────────────────

    async def start_preview(
        self,
        key: SessionKey,
        branch: str | None = None,
        *,
        restart: bool = False,
    ) -> CommandResult:
        """Start (or return) the preview for ``branch``.

        ``branch`` defaults to the acquired working branch. A preview in
        ``error``/``stopped`` is only started again with ``restart=True``.
        """
        entry = await self._get_or_create(key)
        async with entry.lock:
            branch = (branch or "").strip() or entry.branch.snapshot.branch_name
            if not branch:
                return self._result(entry, False, "no working branch acquired")

            preview = entry.preview
            if preview is not None and preview.branch != branch:
                await self._replace_preview(entry, branch)
                preview = None

            if preview is None:
                preview = self._new_preview(key, branch)
                entry.preview = preview

            current = preview.snapshot
            state = current.state
            if current.is_live:
                return self._result(entry, True, f"preview already {state.value}")
            if current.is_terminal:
                if not restart:
                    return self._result(
                        entry, False, f"preview is {state.value}; restart required",
                    )
                preview.reset()
            preview.start()
        return self._result(entry, True)

    async def stop_preview(self, key: SessionKey, branch: str | None = None) -> CommandResult:
        entry = self._sessions.get(key)
        if entry is None or entry.preview is None:
            return self._rejected(key, "no preview to stop")
        async with entry.lock:
            preview = entry.preview
            if preview is None or (branch and preview.branch != branch):
                return self._result(entry, False, f"no preview for branch {branch}")
            with bind_session_key(key):
                preview.stop()
        return self._result(entry, True)

    async def refresh(self, key: SessionKey, branch: str | None = None) -> CommandResult:
        entry = self._sessions.get(key)
        if entry is None or entry.preview is None:
            return self._rejected(key, "no preview to refresh")
        preview = entry.preview
        if branch and preview.branch != branch:
            return self._result(entry, False, f"no preview for branch {branch}")
        if preview.refresh():
            return self._result(entry, True)
        state = preview.snapshot.state.value
        return self._result(entry, False, f"preview is {state}, not running")

    # ── Session lifecycle ────────────────────────────────────────

    async def activate(self, key: SessionKey) -> CommandResult:
        """Make ``key`` the active session (repository switch)."""
        previous_key = self._active_key
        entry = await self._get_or_create(key)
        self._sessions.move_to_end(key)
        if previous_key == key:
            return self._result(entry, True)

        self._active_key = key
        if previous_key is not None and previous_key in self._sessions:
            # The previous session is now the most recently used inactive one.
            self._sessions.move_to_end(previous_key)
        previous = self._sessions.get(previous_key) if previous_key else None
        if previous is not None:
            async with previous.lock:
                if previous.branch.cancel():
                    logger.info(
                        "Cancelled pending branch acquisition on switch to %s",
                        key,
                        extra={"session_key": str(previous_key)},
                    )
            self._emit(previous_key)

        self._emit(key)
        await self._enforce_retention()
        return self._result(entry, True)

    async def teardown(self, key: SessionKey) -> bool:
        """Stop the session's preview and forget the session."""
        entry = self._sessions.pop(key, None)
        if entry is None:
            return False
        LIVE_SESSIONS.set(len(self._sessions))
        if self._active_key == key:
            self._active_key = None
        async with entry.lock:
            with bind_session_key(key):
                if entry.preview is not None:
                    entry.preview.stop()
                    await entry.preview.close()
                    self._track_cleanup(entry.preview)
                await entry.branch.close()
        logger.info("Session torn down", extra={"session_key": str(key)})
        return True

    async def close(self) -> None:
        """Tear down every session and wait for the pending destroys (shutdown)."""
        for key in list(self._sessions):
            await self.teardown(key)
        await self._cleanups.wait()

    # ── Internals ────────────────────────────────────────────────

    async def _get_or_create(self, key: SessionKey) -> _SessionEntry:
        entry = self._sessions.get(key)
        if entry is not None:
            return entry

        settings = self._settings
        branch_kwargs = {}
        if self._branch_namer is not None:
            branch_kwargs["branch_namer"] = self._branch_namer
        entry = _SessionEntry(
            key=key,
            branch=BranchAcquisition(
                key,
                service=self._branch_service,
                timers=self._timers,
                on_change=lambda _snapshot: self._emit(key),
                grace_seconds=settings.branch_grace_seconds,
                timeout_seconds=settings.branch_timeout_seconds,
                base_ref=settings.github_base_ref,
                **branch_kwargs,
            ),
        )
        self._sessions[key] = entry
        LIVE_SESSIONS.set(len(self._sessions))
        logger.debug("Session created", extra={"session_key": str(key)})
        await self._enforce_retention(keep=key)
        return entry

    def _new_preview(self, key: SessionKey, branch: str) -> PreviewProvisioning:
        settings = self._settings
        return PreviewProvisioning(
            key,
            branch,
            service=self._sandbox_service,
            timers=self._timers,
            on_change=lambda _snapshot: self._emit(key),
            poll_interval=settings.poll_interval_seconds,
            max_poll_attempts=settings.max_poll_attempts,
            max_transport_failures=settings.max_transport_failures,
            assume_ready_on_timeout=settings.assume_ready_on_timeout,
        )

    async def _replace_preview(self, entry: _SessionEntry, branch: str) -> None:
        old = entry.preview
        logger.info(
            "Replacing preview for %s with %s",
            old.branch,
            branch,
            extra={"session_key": str(entry.key)},
        )
        with bind_session_key(entry.key):
            old.stop()
        await old.close()
        self._track_cleanup(old)
        entry.preview = None

    def _track_cleanup(self, preview: PreviewProvisioning) -> None:
        # Destroys run outside the session lock; shutdown waits for them.
        self._cleanups.spawn(
            preview.wait_for_cleanup(), name=f"cleanup-{preview.key}",
        )

    async def _enforce_retention(self, keep: SessionKey | None = None) -> None:
        """Evict least recently used inactive sessions beyond the bound.

        ``keep`` is exempt so a session created by the current command
        survives even with a retention limit of zero.
        """
        limit = self._settings.max_retained_sessions
        inactive = [key for key in self._sessions if key != self._active_key]
        excess = len(inactive) - limit
        candidates = [key for key in inactive if key != keep]
        for key in candidates[:max(excess, 0)]:
            logger.info(
                "Evicting inactive session (retention limit %d)",
                limit,
                extra={"session_key": str(key)},
            )
            await self.teardown(key)

    def _session_snapshot(self, entry: _SessionEntry) -> SessionSnapshot:
        return SessionSnapshot(
            key=entry.key,
            branch=entry.branch.snapshot,
            preview=entry.preview.snapshot if entry.preview is not None else None,
            active=entry.key == self._active_key,
        )

    def _emit(self, key: SessionKey) -> None:
        entry = self._sessions.get(key)
        if entry is None:
            return
        self._events.publish(self._session_snapshot(entry))

    def _result(
        self,
        entry: _SessionEntry,
        accepted: bool,
        detail: str | None = None,
    ) -> CommandResult:
        return CommandResult(
            accepted=accepted,
            session=self._session_snapshot(entry),
            detail=detail,
        )

    def _rejected(self, key: SessionKey, detail: str) -> CommandResult:
        return CommandResult(accepted=False, session=self.snapshot(key), detail=detail)
