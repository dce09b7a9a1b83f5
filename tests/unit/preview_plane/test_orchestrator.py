"""Tests for the session orchestrator: single flight, replacement,
repository switching, retention and event publication."""

from __future__ import annotations

import asyncio

import pytest

from preview_plane.app.providers.sprites_client import SpritesAPIError
from preview_plane.app.sessions.model import BranchState, PreviewState, SessionKey
from preview_plane.app.sessions.orchestrator import SessionOrchestrator
from preview_plane.app.settings import PreviewPlaneSettings

NEW_BRANCH = "roseram-edit-1710000000000-abc123"
KEY_B = SessionKey("proj-1", "acme", "backoffice")
KEY_C = SessionKey("proj-1", "acme", "docs")


@pytest.fixture
def orchestrator(branch_service, sandbox_service, timers):
    return SessionOrchestrator(
        branch_service=branch_service,
        sandbox_service=sandbox_service,
        settings=PreviewPlaneSettings(
            github_base_ref="main",
            poll_interval_seconds=5.0,
            max_retained_sessions=4,
        ),
        timers=timers,
        branch_namer=lambda: NEW_BRANCH,
    )


def _preview_state(orchestrator, key):
    preview = orchestrator.snapshot(key).preview
    return preview.state if preview else None


# ── Full flow ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_acquire_then_preview_reaches_running(
    orchestrator, session_key, sandbox_service, wait_until,
):
    events = []
    orchestrator.subscribe(events.append, key=session_key)

    result = await orchestrator.acquire_branch(session_key)
    assert result.accepted is True
    assert result.session.branch.state is BranchState.REQUESTING

    await wait_until(
        lambda: orchestrator.snapshot(session_key).branch.state is BranchState.SUCCEEDED,
    )
    result = await orchestrator.start_preview(session_key)
    assert result.accepted is True
    assert result.session.preview.branch == NEW_BRANCH

    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)
    snapshot = orchestrator.snapshot(session_key)
    assert snapshot.preview.url == sandbox_service.preview_url(snapshot.preview.remote_id)

    # Every event carries the full session snapshot.
    assert events[-1].session == snapshot
    assert [e.sequence for e in events] == sorted(e.sequence for e in events)


@pytest.mark.asyncio
async def test_start_preview_requires_a_branch(orchestrator, session_key):
    result = await orchestrator.start_preview(session_key)

    assert result.accepted is False
    assert result.detail == "no working branch acquired"
    assert result.session.preview is None


@pytest.mark.asyncio
async def test_concurrent_start_preview_creates_one_instance(
    orchestrator, session_key, sandbox_service, wait_until,
):
    gate = asyncio.Event()
    sandbox_service.create_gate = gate

    results = await asyncio.gather(
        orchestrator.start_preview(session_key, NEW_BRANCH),
        orchestrator.start_preview(session_key, NEW_BRANCH),
    )
    assert all(r.accepted for r in results)
    assert sorted(r.detail or "" for r in results) == ["", "preview already launching"]

    gate.set()
    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)
    again = await orchestrator.start_preview(session_key, NEW_BRANCH)
    assert again.detail == "preview already running"
    assert sandbox_service.count("create_instance") == 1


@pytest.mark.asyncio
async def test_concurrent_acquire_creates_one_branch(
    orchestrator, session_key, branch_service, wait_until,
):
    results = await asyncio.gather(
        orchestrator.acquire_branch(session_key),
        orchestrator.acquire_branch(session_key),
    )
    assert sorted(r.accepted for r in results) == [False, True]

    await wait_until(
        lambda: orchestrator.snapshot(session_key).branch.state is BranchState.SUCCEEDED,
    )
    assert branch_service.count("create_branch") == 1


@pytest.mark.asyncio
async def test_preview_for_another_branch_replaces_the_current_one(
    orchestrator, session_key, sandbox_service, wait_until,
):
    await orchestrator.start_preview(session_key, "feature-a")
    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)
    old_id = orchestrator.snapshot(session_key).preview.remote_id

    result = await orchestrator.start_preview(session_key, "feature-b")
    assert result.accepted is True
    assert result.session.preview.branch == "feature-b"
    await wait_until(lambda: ("destroy_instance", old_id) in sandbox_service.calls)

    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)
    assert list(sandbox_service.instances) == [
        orchestrator.snapshot(session_key).preview.remote_id,
    ]


@pytest.mark.asyncio
async def test_restart_required_after_error(
    orchestrator, session_key, sandbox_service, wait_until,
):
    sandbox_service.create_error = SpritesAPIError(500, "boom")
    await orchestrator.start_preview(session_key, NEW_BRANCH)
    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.ERROR)

    sandbox_service.create_error = None
    rejected = await orchestrator.start_preview(session_key, NEW_BRANCH)
    assert rejected.accepted is False
    assert rejected.detail == "preview is error; restart required"

    restarted = await orchestrator.start_preview(session_key, NEW_BRANCH, restart=True)
    assert restarted.accepted is True
    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)


@pytest.mark.asyncio
async def test_stop_and_refresh(orchestrator, session_key, sandbox_service, wait_until):
    assert (await orchestrator.refresh(session_key)).accepted is False
    assert (await orchestrator.stop_preview(session_key)).accepted is False

    await orchestrator.start_preview(session_key, NEW_BRANCH)
    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)

    refreshed = await orchestrator.refresh(session_key)
    assert refreshed.accepted is True
    assert refreshed.session.preview.refresh_count == 1

    wrong_branch = await orchestrator.stop_preview(session_key, "other")
    assert wrong_branch.accepted is False

    stopped = await orchestrator.stop_preview(session_key)
    assert stopped.accepted is True
    assert stopped.session.preview.state is PreviewState.STOPPED
    await wait_until(lambda: sandbox_service.count("destroy_instance") == 1)


@pytest.mark.asyncio
async def test_slow_destroy_does_not_block_session_commands(
    orchestrator, session_key, sandbox_service, wait_until,
):
    await orchestrator.start_preview(session_key, NEW_BRANCH)
    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)
    old_id = orchestrator.snapshot(session_key).preview.remote_id
    sandbox_service.destroy_gate = asyncio.Event()

    stopped = await asyncio.wait_for(orchestrator.stop_preview(session_key), timeout=1.0)
    acquired = await asyncio.wait_for(orchestrator.acquire_branch(session_key), timeout=1.0)
    restarted = await asyncio.wait_for(
        orchestrator.start_preview(session_key, NEW_BRANCH, restart=True), timeout=1.0,
    )
    replaced = await asyncio.wait_for(
        orchestrator.start_preview(session_key, "feature-b"), timeout=1.0,
    )

    assert stopped.accepted is True
    assert acquired.accepted is True
    assert restarted.accepted is True
    assert replaced.accepted is True
    assert replaced.session.preview.branch == "feature-b"
    assert old_id in sandbox_service.instances

    sandbox_service.destroy_gate.set()
    await wait_until(lambda: old_id not in sandbox_service.instances)


# ── Branch commands ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_select_and_cancel_without_session_are_rejected(orchestrator, session_key):
    selected = await orchestrator.select_existing_branch(session_key, "main")
    cancelled = await orchestrator.cancel(session_key)

    assert selected.accepted is False
    assert cancelled.accepted is False
    assert orchestrator.keys() == []


@pytest.mark.asyncio
async def test_select_rejected_from_wrong_state_leaves_state(
    orchestrator, session_key, branch_service, wait_until,
):
    branch_service.create_gate = asyncio.Event()
    await orchestrator.acquire_branch(session_key)

    result = await orchestrator.select_existing_branch(session_key, "main")
    assert result.accepted is False
    assert result.detail == "cannot select an existing branch while requesting"
    assert result.session.branch.state is BranchState.REQUESTING
    await orchestrator.close()


@pytest.mark.asyncio
async def test_cancel_pending_acquisition(
    orchestrator, session_key, branch_service, wait_until,
):
    gate = asyncio.Event()
    branch_service.create_gate = gate
    await orchestrator.acquire_branch(session_key)

    result = await orchestrator.cancel(session_key)
    assert result.accepted is True
    assert result.session.branch.state is BranchState.IDLE

    gate.set()
    await wait_until(lambda: branch_service.count("create_branch") == 1)
    for _ in range(5):
        await asyncio.sleep(0)
    assert orchestrator.snapshot(session_key).branch.state is BranchState.IDLE


# ── Switching and retention ──────────────────────────────────────


@pytest.mark.asyncio
async def test_switching_cancels_previous_acquisition_but_keeps_preview(
    orchestrator, session_key, branch_service, sandbox_service, wait_until,
):
    await orchestrator.activate(session_key)
    await orchestrator.start_preview(session_key, "feature-a")
    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)

    branch_service.create_gate = asyncio.Event()
    await orchestrator.acquire_branch(session_key)

    result = await orchestrator.activate(KEY_B)
    assert result.session.active is True
    assert orchestrator.active_key == KEY_B

    previous = orchestrator.snapshot(session_key)
    assert previous.active is False
    assert previous.branch.state is BranchState.IDLE
    assert previous.preview.state is PreviewState.RUNNING
    assert sandbox_service.count("destroy_instance") == 0
    await orchestrator.close()


@pytest.mark.asyncio
async def test_lru_eviction_tears_down_least_recent_session(
    branch_service, sandbox_service, timers, session_key, wait_until,
):
    orchestrator = SessionOrchestrator(
        branch_service=branch_service,
        sandbox_service=sandbox_service,
        settings=PreviewPlaneSettings(max_retained_sessions=1),
        timers=timers,
    )
    await orchestrator.activate(session_key)
    await orchestrator.start_preview(session_key, "feature-a")
    await wait_until(lambda: _preview_state(orchestrator, session_key) is PreviewState.RUNNING)
    evicted_id = orchestrator.snapshot(session_key).preview.remote_id

    await orchestrator.activate(KEY_B)
    assert session_key in orchestrator.keys()

    await orchestrator.activate(KEY_C)
    assert session_key not in orchestrator.keys()
    assert set(orchestrator.keys()) == {KEY_B, KEY_C}
    assert orchestrator.snapshot(session_key).preview is None
    await wait_until(lambda: ("destroy_instance", evicted_id) in sandbox_service.calls)


@pytest.mark.asyncio
async def test_close_destroys_every_live_preview(
    orchestrator, session_key, sandbox_service, wait_until,
):
    await orchestrator.start_preview(session_key, "feature-a")
    await orchestrator.start_preview(KEY_B, "feature-b")
    await wait_until(lambda: len(sandbox_service.instances) == 2)
    await wait_until(lambda: _preview_state(orchestrator, KEY_B) is PreviewState.RUNNING)

    await orchestrator.close()

    assert sandbox_service.instances == {}
    assert orchestrator.keys() == []


@pytest.mark.asyncio
async def test_failing_subscriber_never_breaks_commands(
    orchestrator, session_key, wait_until,
):
    def broken(event):
        raise RuntimeError("consumer bug")

    orchestrator.subscribe(broken)
    result = await orchestrator.acquire_branch(session_key)

    assert result.accepted is True
    await wait_until(
        lambda: orchestrator.snapshot(session_key).branch.state is BranchState.SUCCEEDED,
    )
