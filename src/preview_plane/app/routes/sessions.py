"""Session command, snapshot and event-stream API.

Drives the orchestrator for one session key, addressed as
``/api/v1/sessions/{project_id}/{owner}/{repo}``:

  GET  .../                  → current session snapshot
  POST .../branch            → acquire a working branch
  POST .../branch/select     → adopt an existing branch ``{name}``
  POST .../cancel            → cancel a pending branch acquisition
  POST .../activate          → make this the active session (repo switch)
  POST .../preview           → start the preview ``{branch?, restart?}``
  POST .../preview/stop      → stop the preview (best-effort destroy)
  POST .../preview/refresh   → ask consumers to reload the preview
  GET  .../events            → Server-Sent Events of session snapshots

Response contracts:
  - accepted commands return the session snapshot (200).
  - rejected commands return 409 with ``{error, detail, session}`` and
    leave state untouched.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..sessions.model import (
    BranchSnapshot,
    CommandResult,
    PreviewSnapshot,
    SessionKey,
    SessionSnapshot,
)
from ..sessions.orchestrator import SessionOrchestrator

SESSION_PATH = "/api/v1/sessions/{project_id}/{owner}/{repo}"


# ── Request schemas ───────────────────────────────────────────────────


class SelectBranchRequest(BaseModel):
    name: str = Field(min_length=1, description="Existing branch to adopt.")


class StartPreviewRequest(BaseModel):
    branch: str | None = Field(
        default=None,
        description="Branch to preview. Defaults to the acquired working branch.",
    )
    restart: bool = Field(
        default=False,
        description="Start again from error/stopped.",
    )


class PreviewTargetRequest(BaseModel):
    branch: str | None = None


# ── Response helpers ──────────────────────────────────────────────────


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _branch_response(branch: BranchSnapshot) -> dict:
    return {
        "state": branch.state.value,
        "branch_name": branch.branch_name,
        "reason": branch.reason,
        "slow": branch.slow,
        "existing_branches": [
            {
                "name": info.name,
                "updated_at": _iso(info.updated_at),
                "sha": info.sha,
                "protected": info.protected,
                "url": info.url,
            }
            for info in branch.existing_branches
        ],
        "generation": branch.generation,
        "attempt_started_at": _iso(branch.attempt_started_at),
        "timeout_at": _iso(branch.timeout_at),
        "updated_at": _iso(branch.updated_at),
    }


def _preview_response(preview: PreviewSnapshot | None) -> dict | None:
    if preview is None:
        return None
    return {
        "branch": preview.branch,
        "state": preview.state.value,
        "remote_id": preview.remote_id,
        "url": preview.url,
        "message": preview.message,
        "poll_attempt": preview.poll_attempt,
        "transport_failures": preview.transport_failures,
        "assumed_ready": preview.assumed_ready,
        "refresh_count": preview.refresh_count,
        "generation": preview.generation,
        "started_at": _iso(preview.started_at),
        "updated_at": _iso(preview.updated_at),
    }


def session_response(session: SessionSnapshot) -> dict:
    """JSON payload for one session snapshot."""
    key = session.key
    return {
        "project_id": key.project_id,
        "owner": key.owner,
        "repo": key.repo,
        "active": session.active,
        "branch": _branch_response(session.branch),
        "preview": _preview_response(session.preview),
    }


def _command_response(result: CommandResult):
    if not result.accepted:
        return JSONResponse(
            status_code=409,
            content={
                "error": "command_rejected",
                "detail": result.detail,
                "session": session_response(result.session),
            },
        )
    payload = session_response(result.session)
    if result.detail:
        payload["detail"] = result.detail
    return payload


def _invalid_key(exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_session_key", "detail": str(exc)},
    )


async def session_event_stream(
    orchestrator: SessionOrchestrator,
    key: SessionKey,
) -> AsyncIterator[str]:
    """SSE frames: the current snapshot, then one frame per transition."""
    events = orchestrator.stream(key)
    try:
        initial = orchestrator.snapshot(key)
        yield _sse_frame(session_response(initial), event_id=0)
        async for event in events:
            yield _sse_frame(session_response(event.session), event_id=event.sequence)
    finally:
        await events.aclose()


def _sse_frame(payload: dict, *, event_id: int) -> str:
    return f"id: {event_id}\nevent: session\ndata: {json.dumps(payload)}\n\n"


# ── Route factory ─────────────────────────────────────────────────────


def create_session_router(orchestrator: SessionOrchestrator) -> APIRouter:
    """Create the session command router.

    Args:
        orchestrator: The process-wide session orchestrator.

    Returns:
        FastAPI router with session snapshot, command and event endpoints.
    """
    router = APIRouter(tags=["sessions"])

    @router.get(SESSION_PATH)
    async def get_session(project_id: str, owner: str, repo: str):
        """Current branch and preview state for one session."""
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        return session_response(orchestrator.snapshot(key))

    @router.post(f"{SESSION_PATH}/branch")
    async def acquire_branch(project_id: str, owner: str, repo: str):
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        return _command_response(await orchestrator.acquire_branch(key))

    @router.post(f"{SESSION_PATH}/branch/select")
    async def select_existing_branch(
        project_id: str,
        owner: str,
        repo: str,
        body: SelectBranchRequest,
    ):
        """Adopt an existing branch instead of waiting for the create call."""
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        return _command_response(
            await orchestrator.select_existing_branch(key, body.name),
        )

    @router.post(f"{SESSION_PATH}/cancel")
    async def cancel(project_id: str, owner: str, repo: str):
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        return _command_response(await orchestrator.cancel(key))

    @router.post(f"{SESSION_PATH}/activate")
    async def activate(project_id: str, owner: str, repo: str):
        """Switch the active session to this repository."""
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        return _command_response(await orchestrator.activate(key))

    @router.post(f"{SESSION_PATH}/preview")
    async def start_preview(
        project_id: str,
        owner: str,
        repo: str,
        body: StartPreviewRequest | None = None,
    ):
        """Start the preview, or return the one already in flight."""
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        body = body or StartPreviewRequest()
        return _command_response(
            await orchestrator.start_preview(key, body.branch, restart=body.restart),
        )

    @router.post(f"{SESSION_PATH}/preview/stop")
    async def stop_preview(
        project_id: str,
        owner: str,
        repo: str,
        body: PreviewTargetRequest | None = None,
    ):
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        branch = body.branch if body else None
        return _command_response(await orchestrator.stop_preview(key, branch))

    @router.post(f"{SESSION_PATH}/preview/refresh")
    async def refresh_preview(
        project_id: str,
        owner: str,
        repo: str,
        body: PreviewTargetRequest | None = None,
    ):
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        branch = body.branch if body else None
        return _command_response(await orchestrator.refresh(key, branch))

    @router.get(f"{SESSION_PATH}/events")
    async def session_events(project_id: str, owner: str, repo: str):
        """Stream session snapshots as Server-Sent Events."""
        try:
            key = SessionKey(project_id, owner, repo)
        except ValueError as exc:
            return _invalid_key(exc)
        return StreamingResponse(
            session_event_stream(orchestrator, key),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return router
