"""Session keys and immutable state snapshots.

Snapshots are frozen so consumers (event subscribers, the HTTP surface) can
hold them without seeing later mutation. The state machines replace their
snapshot wholesale on every transition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..protocols import BranchInfo


def utcnow() -> datetime:
    """UTC-aware now for state transitions."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SessionKey:
    """Identifies one logical workspace: a project editing one repository."""

    project_id: str
    owner: str
    repo: str

    def __post_init__(self) -> None:
        for label in ("project_id", "owner", "repo"):
            if not getattr(self, label).strip():
                raise ValueError(f"{label} must be non-empty")

    def __str__(self) -> str:
        return f"{self.project_id}:{self.owner}/{self.repo}"


class BranchState(Enum):
    """Lifecycle of a working-branch acquisition."""

    IDLE = "idle"
    REQUESTING = "requesting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    AWAITING_USER_CHOICE = "awaiting_user_choice"


class PreviewState(Enum):
    """Lifecycle of a preview sandbox."""

    NOT_STARTED = "not_started"
    LAUNCHING = "launching"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    ERROR = "error"
    STOPPED = "stopped"


# Branch acquisition states that still have work (or a user decision) pending.
BRANCH_PENDING_STATES = frozenset({
    BranchState.REQUESTING,
    BranchState.FAILED,
    BranchState.AWAITING_USER_CHOICE,
})

# Preview states for which StartPreview returns the existing session.
PREVIEW_LIVE_STATES = frozenset({
    PreviewState.LAUNCHING,
    PreviewState.PROVISIONING,
    PreviewState.RUNNING,
})

PREVIEW_TERMINAL_STATES = frozenset({
    PreviewState.ERROR,
    PreviewState.STOPPED,
})


@dataclass(frozen=True, slots=True)
class BranchSnapshot:
    """State of the branch acquisition for one session key.

    Attributes:
        state: Current lifecycle state.
        branch_name: Set once ``succeeded``.
        reason: Verbatim failure reason once ``failed``.
        existing_branches: Fallback candidates for the user.
        slow: The grace timer fired while the create call was pending.
        generation: Epoch counter; async results from older epochs are dropped.
    """

    key: SessionKey
    state: BranchState = BranchState.IDLE
    branch_name: str | None = None
    reason: str | None = None
    existing_branches: tuple[BranchInfo, ...] = ()
    slow: bool = False
    generation: int = 0
    attempt_started_at: datetime | None = None
    timeout_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def accepts_selection(self) -> bool:
        """Whether ``select_existing`` is currently allowed.

        While the create call is still pending this needs the slow signal and
        the fetched fallback list.
        """
        if self.state is BranchState.AWAITING_USER_CHOICE:
            return True
        return (
            self.state is BranchState.REQUESTING
            and self.slow
            and bool(self.existing_branches)
        )


@dataclass(frozen=True, slots=True)
class PreviewSnapshot:
    """State of one preview sandbox for ``(key, branch)``."""

    key: SessionKey
    branch: str
    state: PreviewState = PreviewState.NOT_STARTED
    remote_id: str | None = None
    url: str | None = None
    message: str | None = None
    poll_attempt: int = 0
    poll_started_at: datetime | None = None
    transport_failures: int = 0
    assumed_ready: bool = False
    refresh_count: int = 0
    generation: int = 0
    started_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state in PREVIEW_TERMINAL_STATES

    @property
    def is_live(self) -> bool:
        return self.state in PREVIEW_LIVE_STATES


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Everything a consumer needs to render one session."""

    key: SessionKey
    branch: BranchSnapshot
    preview: PreviewSnapshot | None = None
    active: bool = False


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of an orchestrator command.

    Rejected commands leave state untouched; ``detail`` says why.
    """

    accepted: bool
    session: SessionSnapshot
    detail: str | None = None
