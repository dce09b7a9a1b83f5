"""Branch acquisition, preview provisioning and their orchestration."""

from .branch_acquisition import BRANCH_TIMEOUT_REASON, BranchAcquisition
from .events import EventBus, StateChangeEvent
from .model import (
    BranchSnapshot,
    BranchState,
    CommandResult,
    PreviewSnapshot,
    PreviewState,
    SessionKey,
    SessionSnapshot,
)
from .orchestrator import SessionOrchestrator
from .polling import PollOutcome, PollResult, run_poll_loop
from .preview_provisioning import (
    PROVISIONING_TIMEOUT_REASON,
    UNREACHABLE_REASON,
    PreviewProvisioning,
)
from .timers import AsyncioTimerSource, TimerHandle, TimerSource

__all__ = [
    "AsyncioTimerSource",
    "BRANCH_TIMEOUT_REASON",
    "BranchAcquisition",
    "BranchSnapshot",
    "BranchState",
    "CommandResult",
    "EventBus",
    "PROVISIONING_TIMEOUT_REASON",
    "PollOutcome",
    "PollResult",
    "PreviewProvisioning",
    "PreviewSnapshot",
    "PreviewState",
    "SessionKey",
    "SessionOrchestrator",
    "SessionSnapshot",
    "StateChangeEvent",
    "TimerHandle",
    "TimerSource",
    "UNREACHABLE_REASON",
    "run_poll_loop",
]
