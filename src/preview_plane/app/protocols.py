"""Service protocol interfaces for dependency injection.

These protocols define the narrow request/response contracts to the two
external collaborators. Concrete implementations (InMemory for local dev,
GitHub/Sprites for non-local) must satisfy them; the orchestrator accepts
any implementation that matches.

Only opaque strings (branch names, remote instance ids) cross this boundary;
services never hold references back into orchestrator state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

# Normalized sandbox statuses. Anything else is passed through verbatim and
# treated as non-terminal.
STATUS_PENDING = "pending"
STATUS_PROVISIONING = "provisioning"
STATUS_RUNNING = "running"
STATUS_ERROR = "error"


@dataclass(frozen=True, slots=True)
class BranchInfo:
    """An existing branch offered to the user as a fallback."""

    name: str
    updated_at: datetime | None = None
    sha: str = ""
    protected: bool = False
    url: str = ""


@dataclass(frozen=True, slots=True)
class RepoInfo:
    """Repository metadata needed to pick a base ref."""

    owner: str
    repo: str
    default_branch: str
    private: bool = False
    url: str = ""


@dataclass(frozen=True, slots=True)
class InstanceStatus:
    """One reply from the sandbox provisioning service."""

    remote_id: str
    status: str
    url: str | None = None
    error_message: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    @property
    def is_error(self) -> bool:
        return self.status == STATUS_ERROR


@runtime_checkable
class BranchService(Protocol):
    """Git hosting operations used for working-branch acquisition."""

    async def create_branch(
        self, owner: str, repo: str, from_ref: str, branch_name: str,
    ) -> str: ...

    async def list_branches(
        self, owner: str, repo: str,
    ) -> list[BranchInfo]: ...

    async def get_repo_info(self, owner: str, repo: str) -> RepoInfo: ...


@runtime_checkable
class SandboxService(Protocol):
    """Ephemeral preview instance lifecycle."""

    async def create_instance(
        self, owner: str, repo: str, branch: str,
    ) -> InstanceStatus: ...

    async def get_status(self, remote_id: str) -> InstanceStatus: ...

    async def destroy_instance(self, remote_id: str) -> None: ...

    def preview_url(self, remote_id: str) -> str | None:
        """URL derivable from naming alone, or None if not constructible."""
        ...
