"""In-memory service implementations for local development and tests.

These are used when ENVIRONMENT=local and no tokens are configured. They
satisfy the BranchService and SandboxService protocols but keep everything
in dicts (no persistence across restarts).

Tests drive them through a few hooks: ``create_gate`` and
``destroy_gate`` hold a call open until released, ``*_error`` fields inject
failures, and ``queue_statuses`` scripts the replies of ``get_status``.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from typing import Union

from .github.branches import extract_branch_timestamp, is_working_branch, sort_branches_by_date
from .protocols import (
    STATUS_ERROR,
    STATUS_PROVISIONING,
    STATUS_RUNNING,
    BranchInfo,
    InstanceStatus,
    RepoInfo,
)


class InMemoryBranchService:
    def __init__(
        self,
        *,
        default_branch: str = "main",
        branches: list[str] | None = None,
    ) -> None:
        self.default_branch = default_branch
        self._branches: dict[tuple[str, str], list[str]] = {}
        self._seed = list(branches or [])
        self.calls: list[tuple] = []
        self.create_gate: asyncio.Event | None = None
        self.create_error: BaseException | None = None
        self.list_error: BaseException | None = None
        self.list_called = asyncio.Event()

    def _repo_branches(self, owner: str, repo: str) -> list[str]:
        return self._branches.setdefault((owner, repo), [self.default_branch, *self._seed])

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def get_repo_info(self, owner: str, repo: str) -> RepoInfo:
        self.calls.append(("get_repo_info", owner, repo))
        return RepoInfo(owner=owner, repo=repo, default_branch=self.default_branch)

    async def create_branch(
        self, owner: str, repo: str, from_ref: str, branch_name: str,
    ) -> str:
        self.calls.append(("create_branch", owner, repo, from_ref, branch_name))
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        self._repo_branches(owner, repo).append(branch_name)
        return branch_name

    async def list_branches(self, owner: str, repo: str) -> list[BranchInfo]:
        self.calls.append(("list_branches", owner, repo))
        self.list_called.set()
        if self.list_error is not None:
            raise self.list_error
        infos = [
            BranchInfo(name=name, updated_at=extract_branch_timestamp(name))
            for name in self._repo_branches(owner, repo)
            if is_working_branch(name)
        ]
        return sort_branches_by_date(infos)


StatusScriptItem = Union[str, BaseException]


class InMemorySandboxService:
    def __init__(
        self,
        *,
        create_status: str = STATUS_PROVISIONING,
        ready_after: int = 1,
        url_template: str = "http://{name}.preview.localhost",
    ) -> None:
        self.create_status = create_status
        self.ready_after = ready_after
        self.url_template = url_template
        self.instances: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.create_gate: asyncio.Event | None = None
        self.create_error: BaseException | None = None
        self.destroy_gate: asyncio.Event | None = None
        self.destroy_error: BaseException | None = None
        self._script: deque[StatusScriptItem] = deque()
        self._polls: dict[str, int] = {}

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def queue_statuses(self, *items: StatusScriptItem) -> None:
        """Script the next ``get_status`` replies (statuses or exceptions)."""
        self._script.extend(items)

    def preview_url(self, remote_id: str) -> str | None:
        return self.url_template.format(name=remote_id)

    def _status(self, remote_id: str, status: str) -> InstanceStatus:
        return InstanceStatus(
            remote_id=remote_id,
            status=status,
            url=self.preview_url(remote_id) if status == STATUS_RUNNING else None,
            error_message="sandbox failed to start" if status == STATUS_ERROR else None,
        )

    async def create_instance(self, owner: str, repo: str, branch: str) -> InstanceStatus:
        self.calls.append(("create_instance", owner, repo, branch))
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        remote_id = f"sbx-{uuid.uuid4().hex[:8]}"
        self.instances[remote_id] = {"owner": owner, "repo": repo, "branch": branch}
        self._polls[remote_id] = 0
        return self._status(remote_id, self.create_status)

    async def get_status(self, remote_id: str) -> InstanceStatus:
        self.calls.append(("get_status", remote_id))
        if self._script:
            item = self._script.popleft()
            if isinstance(item, BaseException):
                raise item
            return self._status(remote_id, item)
        self._polls[remote_id] = self._polls.get(remote_id, 0) + 1
        if self._polls[remote_id] >= self.ready_after:
            return self._status(remote_id, STATUS_RUNNING)
        return self._status(remote_id, STATUS_PROVISIONING)

    async def destroy_instance(self, remote_id: str) -> None:
        self.calls.append(("destroy_instance", remote_id))
        if self.destroy_gate is not None:
            await self.destroy_gate.wait()
        if self.destroy_error is not None:
            raise self.destroy_error
        self.instances.pop(remote_id, None)
        self._polls.pop(remote_id, None)
