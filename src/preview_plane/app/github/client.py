"""Async HTTP client for the GitHub REST API (branch operations only).

Provides repository lookup, working-branch creation and branch listing.
Auth uses a static token (server-side only). Unlike the sandbox client there
is no automatic retry: GitHub errors are reported verbatim and a retry is
always a fresh user-initiated acquisition.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import ServiceError, TransientServiceError
from ..protocols import BranchInfo, RepoInfo
from .branches import extract_branch_timestamp, is_working_branch, sort_branches_by_date

logger = logging.getLogger(__name__)

_API_VERSION = "2022-11-28"
_LIST_PAGE_SIZE = 100
_LIST_MAX_PAGES = 50


# ── Exception hierarchy ─────────────────────────────────────────


class GitHubAPIError(ServiceError):
    """Base exception for GitHub API errors."""

    service = "GitHub API"


class GitHubAuthError(GitHubAPIError):
    """Token invalid or expired (401)."""


class GitHubPermissionError(GitHubAPIError):
    """Token lacks access to the repository or ref (403)."""


class GitHubRateLimitError(GitHubAPIError):
    """Primary or secondary rate limit exhausted (403/429)."""


class GitHubNotFoundError(GitHubAPIError):
    """Repository, ref or branch not found (404)."""


class GitHubTimeoutError(GitHubAPIError, TransientServiceError):
    """Request to GitHub timed out."""

    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(0, message)


class GitHubConnectionError(GitHubAPIError, TransientServiceError):
    """GitHub could not be reached."""

    def __init__(self, message: str = "Connection failed") -> None:
        super().__init__(0, message)


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


# ── Client ───────────────────────────────────────────────────────


class GitHubBranchClient:
    """GitHub branch service used for working-branch acquisition.

    Satisfies the ``BranchService`` protocol.
    """

    def __init__(
        self,
        *,
        token: str,
        base_url: str = "https://api.github.com",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        working_branches_only: bool = True,
    ) -> None:
        if not token:
            raise ValueError("token is required")

        self._token = token
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._working_branches_only = working_branches_only

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": _API_VERSION,
        }

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"
        try:
            payload = resp.json()
            if isinstance(payload, dict) and payload.get("message"):
                message = payload["message"]
        except ValueError:
            pass

        status = resp.status_code
        if status == 401:
            raise GitHubAuthError(status, message, response_body=body)
        if status == 429 or (
            status == 403 and (
                resp.headers.get("x-ratelimit-remaining") == "0"
                or "rate limit" in message.lower()
            )
        ):
            raise GitHubRateLimitError(status, message, response_body=body)
        if status == 403:
            raise GitHubPermissionError(status, message, response_body=body)
        if status == 404:
            raise GitHubNotFoundError(status, message, response_body=body)
        raise GitHubAPIError(status, message, response_body=body)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            return await self._client.request(
                method,
                url,
                headers=self._headers(),
                json=json,
                params=params,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise GitHubTimeoutError(str(e) or "Request timed out") from e
        except httpx.TransportError as e:
            raise GitHubConnectionError(str(e) or "Connection failed") from e

    # ── Public API ───────────────────────────────────────────────

    async def get_repo_info(self, owner: str, repo: str) -> RepoInfo:
        """Fetch repository metadata (default branch, visibility)."""
        resp = await self._request("GET", f"/repos/{owner}/{repo}")
        self._raise_for_status(resp)
        payload = resp.json()
        return RepoInfo(
            owner=owner,
            repo=repo,
            default_branch=payload.get("default_branch") or "main",
            private=bool(payload.get("private", False)),
            url=payload.get("html_url", f"https://github.com/{owner}/{repo}"),
        )

    async def get_ref_sha(self, owner: str, repo: str, ref: str) -> str:
        """Resolve ``heads/{ref}`` to a commit SHA."""
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/git/ref/heads/{ref}",
        )
        self._raise_for_status(resp)
        return resp.json()["object"]["sha"]

    async def create_branch(
        self, owner: str, repo: str, from_ref: str, branch_name: str,
    ) -> str:
        """Create ``branch_name`` at the tip of ``from_ref``.

        Returns the created branch name.
        """
        sha = await self.get_ref_sha(owner, repo, from_ref)
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch_name}", "sha": sha},
        )
        self._raise_for_status(resp)
        logger.info(
            "Branch created: %s/%s@%s from %s",
            owner,
            repo,
            branch_name,
            from_ref,
            extra={"owner": owner, "repo": repo, "branch": branch_name},
        )
        return branch_name

    async def list_branches(self, owner: str, repo: str) -> list[BranchInfo]:
        """List fallback branches across every page, newest first.

        Pages are followed until an empty or short page. A missing or
        inaccessible repository yields an empty list.
        """
        items: list[dict[str, Any]] = []
        for page in range(1, _LIST_MAX_PAGES + 1):
            try:
                batch = await self._list_branch_page(owner, repo, page)
            except GitHubNotFoundError:
                if page > 1:
                    raise
                logger.info(
                    "Repository not found while listing branches: %s/%s",
                    owner,
                    repo,
                    extra={"owner": owner, "repo": repo},
                )
                return []
            items.extend(batch)
            if len(batch) < _LIST_PAGE_SIZE:
                break
        else:
            logger.warning(
                "Stopped listing branches of %s/%s after %d pages",
                owner,
                repo,
                _LIST_MAX_PAGES,
                extra={"owner": owner, "repo": repo},
            )

        branches = [
            BranchInfo(
                name=item["name"],
                updated_at=extract_branch_timestamp(item["name"]),
                sha=(item.get("commit") or {}).get("sha", ""),
                protected=bool(item.get("protected", False)),
                url=f"https://github.com/{owner}/{repo}/tree/{item['name']}",
            )
            for item in items
            if not self._working_branches_only or is_working_branch(item["name"])
        ]
        return sort_branches_by_date(branches)

    async def _list_branch_page(
        self, owner: str, repo: str, page: int,
    ) -> list[dict[str, Any]]:
        resp = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/branches",
            params={"per_page": _LIST_PAGE_SIZE, "page": page},
        )
        self._raise_for_status(resp)
        payload = resp.json()
        if not isinstance(payload, list):
            raise GitHubAPIError(
                0,
                f"Expected list from /branches, got {type(payload).__name__}",
            )
        return payload
