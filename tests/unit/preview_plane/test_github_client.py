"""Unit tests for GitHubBranchClient and working-branch naming."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from preview_plane.app.errors import is_transient
from preview_plane.app.github.branches import (
    WORKING_BRANCH_PREFIX,
    extract_branch_timestamp,
    generate_working_branch_name,
    sort_branches_by_date,
)
from preview_plane.app.github.client import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubBranchClient,
    GitHubNotFoundError,
    GitHubPermissionError,
    GitHubRateLimitError,
    GitHubTimeoutError,
)
from preview_plane.app.protocols import BranchInfo, BranchService


def _make_client(mock_http, **kwargs) -> GitHubBranchClient:
    return GitHubBranchClient(
        token="ghp_test",
        base_url="https://api.github.com",
        http_client=mock_http,
        **kwargs,
    )


def _mock_http(**kwargs) -> AsyncMock:
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(**kwargs)
    return mock_http


# ── Naming helpers ───────────────────────────────────────────────


def test_generated_name_embeds_timestamp():
    name = generate_working_branch_name(now_ms=1700000000000, suffix="abc123")

    assert name == "roseram-edit-1700000000000-abc123"
    assert extract_branch_timestamp(name) == datetime.fromtimestamp(
        1700000000, tz=timezone.utc,
    )


def test_generated_names_are_unique():
    names = {generate_working_branch_name() for _ in range(50)}
    assert len(names) == 50
    assert all(n.startswith(WORKING_BRANCH_PREFIX) for n in names)


def test_extract_timestamp_rejects_foreign_names():
    assert extract_branch_timestamp("main") is None
    assert extract_branch_timestamp("roseram-edit-notanumber-x") is None


def test_sort_newest_first_undated_last():
    old = BranchInfo("roseram-edit-1600000000000-a", extract_branch_timestamp("roseram-edit-1600000000000-a"))
    new = BranchInfo("roseram-edit-1700000000000-b", extract_branch_timestamp("roseram-edit-1700000000000-b"))
    undated = BranchInfo("main")

    assert sort_branches_by_date([undated, old, new]) == [new, old, undated]


# ── Requests ─────────────────────────────────────────────────────


def test_satisfies_branch_protocol():
    assert isinstance(_make_client(AsyncMock()), BranchService)


def test_token_required():
    with pytest.raises(ValueError, match="token"):
        GitHubBranchClient(token="")


@pytest.mark.asyncio
async def test_create_branch_resolves_base_sha_then_creates_ref():
    mock_http = _mock_http(
        side_effect=[
            httpx.Response(200, json={"object": {"sha": "deadbeef"}}),
            httpx.Response(201, json={"ref": "refs/heads/roseram-edit-1-abc"}),
        ],
    )

    client = _make_client(mock_http)
    name = await client.create_branch("acme", "storefront", "main", "roseram-edit-1-abc")

    assert name == "roseram-edit-1-abc"
    ref_call, create_call = mock_http.request.call_args_list
    assert ref_call.args == (
        "GET", "https://api.github.com/repos/acme/storefront/git/ref/heads/main",
    )
    assert create_call.args == (
        "POST", "https://api.github.com/repos/acme/storefront/git/refs",
    )
    assert create_call.kwargs["json"] == {
        "ref": "refs/heads/roseram-edit-1-abc",
        "sha": "deadbeef",
    }
    assert create_call.kwargs["headers"]["Authorization"] == "Bearer ghp_test"


@pytest.mark.asyncio
async def test_get_repo_info_reads_default_branch():
    mock_http = _mock_http(
        return_value=httpx.Response(
            200, json={"default_branch": "develop", "private": True},
        ),
    )

    info = await _make_client(mock_http).get_repo_info("acme", "storefront")

    assert info.default_branch == "develop"
    assert info.private is True


@pytest.mark.asyncio
async def test_list_branches_filters_and_sorts():
    mock_http = _mock_http(
        return_value=httpx.Response(
            200,
            json=[
                {"name": "main", "commit": {"sha": "a"}},
                {"name": "roseram-edit-1600000000000-old", "commit": {"sha": "b"}},
                {"name": "roseram-edit-1700000000000-new", "commit": {"sha": "c"}, "protected": True},
            ],
        ),
    )

    branches = await _make_client(mock_http).list_branches("acme", "storefront")

    assert [b.name for b in branches] == [
        "roseram-edit-1700000000000-new",
        "roseram-edit-1600000000000-old",
    ]
    assert branches[0].sha == "c"
    assert branches[0].protected is True
    assert mock_http.request.call_args.kwargs["params"] == {"per_page": 100, "page": 1}


@pytest.mark.asyncio
async def test_list_branches_follows_pages_until_a_short_page():
    full_page = [{"name": f"feature-{i}"} for i in range(100)]
    mock_http = _mock_http(
        side_effect=[
            httpx.Response(200, json=full_page),
            httpx.Response(200, json=[{"name": "roseram-edit-1700000000000-late"}]),
        ],
    )

    branches = await _make_client(mock_http).list_branches("acme", "storefront")

    assert [b.name for b in branches] == ["roseram-edit-1700000000000-late"]
    pages = [c.kwargs["params"]["page"] for c in mock_http.request.call_args_list]
    assert pages == [1, 2]


@pytest.mark.asyncio
async def test_list_branches_stops_on_empty_page():
    full_page = [{"name": f"roseram-edit-{1600000000000 + i}-x"} for i in range(100)]
    mock_http = _mock_http(
        side_effect=[
            httpx.Response(200, json=full_page),
            httpx.Response(200, json=[]),
        ],
    )

    branches = await _make_client(mock_http).list_branches("acme", "storefront")

    assert len(branches) == 100
    assert branches[0].name == "roseram-edit-1600000000099-x"
    assert mock_http.request.call_count == 2


@pytest.mark.asyncio
async def test_list_all_branches_when_not_filtering():
    mock_http = _mock_http(
        return_value=httpx.Response(200, json=[{"name": "main"}, {"name": "dev"}]),
    )

    client = _make_client(mock_http, working_branches_only=False)
    branches = await client.list_branches("acme", "storefront")
    assert {b.name for b in branches} == {"main", "dev"}


@pytest.mark.asyncio
async def test_list_branches_on_missing_repo_is_empty():
    mock_http = _mock_http(
        return_value=httpx.Response(404, json={"message": "Not Found"}),
    )

    assert await _make_client(mock_http).list_branches("acme", "gone") == []


# ── Error mapping ────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("status", "headers", "message", "error_type"),
    [
        (401, {}, "Bad credentials", GitHubAuthError),
        (403, {"x-ratelimit-remaining": "0"}, "Forbidden", GitHubRateLimitError),
        (403, {}, "API rate limit exceeded for user", GitHubRateLimitError),
        (429, {}, "Too many requests", GitHubRateLimitError),
        (403, {}, "Resource not accessible by integration", GitHubPermissionError),
        (404, {}, "Not Found", GitHubNotFoundError),
        (422, {}, "Reference already exists", GitHubAPIError),
    ],
)
@pytest.mark.asyncio
async def test_error_status_mapping(status, headers, message, error_type):
    mock_http = _mock_http(
        return_value=httpx.Response(status, json={"message": message}, headers=headers),
    )

    with pytest.raises(error_type) as exc_info:
        await _make_client(mock_http).get_repo_info("acme", "storefront")

    assert exc_info.value.status_code == status
    assert exc_info.value.message == message
    assert is_transient(exc_info.value) is False


@pytest.mark.asyncio
async def test_timeout_is_transient_and_not_retried():
    mock_http = _mock_http(side_effect=httpx.ReadTimeout("read timeout"))

    with pytest.raises(GitHubTimeoutError) as exc_info:
        await _make_client(mock_http).get_repo_info("acme", "storefront")

    assert is_transient(exc_info.value) is True
    assert mock_http.request.call_count == 1
