"""GitHub branch service adapter."""

from .branches import (
    WORKING_BRANCH_PREFIX,
    extract_branch_timestamp,
    generate_working_branch_name,
    sort_branches_by_date,
)
from .client import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubBranchClient,
    GitHubConnectionError,
    GitHubNotFoundError,
    GitHubPermissionError,
    GitHubRateLimitError,
    GitHubTimeoutError,
)

__all__ = [
    "GitHubAPIError",
    "GitHubAuthError",
    "GitHubBranchClient",
    "GitHubConnectionError",
    "GitHubNotFoundError",
    "GitHubPermissionError",
    "GitHubRateLimitError",
    "GitHubTimeoutError",
    "WORKING_BRANCH_PREFIX",
    "extract_branch_timestamp",
    "generate_working_branch_name",
    "sort_branches_by_date",
]
