"""Working-branch naming helpers.

Working branches are named ``roseram-edit-{epoch_millis}-{random6}`` so the
creation time can be recovered from the name alone. Listing uses that to
order fallback candidates newest first.
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from typing import Iterable

from ..protocols import BranchInfo

WORKING_BRANCH_PREFIX = "roseram-edit-"

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_working_branch_name(
    *,
    now_ms: int | None = None,
    suffix: str | None = None,
) -> str:
    """Return a fresh, collision-resistant working branch name."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if suffix is None:
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{WORKING_BRANCH_PREFIX}{now_ms}-{suffix}"


def extract_branch_timestamp(name: str) -> datetime | None:
    """Creation time embedded in a working branch name, if any."""
    if not name.startswith(WORKING_BRANCH_PREFIX):
        return None
    millis, _, _ = name[len(WORKING_BRANCH_PREFIX):].partition("-")
    if not millis.isdigit():
        return None
    try:
        return datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def is_working_branch(name: str) -> bool:
    return name.startswith(WORKING_BRANCH_PREFIX)


def sort_branches_by_date(branches: Iterable[BranchInfo]) -> list[BranchInfo]:
    """Most recently updated first; undated branches last."""
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(
        branches,
        key=lambda b: b.updated_at or epoch,
        reverse=True,
    )
