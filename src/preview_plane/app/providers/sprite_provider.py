"""SpritePreviewService: SandboxService backed by Sprites.dev.

Implements the SandboxService protocol using SpritesClient for preview
instance creation, status inspection and deletion. Every launch gets its own
sprite, named ``preview-{md5(owner/repo@branch)[:8]}-{launch}``. The random
launch suffix means a preview never adopts or deletes a sandbox it did not
create; the preview URL is still derived from the name alone.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Any

from ..protocols import (
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_PROVISIONING,
    STATUS_RUNNING,
    InstanceStatus,
)
from .sprites_client import SpritesClient, SpritesConflictError, SpritesNotFoundError

logger = logging.getLogger(__name__)

SANDBOX_PREFIX = "preview"
MAX_SANDBOX_NAME_LENGTH = 63
CREATE_NAME_ATTEMPTS = 3

_STATE_ALIASES = {
    "running": STATUS_RUNNING,
    "ready": STATUS_RUNNING,
    "started": STATUS_RUNNING,
    "error": STATUS_ERROR,
    "failed": STATUS_ERROR,
    "crashed": STATUS_ERROR,
    "pending": STATUS_PENDING,
    "queued": STATUS_PENDING,
    "provisioning": STATUS_PROVISIONING,
    "creating": STATUS_PROVISIONING,
    "starting": STATUS_PROVISIONING,
    "booting": STATUS_PROVISIONING,
}


def build_sandbox_name(
    owner: str, repo: str, branch: str, *, launch_id: str | None = None,
) -> str:
    """Sandbox name for one launch of an (owner, repo, branch) preview.

    ``launch_id`` defaults to a fresh random suffix.
    """
    digest = hashlib.md5(
        f"{owner}/{repo}@{branch}".lower().encode("utf-8"),
    ).hexdigest()[:8]
    launch_id = launch_id or secrets.token_hex(3)
    return f"{SANDBOX_PREFIX}-{digest}-{launch_id}"[:MAX_SANDBOX_NAME_LENGTH]


def normalize_state(raw: Any) -> str:
    """Map a Sprites state onto pending/provisioning/running/error.

    Unknown states pass through lowercased; the poller treats them as
    non-terminal.
    """
    value = str(raw or "").strip().lower()
    if not value:
        return STATUS_PENDING
    return _STATE_ALIASES.get(value, value)


class SpritePreviewService:
    """SandboxService backed by Sprites.dev API."""

    def __init__(
        self,
        client: SpritesClient,
        *,
        default_profile: str = "default",
        status_max_retries: int = 0,
        url_template: str = "https://{name}.sprites.dev",
    ) -> None:
        self._client = client
        self._default_profile = default_profile
        self._status_max_retries = status_max_retries
        self._url_template = url_template

    def preview_url(self, remote_id: str) -> str | None:
        if not remote_id:
            return None
        return self._url_template.format(name=remote_id)

    def _to_status(self, name: str, payload: dict[str, Any]) -> InstanceStatus:
        status = normalize_state(payload.get("state") or payload.get("status"))
        url = payload.get("url") or payload.get("preview_url")
        if status == STATUS_RUNNING and not url:
            url = self.preview_url(name)
        error_message = None
        if status == STATUS_ERROR:
            error_message = (
                payload.get("error_message")
                or payload.get("error")
                or "Sprite failed to provision"
            )
        return InstanceStatus(
            remote_id=name,
            status=status,
            url=url,
            error_message=error_message,
        )

    async def create_instance(
        self, owner: str, repo: str, branch: str,
    ) -> InstanceStatus:
        """Create a fresh sprite for one launch of a branch preview.

        A name collision is retried with a new launch suffix; an existing
        sprite is never adopted, since another preview owns it.
        """
        env = {
            "REPO_URL": f"https://github.com/{owner}/{repo}",
            "REPO_BRANCH": branch,
        }
        for attempt in range(1, CREATE_NAME_ATTEMPTS + 1):
            name = build_sandbox_name(owner, repo, branch)
            logger.info(
                "Creating preview sandbox: name=%s repo=%s/%s branch=%s",
                name,
                owner,
                repo,
                branch,
                extra={"remote_id": name, "owner": owner, "repo": repo},
            )
            try:
                result = await self._client.create_sprite(
                    name, sandbox_profile=self._default_profile, env=env,
                )
            except SpritesConflictError:
                if attempt == CREATE_NAME_ATTEMPTS:
                    raise
                logger.warning(
                    "Sandbox name %s already taken; retrying with a new suffix",
                    name,
                    extra={"remote_id": name},
                )
                continue
            return self._to_status(name, result)
        raise AssertionError("unreachable")

    async def get_status(self, remote_id: str) -> InstanceStatus:
        """Single status check.

        Retries are left to the poll loop, so a blip costs one tick rather
        than a backoff series.
        """
        result = await self._client.get_sprite(
            remote_id, max_retries=self._status_max_retries,
        )
        return self._to_status(remote_id, result)

    async def destroy_instance(self, remote_id: str) -> None:
        """Delete a preview sprite. Already-deleted sprites are not an error."""
        try:
            await self._client.delete_sprite(remote_id)
        except SpritesNotFoundError:
            logger.info(
                "Sandbox already deleted: name=%s",
                remote_id,
                extra={"remote_id": remote_id},
            )
