"""Preview plane configuration settings.

PreviewPlaneSettings is the single configuration object accepted by
create_app() and build_orchestrator(). It is intentionally a plain dataclass
(not env-coupled) so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True, slots=True)
class PreviewPlaneSettings:
    """Configuration for the orchestrator and its HTTP surface.

    All fields have sensible defaults for local development, where the
    in-memory GitHub and sandbox services are used when no tokens are set.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, staging, production."""

    # ── GitHub ─────────────────────────────────────────────────────
    github_token: str = ""
    """Token used for branch creation. Never log this."""

    github_api_url: str = "https://api.github.com"

    github_base_ref: str = ""
    """Ref new working branches start from. Empty means the repo default."""

    # ── Sprites ────────────────────────────────────────────────────
    sprites_token: str = ""
    """Static bearer token for Sprites.dev API calls."""

    sprites_api_url: str = "https://api.sprites.dev"

    # ── Branch acquisition ─────────────────────────────────────────
    branch_grace_seconds: float = 3.0
    """Delay before a pending branch create is reported as slow."""

    branch_timeout_seconds: float = 60.0
    """Hard bound on ``requesting``; 0 disables it."""

    # ── Preview provisioning ───────────────────────────────────────
    poll_interval_seconds: float = 5.0
    max_poll_attempts: int = 120
    max_transport_failures: int = 120
    assume_ready_on_timeout: bool = False
    """Treat an exhausted poll budget as ready when a URL is derivable."""

    # ── Session retention ──────────────────────────────────────────
    max_retained_sessions: int = 4
    """Inactive sessions kept alive before the least recent is torn down."""

    # ── CORS ───────────────────────────────────────────────────────
    cors_origins: tuple[str, ...] = (
        "http://localhost:5173",
        "http://localhost:3000",
    )

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.is_local:
            if not self.github_token:
                errors.append(f"{self.environment}: github_token is required")
            if not self.sprites_token:
                errors.append(f"{self.environment}: sprites_token is required")
        if self.branch_grace_seconds < 0:
            errors.append("branch_grace_seconds must be >= 0")
        if self.branch_timeout_seconds < 0:
            errors.append("branch_timeout_seconds must be >= 0")
        if self.poll_interval_seconds < 0:
            errors.append("poll_interval_seconds must be >= 0")
        if self.max_poll_attempts < 1:
            errors.append("max_poll_attempts must be >= 1")
        if self.max_transport_failures < 1:
            errors.append("max_transport_failures must be >= 1")
        if self.max_retained_sessions < 0:
            errors.append("max_retained_sessions must be >= 0")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> PreviewPlaneSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct PreviewPlaneSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        defaults = cls()
        cors_raw = env.get("CORS_ORIGINS", "")
        cors = (
            tuple(o.strip() for o in cors_raw.split(",") if o.strip())
            if cors_raw
            else defaults.cors_origins
        )

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            github_token=env.get("GITHUB_TOKEN", ""),
            github_api_url=env.get("GITHUB_API_URL", defaults.github_api_url),
            github_base_ref=env.get("GITHUB_BASE_REF", ""),
            sprites_token=env.get("SPRITES_TOKEN", ""),
            sprites_api_url=env.get("SPRITES_API_URL", defaults.sprites_api_url),
            branch_grace_seconds=float(
                env.get("BRANCH_GRACE_SECONDS", defaults.branch_grace_seconds)
            ),
            branch_timeout_seconds=float(
                env.get("BRANCH_TIMEOUT_SECONDS", defaults.branch_timeout_seconds)
            ),
            poll_interval_seconds=float(
                env.get(
                    "PREVIEW_POLL_INTERVAL_SECONDS",
                    defaults.poll_interval_seconds,
                )
            ),
            max_poll_attempts=int(
                env.get("PREVIEW_MAX_POLL_ATTEMPTS", defaults.max_poll_attempts)
            ),
            max_transport_failures=int(
                env.get(
                    "PREVIEW_MAX_TRANSPORT_FAILURES",
                    defaults.max_transport_failures,
                )
            ),
            assume_ready_on_timeout=(
                env.get("PREVIEW_ASSUME_READY", "").strip().lower() in _TRUE_VALUES
            ),
            max_retained_sessions=int(
                env.get("MAX_RETAINED_SESSIONS", defaults.max_retained_sessions)
            ),
            cors_origins=cors,
        )
