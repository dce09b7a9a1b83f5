"""Preview plane FastAPI application factory.

The create_app() factory is the single entry point for building the
preview-plane ASGI application. It wires middleware (request-ID, metrics,
CORS), the session routes, and injects the branch and sandbox services.

Usage:
    # Local development (in-memory services unless tokens are set)
    from preview_plane.app import create_app, PreviewPlaneSettings
    app = create_app(PreviewPlaneSettings())

    # Non-local (GitHub + Sprites.dev)
    settings = PreviewPlaneSettings.from_env()
    app = create_app(settings)

    # Testing (full DI control)
    app = create_app(settings, branch_service=fake, sandbox_service=fake)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .observability.logging import configure_logging
from .observability.metrics import metrics_text
from .observability.middleware import MetricsMiddleware, RequestContextMiddleware
from .protocols import BranchService, SandboxService
from .routes.sessions import create_session_router
from .sessions.orchestrator import SessionOrchestrator
from .settings import PreviewPlaneSettings

logger = logging.getLogger(__name__)


def build_services(
    settings: PreviewPlaneSettings,
) -> tuple[BranchService, SandboxService]:
    """Construct the branch and sandbox services for ``settings``.

    Local mode falls back to in-memory services for any token that is not
    configured; non-local mode always uses the real adapters.
    """
    from .github.client import GitHubBranchClient
    from .inmemory import InMemoryBranchService, InMemorySandboxService
    from .providers.sprite_provider import SpritePreviewService
    from .providers.sprites_client import SpritesClient

    if settings.github_token:
        branch_service: BranchService = GitHubBranchClient(
            token=settings.github_token,
            base_url=settings.github_api_url,
        )
    elif settings.is_local:
        branch_service = InMemoryBranchService()
    else:
        raise ValueError(f"{settings.environment}: github_token is required")

    if settings.sprites_token:
        sandbox_service: SandboxService = SpritePreviewService(
            SpritesClient(
                bearer_token=settings.sprites_token,
                base_url=settings.sprites_api_url,
            ),
        )
    elif settings.is_local:
        sandbox_service = InMemorySandboxService()
    else:
        raise ValueError(f"{settings.environment}: sprites_token is required")

    return branch_service, sandbox_service


def build_orchestrator(
    settings: PreviewPlaneSettings,
    *,
    branch_service: BranchService | None = None,
    sandbox_service: SandboxService | None = None,
) -> SessionOrchestrator:
    """Wire an orchestrator, building any service that was not injected."""
    if branch_service is None or sandbox_service is None:
        default_branch, default_sandbox = build_services(settings)
        branch_service = branch_service or default_branch
        sandbox_service = sandbox_service or default_sandbox
    return SessionOrchestrator(
        branch_service=branch_service,
        sandbox_service=sandbox_service,
        settings=settings,
    )


def create_app(
    settings: PreviewPlaneSettings | None = None,
    *,
    branch_service: BranchService | None = None,
    sandbox_service: SandboxService | None = None,
    orchestrator: SessionOrchestrator | None = None,
) -> FastAPI:
    """Create a configured preview-plane FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        branch_service, sandbox_service: Service overrides. When None,
            they are built from settings.
        orchestrator: A fully wired orchestrator; takes precedence over
            the service overrides.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = PreviewPlaneSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Preview plane settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if orchestrator is None:
        orchestrator = build_orchestrator(
            settings,
            branch_service=branch_service,
            sandbox_service=sandbox_service,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("Preview plane startup (environment=%s)", settings.environment)
        yield
        await orchestrator.close()
        logger.info("Preview plane shutdown")

    app = FastAPI(
        title="Preview Plane",
        description="Working-branch acquisition and preview sandbox provisioning",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.orchestrator = orchestrator

    # ── Middleware stack (applied in reverse order) ──────────────
    # Order of execution: RequestContext -> Metrics -> CORS -> route handler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestContextMiddleware)

    # ── Routes ──────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
            "sessions": len(orchestrator.keys()),
        }

    @app.get("/metrics")
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_session_router(orchestrator))

    return app


# For uvicorn, use --factory flag:
#   uvicorn preview_plane.app.main:create_app --factory
# This avoids executing create_app() at import time.
