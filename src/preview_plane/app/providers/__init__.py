"""Sandbox providers for preview provisioning."""

from .sprite_provider import SpritePreviewService, build_sandbox_name, normalize_state
from .sprites_client import (
    SpritesAPIError,
    SpritesClient,
    SpritesConflictError,
    SpritesConnectionError,
    SpritesNotFoundError,
    SpritesTimeoutError,
)

__all__ = [
    "SpritePreviewService",
    "SpritesAPIError",
    "SpritesClient",
    "SpritesConflictError",
    "SpritesConnectionError",
    "SpritesNotFoundError",
    "SpritesTimeoutError",
    "build_sandbox_name",
    "normalize_state",
]
