"""Preview plane FastAPI application."""

from .main import create_app
from .settings import PreviewPlaneSettings

__all__ = ["create_app", "PreviewPlaneSettings"]
