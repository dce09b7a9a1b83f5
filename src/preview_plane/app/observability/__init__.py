"""Logging, metrics and request correlation for preview-plane."""

from .logging import bind_session_key, configure_logging, request_id_ctx, session_key_ctx
from .metrics import metrics_text

__all__ = [
    "bind_session_key",
    "configure_logging",
    "metrics_text",
    "request_id_ctx",
    "session_key_ctx",
]
