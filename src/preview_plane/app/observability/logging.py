"""Structured logging for preview-plane.

Every module logs through ``logging.getLogger(__name__)`` and passes session
context as ``extra=``. ``configure_logging`` installs one structlog formatter
on the root logger that lifts those extras into the rendered event, together
with the request ID of the HTTP call and the session key of the transition
being processed.

    configure_logging()  # once, from the app lifespan
    logger.info("Preview running", extra={"session_key": str(key), "url": url})
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

import structlog

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
session_key_ctx: ContextVar[str | None] = ContextVar("session_key", default=None)

# ``extra=`` keys used across the orchestrator and adapters.
LOG_EXTRA_FIELDS = (
    "session_key",
    "owner",
    "repo",
    "branch",
    "remote_id",
    "generation",
    "url",
)

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")

_configured = False


def _add_correlation(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict["request_id"] = rid
    key = session_key_ctx.get()
    if key is not None:
        event_dict.setdefault("session_key", key)
    return event_dict


@contextmanager
def bind_session_key(key: object) -> Iterator[None]:
    """Tag every log entry emitted inside the block with ``key``."""
    token = session_key_ctx.set(str(key))
    try:
        yield
    finally:
        session_key_ctx.reset(token)


def _pre_chain() -> list:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(allow=LOG_EXTRA_FIELDS),
        _add_correlation,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Install the structlog formatter on the root logger.

    Args:
        level: Log level name. Defaults to LOG_LEVEL or INFO.
        json_output: JSON lines when True, console rendering when False.
            Defaults to LOG_FORMAT == "json".

    Safe to call more than once; only the first call has an effect.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
