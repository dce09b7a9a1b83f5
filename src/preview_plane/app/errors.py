"""Error taxonomy shared by the external service adapters.

The orchestrator only distinguishes two kinds of service failure:

  - transient: timeouts, connection errors, 5xx responses. Status polling
    absorbs these as skipped ticks.
  - authoritative: everything else (401/403/404/422, rate limits, explicit
    error payloads). These are terminal and surfaced verbatim.

We keep these errors small and dependency-free so they can be raised from
any adapter without leaking ``httpx.Response`` objects (or tokens).
"""

from __future__ import annotations

import asyncio

import httpx


class ServiceError(Exception):
    """Base error for calls to an external collaborator service."""

    transient: bool = False
    service: str = "service"

    def __init__(
        self,
        status_code: int,
        message: str = "",
        *,
        response_body: str = "",
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"{self.service} error {status_code}: {message}")


class TransientServiceError(ServiceError):
    """Network-level or server-side failure that may succeed on a later call."""

    transient = True


def is_transient(exc: BaseException) -> bool:
    """Return True if ``exc`` should be treated as a network blip."""
    if isinstance(exc, ServiceError):
        return exc.transient or exc.status_code >= 500
    return isinstance(
        exc,
        (httpx.TransportError, asyncio.TimeoutError, ConnectionError),
    )


def describe_error(exc: BaseException) -> str:
    """Human-readable reason recorded on session state."""
    if isinstance(exc, ServiceError):
        return exc.message or str(exc)
    text = str(exc)
    return text or type(exc).__name__
