"""Async HTTP client for the Sprites.dev sandbox API.

Only the three calls the preview lifecycle needs: create, get and delete a
sprite. Transient failures (timeouts, connection errors, 429 and 5xx) are
retried with jittered exponential backoff, honouring ``Retry-After``. Status
checks pass ``max_retries=0`` so the poll loop owns the retry cadence.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import ServiceError, TransientServiceError

logger = logging.getLogger(__name__)

_SPRITES_PATH = "/v1/sprites"
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


# ── Errors ───────────────────────────────────────────────────────


class SpritesAPIError(ServiceError):
    """Sprites.dev answered with an error status."""

    service = "Sprites API"


class SpritesNotFoundError(SpritesAPIError):
    def __init__(self, message: str = "Sprite not found", **kwargs: Any) -> None:
        super().__init__(404, message, **kwargs)


class SpritesConflictError(SpritesAPIError):
    """The sprite name is already taken."""

    def __init__(self, message: str = "Sprite already exists", **kwargs: Any) -> None:
        super().__init__(409, message, **kwargs)


class SpritesTimeoutError(SpritesAPIError, TransientServiceError):
    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(0, message)


class SpritesConnectionError(SpritesAPIError, TransientServiceError):
    def __init__(self, message: str = "Connection failed") -> None:
        super().__init__(0, message)


def _error_for(resp: httpx.Response) -> SpritesAPIError:
    body = resp.text
    message = body[:200] if body else f"HTTP {resp.status_code}"
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        message = payload.get("error") or payload.get("message") or message

    if resp.status_code == 404:
        return SpritesNotFoundError(message=message, response_body=body)
    if resp.status_code == 409:
        return SpritesConflictError(message=message, response_body=body)
    return SpritesAPIError(resp.status_code, message, response_body=body)


def _transport_error(exc: httpx.TransportError) -> SpritesAPIError:
    if isinstance(exc, httpx.TimeoutException):
        return SpritesTimeoutError(str(exc) or "Request timed out")
    return SpritesConnectionError(str(exc) or "Connection failed")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def backoff(self, attempt: int) -> float:
        """Full-jitter exponential backoff for ``attempt`` (0-based)."""
        return random.uniform(0, min(self.base_delay * (2 ** attempt), self.max_delay))

    def delay_for(self, resp: httpx.Response, attempt: int) -> float:
        retry_after = resp.headers.get("retry-after")
        if retry_after:
            try:
                return max(float(retry_after), 0.1)
            except ValueError:
                pass
        return self.backoff(attempt)


_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


# ── Client ───────────────────────────────────────────────────────


class SpritesClient:
    """Sprites.dev client authenticated with a static server-side bearer token."""

    def __init__(
        self,
        *,
        bearer_token: str,
        base_url: str = "https://api.sprites.dev",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ) -> None:
        if not bearer_token:
            raise ValueError("bearer_token is required")

        self._headers = {"Authorization": f"Bearer {bearer_token}"}
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._retry = RetryPolicy(max_retries, base_delay, max_delay)

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> Any:
        """Send one logical request and return the decoded JSON body.

        Raises a SpritesAPIError subclass once retries are used up.
        """
        url = f"{self._base_url}{path}"
        retries = self._retry.max_retries if max_retries is None else max_retries

        attempt = 0
        while True:
            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=self._headers,
                    json=json,
                    timeout=self._timeout,
                )
            except httpx.TransportError as exc:
                error = _transport_error(exc)
                if attempt >= retries:
                    raise error from exc
                delay = self._retry.backoff(attempt)
                reason = error.message
            else:
                if resp.status_code < 400:
                    return resp.json() if resp.content else None
                if resp.status_code not in _RETRYABLE_STATUS_CODES or attempt >= retries:
                    raise _error_for(resp)
                delay = self._retry.delay_for(resp, attempt)
                reason = f"HTTP {resp.status_code}"

            attempt += 1
            logger.warning(
                "Sprites %s %s failed (%s), retry %d/%d in %.1fs",
                method, path, reason, attempt, retries, delay,
            )
            await asyncio.sleep(delay)

    async def create_sprite(
        self,
        name: str,
        *,
        sandbox_profile: str = "default",
        env: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": name, "profile": sandbox_profile}
        if env:
            payload["env"] = env
        result = await self._call("POST", _SPRITES_PATH, json=payload)
        logger.info("Sprite created: %s", name, extra={"remote_id": name})
        return result or {}

    async def get_sprite(
        self, name: str, *, max_retries: int | None = None,
    ) -> dict[str, Any]:
        """Sprite metadata; SpritesNotFoundError when it does not exist."""
        result = await self._call(
            "GET", f"{_SPRITES_PATH}/{name}", max_retries=max_retries,
        )
        return result or {}

    async def delete_sprite(self, name: str) -> None:
        await self._call("DELETE", f"{_SPRITES_PATH}/{name}")
        logger.info("Sprite deleted: %s", name, extra={"remote_id": name})
