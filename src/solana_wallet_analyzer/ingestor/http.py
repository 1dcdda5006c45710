"""Shared async HTTP plumbing for the remote providers.

Both providers speak JSON over HTTPS. This module owns the ``httpx`` client
lifecycle, retry with exponential backoff on transient failures, and the
provider error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class ProviderError(Exception):
    """Base exception for remote provider errors."""


class ProviderTransientError(ProviderError):
    """Raised for retryable errors (e.g., 429/5xx, timeouts, network issues)."""


class ProviderResponseError(ProviderError):
    """Raised for non-retryable HTTP errors or malformed payloads."""


class RetryError(ProviderError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


class JsonHttpClient:
    """Lazily-created ``httpx.AsyncClient`` with retry logic.

    Args:
        base_url: Prefix for every request path.
        headers: Default headers sent with every request.
        timeout_seconds: Per-request timeout.
        max_retries: Retries after the first attempt for transient errors.
        retry_base_delay: Base backoff in seconds (doubles with each retry).
        client: Pre-built client (tests inject one with ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout, headers=self._headers)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def request_json(
        self,
        method: str,
        path: str = "",
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        check: Callable[[Any], Any] | None = None,
    ) -> Any:
        """Send a request and decode the JSON body, retrying transient failures.

        ``check`` runs on each decoded body before it is returned. It may
        reshape the body, and a ``ProviderTransientError`` it raises is
        retried like a 429.

        Raises:
            ProviderResponseError: Non-retryable status or undecodable body.
            RetryError: Every attempt failed with a transient error.
        """
        url = f"{self._base_url}{path}"
        merged_headers = {**self._headers, **(headers or {})}
        last_exception: Exception | None = None

        for attempt in range(self._max_retries + 1):
            try:
                body = await self._send(method, url, params=params, json=json, headers=merged_headers)
                return check(body) if check is not None else body
            except ProviderTransientError as e:
                last_exception = e
                if attempt == self._max_retries:
                    break
                delay = self._retry_base_delay * (2**attempt)
                logger.warning(
                    "Attempt %d/%d failed for %s %s: %s. Retrying in %.1f seconds...",
                    attempt + 1,
                    self._max_retries + 1,
                    method,
                    path or "/",
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

        raise RetryError(
            f"All {self._max_retries + 1} attempts failed for {method} {path or '/'}",
            last_exception=last_exception,
        )

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
        headers: dict[str, str],
    ) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Transport error: {e}") from e

        if response.status_code in RETRY_STATUS_CODES:
            raise ProviderTransientError(f"HTTP {response.status_code} from {url}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderResponseError(f"HTTP {response.status_code} from {url}") from e

        try:
            return response.json()
        except ValueError as e:
            raise ProviderResponseError(f"Invalid JSON from {url}") from e
