# core/http_client_service.py
"""Perform HTTP I/O for model provider integrations.

This module provides the HTTP layer used by the model adapter. It centralizes
response handling and request statistics so call sites do not re-implement
network concerns.

Notes:
    - Concurrency is bounded upstream by `core.concurrency.ConcurrencyLimiter`,
      not here, so one limiter governs every model call in the process.
    - Requests are never retried here; a failed call surfaces to the caller,
      which owns retry policy.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

import config
from core.exceptions import LLMServiceError, create_error_context

logger = structlog.get_logger(__name__)


class HTTPClientService:
    """Issue JSON POST requests and map transport failures to `LLMServiceError`."""

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the HTTP client.

        Args:
            timeout: Request timeout in seconds. Defaults to `HTTPX_TIMEOUT`.
            transport: Optional transport, used by tests to mock the provider.
        """
        effective_timeout = timeout if timeout is not None else config.HTTPX_TIMEOUT
        self._client = httpx.AsyncClient(timeout=effective_timeout, transport=transport)
        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
        }
        logger.debug("HTTPClientService initialized", timeout=effective_timeout)

    async def aclose(self) -> None:
        """Close the underlying HTTP client and release resources."""
        await self._client.aclose()
        logger.debug("HTTPClientService closed")

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """POST a JSON payload once.

        Returns:
            The successful HTTP response.

        Raises:
            LLMServiceError: On a non-2xx status or a transport failure. The
                original httpx exception is chained.
        """
        self._stats["total_requests"] += 1
        try:
            response = await self._client.post(url, json=payload, headers=headers or {})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self._stats["failed_requests"] += 1
            status_code = e.response.status_code
            logger.error(
                "post_json: provider returned error status",
                url=url,
                status_code=status_code,
                body=e.response.text[:200],
            )
            raise LLMServiceError(
                f"Provider returned HTTP {status_code}",
                details=create_error_context(url=url, status_code=status_code),
            ) from e
        except httpx.RequestError as e:
            self._stats["failed_requests"] += 1
            logger.error("post_json: request failed", url=url, error=str(e))
            raise LLMServiceError(
                "Provider request failed",
                details=create_error_context(url=url, error=str(e), error_type=type(e).__name__),
            ) from e

        self._stats["successful_requests"] += 1
        logger.debug("post_json: success", url=url, status_code=response.status_code)
        return response

    def get_statistics(self) -> dict[str, Any]:
        """Return HTTP request statistics for monitoring."""
        total = self._stats["total_requests"]
        return {
            **self._stats,
            "success_rate": (self._stats["successful_requests"] / total * 100) if total > 0 else 0,
            "failure_rate": (self._stats["failed_requests"] / total * 100) if total > 0 else 0,
        }
