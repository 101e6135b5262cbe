"""Shared JSON-over-HTTP client for REST-based providers."""

import uuid
from typing import Any

import httpx
import structlog

from card_gateway.domain.exceptions import ProviderError, ProviderTimeout

logger = structlog.get_logger(__name__)


class ProviderHttpClient:
    """
    Thin httpx wrapper that maps transport and status failures onto the
    gateway error taxonomy.

    - Timeouts raise ProviderTimeout (RETRYABLE)
    - Network errors, 429 and 5xx raise ProviderError with retryable=True
    - Other 4xx raise ProviderError with retryable=False and the response body
      in details
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        headers: dict[str, str],
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.http_client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client connection pool."""
        await self.http_client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        error_code: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path relative to the provider base URL
            error_code: Gateway error code used when the call fails
            json: Optional JSON body
            params: Optional query parameters
            headers: Extra headers for this request only

        Raises:
            ProviderTimeout: The provider did not answer in time
            ProviderError: Transport failure or non-2xx answer
        """
        correlation_id = str(uuid.uuid4())
        request_headers = {"X-Request-ID": correlation_id, **(headers or {})}

        logger.debug(
            "provider_http_request",
            provider=self.provider,
            method=method,
            path=path,
            correlation_id=correlation_id,
        )

        try:
            response = await self.http_client.request(
                method, path, json=json, params=params, headers=request_headers
            )
        except httpx.TimeoutException as e:
            logger.error(
                "provider_http_timeout",
                provider=self.provider,
                path=path,
                correlation_id=correlation_id,
                timeout_seconds=self.timeout_seconds,
            )
            raise ProviderTimeout(
                f"{self.provider} did not respond within {self.timeout_seconds}s",
                details={"provider": self.provider},
            ) from e
        except httpx.RequestError as e:
            logger.error(
                "provider_http_request_error",
                provider=self.provider,
                path=path,
                correlation_id=correlation_id,
                error=str(e),
            )
            raise ProviderError(
                f"{self.provider} request failed",
                code=error_code,
                details={"provider": self.provider, "error_type": type(e).__name__},
            ) from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.error(
                "provider_http_unavailable",
                provider=self.provider,
                path=path,
                status_code=response.status_code,
                correlation_id=correlation_id,
            )
            raise ProviderError(
                f"{self.provider} unavailable (status: {response.status_code})",
                code=error_code,
                details={"provider": self.provider, "http_status": response.status_code},
            )

        body = self._decode(response)

        if response.status_code >= 400:
            logger.warning(
                "provider_http_rejected",
                provider=self.provider,
                path=path,
                status_code=response.status_code,
                correlation_id=correlation_id,
            )
            raise ProviderError(
                _error_message(self.provider, body, response.status_code),
                code=error_code,
                retryable=False,
                details={
                    "provider": self.provider,
                    "http_status": response.status_code,
                    "response": body,
                },
            )

        return body

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text}
        return body if isinstance(body, dict) else {"data": body}

    async def __aenter__(self) -> "ProviderHttpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _error_message(provider: str, body: dict[str, Any], status_code: int) -> str:
    for key in ("error_message", "message", "error"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return f"{provider} rejected the request: {value}"
    return f"{provider} rejected the request (status: {status_code})"
