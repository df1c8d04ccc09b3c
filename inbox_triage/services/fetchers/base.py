"""
Provider adapter base.

Shared HTTP plumbing for the mail provider adapters: bearer auth, explicit
timeouts, bounded retry on transient statuses, and translation of every
failure into MessageFetchError with a retryable classification.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from inbox_triage.errors import MessageFetchError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.message_domain import (
    FetchOptions,
    NormalizedMessage,
    ProviderCredentials,
)

logger = get_logger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
RETRYABLE_ERROR_CODES = {
    "rate_limit_exceeded",
    "quota_exceeded",
    "internal_error",
    "timeout",
    "network_error",
    "ratelimitexceeded",
    "userratelimitexceeded",
    "toomanyrequests",
    "serviceunavailable",
}


def is_retryable_fetch_error(
    status_code: int | None = None, error_code: str | None = None, message: str | None = None
) -> bool:
    if status_code is not None and (status_code == 429 or status_code >= 500):
        return True
    if error_code and error_code.lower() in RETRYABLE_ERROR_CODES:
        return True
    return bool(message and "timeout" in message.lower())


class ProviderAdapter:
    """
    Contract: ``fetch(credentials, options)`` returns normalized messages or
    raises MessageFetchError.
    """

    provider: str = "unknown"

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        page_size: int = 100,
        default_max_results: int = 100,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.page_size = page_size
        self.default_max_results = default_max_results
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._client = client

    async def fetch(
        self, credentials: ProviderCredentials, options: FetchOptions
    ) -> list[NormalizedMessage]:
        raise NotImplementedError

    async def watch(self, credentials: ProviderCredentials) -> dict[str, Any]:
        """Register a push subscription for new mail. Returns the provider's response."""
        raise NotImplementedError

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[httpx.AsyncClient, None]:
        """Injected client when present (tests, shared pools), else a short-lived one."""
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            yield client

    def _auth_headers(self, credentials: ProviderCredentials) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials.access_token}",
            "Accept": "application/json",
        }

    async def request_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        credentials: ProviderCredentials,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Perform one provider call with retry on transient statuses.

        Raises:
            MessageFetchError: on non-2xx responses, transport errors or
                undecodable bodies after retries are exhausted
        """
        headers = self._auth_headers(credentials)

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
            except httpx.TimeoutException as e:
                if attempt < self.max_attempts:
                    await self._backoff(operation, attempt, error=str(e) or "timeout")
                    continue
                raise MessageFetchError(
                    f"{self.provider} {operation} timed out",
                    provider=self.provider,
                    error_code="timeout",
                    retryable=True,
                ) from e
            except httpx.RequestError as e:
                if attempt < self.max_attempts:
                    await self._backoff(operation, attempt, error=str(e))
                    continue
                raise MessageFetchError(
                    f"{self.provider} {operation} network error: {e}",
                    provider=self.provider,
                    error_code="network_error",
                    retryable=True,
                ) from e

            if response.status_code in RETRY_STATUS_CODES and attempt < self.max_attempts:
                await self._backoff(operation, attempt, status_code=response.status_code)
                continue

            return self._handle_response(response, operation)

        raise MessageFetchError(
            f"{self.provider} {operation} failed", provider=self.provider, retryable=True
        )

    async def _backoff(self, operation: str, attempt: int, **context: Any) -> None:
        wait_time = self.backoff_seconds * (2 ** (attempt - 1))
        logger.warning(
            "Provider transient failure, retrying",
            provider=self.provider,
            operation=operation,
            attempt=attempt,
            wait_time=wait_time,
            **context,
        )
        if wait_time > 0:
            await asyncio.sleep(wait_time)

    def _handle_response(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        if response.is_success:
            try:
                return response.json() if response.content else {}
            except ValueError as e:
                raise MessageFetchError(
                    f"{self.provider} {operation} returned invalid JSON",
                    provider=self.provider,
                    status_code=response.status_code,
                ) from e

        error_code, error_message = self._extract_error(response)
        retryable = is_retryable_fetch_error(response.status_code, error_code, error_message)
        logger.error(
            "Provider API call failed",
            provider=self.provider,
            operation=operation,
            status_code=response.status_code,
            error_code=error_code,
            retryable=retryable,
        )
        raise MessageFetchError(
            f"Failed to fetch {self.provider} emails: {error_message}",
            provider=self.provider,
            status_code=response.status_code,
            error_code=error_code,
            retryable=retryable,
        )

    def _extract_error(self, response: httpx.Response) -> tuple[str | None, str]:
        """(error_code, message) from Google and Graph style error envelopes."""
        try:
            data = response.json()
        except ValueError:
            return None, f"HTTP {response.status_code}"

        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            code = error.get("status") or error.get("code")
            errors = error.get("errors") or []
            if errors and isinstance(errors[0], dict) and errors[0].get("reason"):
                code = errors[0]["reason"]
            return (str(code) if code is not None else None), error.get("message") or (
                f"HTTP {response.status_code}"
            )
        if isinstance(error, str):
            return error, data.get("error_description") or error
        return None, f"HTTP {response.status_code}"
