"""
Multi-provider message fetcher.

Fans out to one adapter per connected provider, isolates per-provider
failures, and merges the results newest first. Only when every provider
fails does the fetch as a whole fail.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from inbox_triage.errors import AllProvidersFailedError, MessageFetchError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.message_domain import (
    FetchOptions,
    NormalizedMessage,
    ProviderCredentials,
)
from inbox_triage.services.fetchers.base import ProviderAdapter

logger = get_logger(__name__)

MessageCallback = Callable[[NormalizedMessage], Awaitable[None]]


@dataclass(slots=True)
class FetchOutcome:
    messages: list[NormalizedMessage] = field(default_factory=list)
    errors: list[MessageFetchError] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.errors)


class MessageFetcher:
    def __init__(self, adapters: dict[str, ProviderAdapter]):
        self.adapters = adapters
        self._callbacks: dict[tuple[str | None, str], MessageCallback] = {}

    async def fetch_all(
        self, providers: list[ProviderCredentials], options: FetchOptions
    ) -> FetchOutcome:
        """
        Fetch from every provider independently.

        Raises:
            AllProvidersFailedError: every provider raised; carries each error
        """
        if not providers:
            return FetchOutcome()

        results = await asyncio.gather(
            *(self._fetch_one(credentials, options) for credentials in providers)
        )

        outcome = FetchOutcome()
        for credentials, result in zip(providers, results, strict=True):
            if isinstance(result, MessageFetchError):
                outcome.errors.append(result)
                logger.warning(
                    "Provider fetch failed",
                    provider=credentials.provider,
                    user_id=credentials.user_id,
                    status_code=result.status_code,
                    error_code=result.error_code,
                    retryable=result.retryable,
                    error=str(result),
                )
            else:
                outcome.messages.extend(result)

        if len(outcome.errors) == len(providers):
            raise AllProvidersFailedError(outcome.errors)

        outcome.messages.sort(key=lambda m: m.received_at, reverse=True)
        logger.info(
            "Fetched messages from providers",
            providers=[p.provider for p in providers],
            message_count=len(outcome.messages),
            failed_providers=[e.provider for e in outcome.errors],
        )
        return outcome

    async def _fetch_one(
        self, credentials: ProviderCredentials, options: FetchOptions
    ) -> list[NormalizedMessage] | MessageFetchError:
        adapter = self.adapters.get(credentials.provider)
        if adapter is None:
            return MessageFetchError(
                f"Unsupported provider: {credentials.provider}",
                provider=credentials.provider,
                retryable=False,
            )
        try:
            return await adapter.fetch(credentials, options)
        except MessageFetchError as e:
            return e
        except Exception as e:
            logger.exception("Unexpected provider adapter error", provider=credentials.provider)
            return MessageFetchError(
                f"Failed to fetch {credentials.provider} emails: {e}",
                provider=credentials.provider,
                retryable=False,
            )

    async def setup_realtime_monitoring(
        self, credentials: ProviderCredentials, callback: MessageCallback
    ) -> dict[str, Any]:
        """
        Register a push subscription with the provider and remember the callback.

        The provider's notification is delivered to this service out of band;
        ``deliver_notification`` routes the resulting message to the callback.
        """
        adapter = self.adapters.get(credentials.provider)
        if adapter is None:
            raise MessageFetchError(
                f"Unsupported provider: {credentials.provider}",
                provider=credentials.provider,
                retryable=False,
            )
        subscription = await adapter.watch(credentials)
        self._callbacks[(credentials.user_id, credentials.provider)] = callback
        logger.info(
            "Realtime monitoring registered",
            provider=credentials.provider,
            user_id=credentials.user_id,
        )
        return subscription

    async def deliver_notification(self, user_id: str, message: NormalizedMessage) -> bool:
        """Hand a pushed message to its registered callback. False when nobody listens."""
        callback = self._callbacks.get((user_id, message.provider))
        if callback is None:
            logger.debug("No realtime listener", user_id=user_id, provider=message.provider)
            return False
        await callback(message)
        return True

    def stop_realtime_monitoring(self, user_id: str, provider: str) -> bool:
        return self._callbacks.pop((user_id, provider), None) is not None
