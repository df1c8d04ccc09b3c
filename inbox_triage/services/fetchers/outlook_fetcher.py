"""
Outlook adapter over Microsoft Graph.
Follows @odata.nextLink until max_results messages are collected.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from inbox_triage.errors import MessageFetchError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.message_domain import (
    EmailAddress,
    FetchOptions,
    NormalizedMessage,
    ProviderCredentials,
)
from inbox_triage.services.fetchers.base import ProviderAdapter

logger = get_logger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SELECT_FIELDS = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,bccRecipients,body,"
    "receivedDateTime,sentDateTime,isRead,hasAttachments,flag,categories,importance"
)
# Graph caps mail subscriptions at just under three days
GRAPH_SUBSCRIPTION_MINUTES = 4230


class OutlookFetcher(ProviderAdapter):
    provider = "outlook"

    def __init__(self, *args, notification_url: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.notification_url = notification_url

    async def fetch(
        self, credentials: ProviderCredentials, options: FetchOptions
    ) -> list[NormalizedMessage]:
        max_results = options.max_results or self.default_max_results
        messages: list[NormalizedMessage] = []

        url: str | None = f"{GRAPH_API_BASE_URL}/me/messages"
        params: dict[str, Any] | None = build_graph_params(options, min(self.page_size, max_results))

        async with self.session() as client:
            while url and len(messages) < max_results:
                data = await self.request_json(
                    client, "GET", url, credentials, operation="list_messages", params=params
                )
                for item in data.get("value", []):
                    try:
                        messages.append(parse_graph_message(item))
                    except (KeyError, ValueError) as e:
                        logger.warning(
                            "Skipping Outlook message that failed to parse",
                            message_id=item.get("id"),
                            error=str(e),
                        )
                # nextLink already carries every query parameter
                url = data.get("@odata.nextLink")
                params = None

        logger.info(
            "Outlook fetch completed", user_id=credentials.user_id, fetched=len(messages[:max_results])
        )
        return messages[:max_results]

    async def watch(self, credentials: ProviderCredentials) -> dict[str, Any]:
        if not self.notification_url:
            raise MessageFetchError(
                "GRAPH_NOTIFICATION_URL is not configured", provider=self.provider, retryable=False
            )
        expires = datetime.now(UTC) + timedelta(minutes=GRAPH_SUBSCRIPTION_MINUTES)
        async with self.session() as client:
            return await self.request_json(
                client,
                "POST",
                f"{GRAPH_API_BASE_URL}/subscriptions",
                credentials,
                operation="watch",
                json_body={
                    "changeType": "created",
                    "notificationUrl": self.notification_url,
                    "resource": "me/mailFolders('Inbox')/messages",
                    "expirationDateTime": expires.isoformat().replace("+00:00", "Z"),
                },
            )


def build_graph_params(options: FetchOptions, top: int) -> dict[str, Any]:
    params: dict[str, Any] = {"$top": top, "$select": GRAPH_SELECT_FIELDS}

    if options.query:
        # Graph rejects $search combined with $filter or $orderby; dates move into KQL
        terms = [options.query.strip().replace('"', "")]
        if options.start_date:
            terms.append(f"received>={options.start_date.strftime('%Y-%m-%d')}")
        if options.end_date:
            terms.append(f"received<={options.end_date.strftime('%Y-%m-%d')}")
        params["$search"] = '"' + " AND ".join(t for t in terms if t) + '"'
        return params

    params["$orderby"] = "receivedDateTime desc"
    filters = []
    if options.start_date:
        filters.append(f"receivedDateTime ge {_graph_datetime(options.start_date)}")
    if options.end_date:
        filters.append(f"receivedDateTime le {_graph_datetime(options.end_date)}")
    if filters:
        params["$filter"] = " and ".join(filters)
    return params


def parse_graph_message(item: dict[str, Any]) -> NormalizedMessage:
    body = item.get("body") or {}
    content_type = (body.get("contentType") or "").lower()
    content = body.get("content") or ""
    flag = (item.get("flag") or {}).get("flagStatus")

    return NormalizedMessage(
        id=item["id"],
        thread_id=item.get("conversationId") or item["id"],
        provider="outlook",
        sender=_graph_address(item.get("from")) or EmailAddress(address=""),
        subject=item.get("subject") or "",
        received_at=_parse_graph_datetime(item["receivedDateTime"]),
        sent_at=_parse_graph_datetime(item["sentDateTime"]) if item.get("sentDateTime") else None,
        to=_graph_addresses(item.get("toRecipients")),
        cc=_graph_addresses(item.get("ccRecipients")),
        bcc=_graph_addresses(item.get("bccRecipients")),
        body_text=content if content_type == "text" else "",
        body_html=content if content_type == "html" else "",
        labels=tuple(item.get("categories") or []),
        is_read=bool(item.get("isRead", False)),
        is_starred=flag == "flagged",
        attachment_count=1 if item.get("hasAttachments") else 0,
        size=len(content.encode("utf-8")),
    )


def _graph_address(recipient: dict[str, Any] | None) -> EmailAddress | None:
    if not recipient:
        return None
    email = recipient.get("emailAddress") or {}
    if not email.get("address"):
        return None
    return EmailAddress(address=email["address"], name=email.get("name") or None)


def _graph_addresses(recipients: list[dict[str, Any]] | None) -> tuple[EmailAddress, ...]:
    parsed = (_graph_address(r) for r in recipients or [])
    return tuple(a for a in parsed if a is not None)


def _graph_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_graph_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
