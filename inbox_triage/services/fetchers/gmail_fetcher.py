"""
Gmail adapter.
Lists message ids page by page, then loads each message in full format and
maps it onto NormalizedMessage.
"""

import base64
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime
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

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_LIST_LIMIT = 500


class GmailFetcher(ProviderAdapter):
    provider = "gmail"

    def __init__(self, *args, pubsub_topic: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.pubsub_topic = pubsub_topic

    async def fetch(
        self, credentials: ProviderCredentials, options: FetchOptions
    ) -> list[NormalizedMessage]:
        max_results = options.max_results or self.default_max_results

        async with self.session() as client:
            message_ids = await self._list_message_ids(client, credentials, options, max_results)

            messages: list[NormalizedMessage] = []
            for message_id in message_ids:
                try:
                    data = await self.request_json(
                        client,
                        "GET",
                        f"{GMAIL_API_BASE_URL}/users/me/messages/{message_id}",
                        credentials,
                        operation="get_message",
                        params={"format": "full"},
                    )
                    messages.append(parse_gmail_message(data))
                except (MessageFetchError, KeyError, ValueError) as e:
                    logger.warning(
                        "Skipping Gmail message that failed to load",
                        message_id=message_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )

        logger.info(
            "Gmail fetch completed",
            user_id=credentials.user_id,
            listed=len(message_ids),
            fetched=len(messages),
        )
        return messages

    async def _list_message_ids(
        self, client, credentials: ProviderCredentials, options: FetchOptions, max_results: int
    ) -> list[str]:
        ids: list[str] = []
        page_token: str | None = None
        query = build_gmail_query(options)

        while len(ids) < max_results:
            params: dict[str, Any] = {
                "maxResults": min(self.page_size, max_results - len(ids), GMAIL_LIST_LIMIT),
                "includeSpamTrash": str(options.include_spam_trash).lower(),
            }
            if query:
                params["q"] = query
            if options.label_ids:
                params["labelIds"] = options.label_ids
            if page_token:
                params["pageToken"] = page_token

            data = await self.request_json(
                client,
                "GET",
                f"{GMAIL_API_BASE_URL}/users/me/messages",
                credentials,
                operation="list_messages",
                params=params,
            )
            ids.extend(m["id"] for m in data.get("messages", []) if m.get("id"))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return ids[:max_results]

    async def watch(self, credentials: ProviderCredentials) -> dict[str, Any]:
        if not self.pubsub_topic:
            raise MessageFetchError(
                "GOOGLE_PUBSUB_TOPIC is not configured", provider=self.provider, retryable=False
            )
        async with self.session() as client:
            return await self.request_json(
                client,
                "POST",
                f"{GMAIL_API_BASE_URL}/users/me/watch",
                credentials,
                operation="watch",
                json_body={
                    "topicName": self.pubsub_topic,
                    "labelIds": ["INBOX"],
                    "labelFilterAction": "include",
                },
            )


def build_gmail_query(options: FetchOptions) -> str:
    """Search query with after:/before: date bounds appended."""
    parts = []
    if options.query:
        parts.append(options.query.strip())
    if options.start_date:
        parts.append(f"after:{options.start_date.strftime('%Y/%m/%d')}")
    if options.end_date:
        parts.append(f"before:{options.end_date.strftime('%Y/%m/%d')}")
    return " ".join(p for p in parts if p)


def parse_gmail_message(data: dict[str, Any]) -> NormalizedMessage:
    payload = data.get("payload") or {}
    headers = {h["name"].lower(): h.get("value", "") for h in payload.get("headers", [])}
    labels = tuple(data.get("labelIds") or [])

    bodies = {"text": "", "html": ""}
    attachment_count = _walk_parts(payload, bodies)

    sender = _parse_addresses(headers.get("from", ""))
    sent_at = _parse_date_header(headers.get("date"))
    internal_date = data.get("internalDate")
    if internal_date:
        received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
    else:
        received_at = sent_at or datetime.now(UTC)

    return NormalizedMessage(
        id=data["id"],
        thread_id=data.get("threadId") or data["id"],
        provider="gmail",
        sender=sender[0] if sender else EmailAddress(address=""),
        subject=headers.get("subject", ""),
        received_at=received_at,
        sent_at=sent_at,
        to=tuple(_parse_addresses(headers.get("to", ""))),
        cc=tuple(_parse_addresses(headers.get("cc", ""))),
        bcc=tuple(_parse_addresses(headers.get("bcc", ""))),
        body_text=bodies["text"],
        body_html=bodies["html"],
        labels=labels,
        is_read="UNREAD" not in labels,
        is_starred="STARRED" in labels,
        attachment_count=attachment_count,
        size=int(data.get("sizeEstimate") or 0),
    )


def _walk_parts(part: dict[str, Any], bodies: dict[str, str]) -> int:
    """Collect the first text/plain and text/html bodies; return the attachment count."""
    mime_type = part.get("mimeType", "")
    body = part.get("body") or {}
    attachments = 0

    if part.get("filename"):
        attachments += 1
    elif mime_type == "text/plain" and body.get("data") and not bodies["text"]:
        bodies["text"] = decode_base64url(body["data"])
    elif mime_type == "text/html" and body.get("data") and not bodies["html"]:
        bodies["html"] = decode_base64url(body["data"])
    elif not mime_type and not part.get("parts") and body.get("data") and not bodies["text"]:
        bodies["text"] = decode_base64url(body["data"])

    for child in part.get("parts") or []:
        attachments += _walk_parts(child, bodies)
    return attachments


def decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def _parse_addresses(value: str) -> list[EmailAddress]:
    if not value:
        return []
    return [
        EmailAddress(address=address, name=name or None)
        for name, address in getaddresses([value])
        if address
    ]


def _parse_date_header(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
