"""
Message Domain Models
Provider-agnostic email representation produced by the fetchers, plus the
credentials and options the fetchers consume.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

SUPPORTED_PROVIDERS = ("gmail", "outlook")


@dataclass(slots=True, frozen=True)
class EmailAddress:
    address: str
    name: str | None = None

    def display(self) -> str:
        return f"{self.name} ({self.address})" if self.name else self.address

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmailAddress:
        return cls(address=data.get("address", ""), name=data.get("name"))


@dataclass(slots=True, frozen=True)
class NormalizedMessage:
    """One email, immutable once fetched."""

    id: str
    thread_id: str
    provider: str
    sender: EmailAddress
    subject: str
    received_at: datetime
    sent_at: datetime | None = None
    to: tuple[EmailAddress, ...] = ()
    cc: tuple[EmailAddress, ...] = ()
    bcc: tuple[EmailAddress, ...] = ()
    body_text: str = ""
    body_html: str = ""
    labels: tuple[str, ...] = ()
    is_read: bool = False
    is_starred: bool = False
    attachment_count: int = 0
    size: int = 0

    @property
    def has_attachments(self) -> bool:
        return self.attachment_count > 0

    def preferred_body(self) -> str:
        """Plain text body, falling back to the HTML body stripped to text."""
        if self.body_text.strip():
            return self.body_text
        if self.body_html:
            from inbox_triage.services.fetchers.html import html_to_text

            return html_to_text(self.body_html)
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "provider": self.provider,
            "sender": self.sender.to_dict(),
            "subject": self.subject,
            "received_at": self.received_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "to": [a.to_dict() for a in self.to],
            "cc": [a.to_dict() for a in self.cc],
            "bcc": [a.to_dict() for a in self.bcc],
            "body_text": self.body_text,
            "body_html": self.body_html,
            "labels": list(self.labels),
            "is_read": self.is_read,
            "is_starred": self.is_starred,
            "attachment_count": self.attachment_count,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NormalizedMessage:
        sent_at = data.get("sent_at")
        return cls(
            id=data["id"],
            thread_id=data.get("thread_id") or data["id"],
            provider=data.get("provider", "gmail"),
            sender=EmailAddress.from_dict(data.get("sender") or {}),
            subject=data.get("subject", ""),
            received_at=_parse_datetime(data["received_at"]),
            sent_at=_parse_datetime(sent_at) if sent_at else None,
            to=tuple(EmailAddress.from_dict(a) for a in data.get("to", [])),
            cc=tuple(EmailAddress.from_dict(a) for a in data.get("cc", [])),
            bcc=tuple(EmailAddress.from_dict(a) for a in data.get("bcc", [])),
            body_text=data.get("body_text", ""),
            body_html=data.get("body_html", ""),
            labels=tuple(data.get("labels", [])),
            is_read=bool(data.get("is_read", False)),
            is_starred=bool(data.get("is_starred", False)),
            attachment_count=int(data.get("attachment_count", 0)),
            size=int(data.get("size", 0)),
        )


@dataclass(slots=True)
class ProviderCredentials:
    """Access token for one provider, supplied already valid by the credential supplier."""

    provider: str
    access_token: str
    user_id: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(UTC))


@dataclass(slots=True)
class FetchOptions:
    max_results: int | None = None
    query: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    label_ids: list[str] = field(default_factory=list)
    include_spam_trash: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_results": self.max_results,
            "query": self.query,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "label_ids": list(self.label_ids),
            "include_spam_trash": self.include_spam_trash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FetchOptions:
        data = data or {}
        return cls(
            max_results=data.get("max_results"),
            query=data.get("query"),
            start_date=_parse_datetime(data["start_date"]) if data.get("start_date") else None,
            end_date=_parse_datetime(data["end_date"]) if data.get("end_date") else None,
            label_ids=list(data.get("label_ids") or []),
            include_spam_trash=bool(data.get("include_spam_trash", False)),
        )


def _parse_datetime(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
