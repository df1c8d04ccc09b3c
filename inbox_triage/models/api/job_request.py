"""
Processing job and message request models.
Used by routes for input validation.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from inbox_triage.models.domain.analysis_domain import PriorityLevel
from inbox_triage.models.domain.message_domain import FetchOptions


class CreateJobRequest(BaseModel):
    """Request for starting an email processing job."""

    providers: list[Literal["gmail", "outlook"]] | None = Field(
        default=None, description="Providers to fetch from (default: every connected provider)"
    )
    max_results: int | None = Field(
        default=None, ge=1, le=500, description="Maximum messages to fetch per provider"
    )
    query: str | None = Field(default=None, description="Provider search query")
    start_date: datetime | None = Field(default=None, description="Only messages received after this time")
    end_date: datetime | None = Field(default=None, description="Only messages received before this time")
    label_ids: list[str] = Field(default_factory=list, description="Provider label IDs to filter by")
    include_spam_trash: bool = Field(default=False, description="Include spam and trash messages")

    @model_validator(mode="after")
    def _check_dates(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be before end_date")
        return self

    def to_fetch_options(self) -> FetchOptions:
        return FetchOptions(
            max_results=self.max_results,
            query=self.query,
            start_date=self.start_date,
            end_date=self.end_date,
            label_ids=list(self.label_ids),
            include_spam_trash=self.include_spam_trash,
        )


class MarkReadRequest(BaseModel):
    """Request for changing a message's read state."""

    is_read: bool = Field(default=True, description="New read state")


class SetPriorityRequest(BaseModel):
    """Request for overriding the analyzed priority of a message."""

    priority: PriorityLevel = Field(..., description="Priority level (critical, high, medium, low)")
