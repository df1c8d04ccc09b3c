"""
Job Domain Models
Processing job lifecycle and per-message outcomes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from inbox_triage.models.domain.analysis_domain import AnalysisResult
from inbox_triage.models.domain.message_domain import (
    FetchOptions,
    NormalizedMessage,
    ProviderCredentials,
)

CANCELLED_ERROR = "Job cancelled by user"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(slots=True)
class ProcessingResult:
    message_id: str
    message: NormalizedMessage
    analysis: AnalysisResult
    success: bool
    error: str | None = None
    retryable: bool = False
    processing_time_ms: int = 0


@dataclass(slots=True)
class ProcessingJob:
    """Represents an email_processing_jobs row plus its in-memory credentials."""

    id: str
    user_id: str
    providers: list[ProviderCredentials]
    options: FetchOptions = field(default_factory=FetchOptions)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total_emails: int = 0
    processed_emails: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None
    retryable: bool = False
    results: list[ProcessingResult] = field(default_factory=list)

    @property
    def provider_names(self) -> list[str]:
        return [p.provider for p in self.providers]

    @property
    def is_cancelled(self) -> bool:
        return self.status == JobStatus.FAILED and self.error == CANCELLED_ERROR

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)

    def advance_progress(self, value: int) -> None:
        """Move progress forward only; it never decreases while a job runs."""
        self.progress = max(self.progress, min(100, value))
        self.touch()

    def summary(self) -> dict[str, Any]:
        return {
            "job_id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "progress": self.progress,
            "total_emails": self.total_emails,
            "processed_emails": self.processed_emails,
        }
