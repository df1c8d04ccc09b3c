"""
Processing job and message response models.
Used by routes for output formatting.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from inbox_triage.models.domain.job_domain import ProcessingJob


class JobResponse(BaseModel):
    """Response model for a processing job."""

    job_id: str = Field(..., description="Job ID")
    user_id: str = Field(..., description="Owner of the job")
    status: str = Field(..., description="pending, processing, completed or failed")
    progress: int = Field(..., ge=0, le=100, description="Progress percentage")
    providers: list[str] = Field(default_factory=list, description="Providers fetched by this job")
    total_emails: int = Field(default=0, description="Messages fetched")
    processed_emails: int = Field(default=0, description="Messages analyzed so far")
    error: str | None = Field(None, description="Failure reason when status is failed")
    retryable: bool = Field(default=False, description="Whether resubmitting may succeed")
    created_at: datetime = Field(..., description="When the job was created")
    updated_at: datetime = Field(..., description="Last state change")

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "JobResponse":
        return cls(
            job_id=job.id,
            user_id=job.user_id,
            status=job.status.value,
            progress=job.progress,
            providers=job.provider_names,
            total_emails=job.total_emails,
            processed_emails=job.processed_emails,
            error=job.error,
            retryable=job.retryable,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class JobListResponse(BaseModel):
    jobs: list[JobResponse] = Field(..., description="Jobs, newest first")
    count: int = Field(..., description="Number of jobs returned")


class JobCancelResponse(BaseModel):
    job_id: str = Field(..., description="Job ID")
    cancelled: bool = Field(..., description="Whether the job was cancelled")
    message: str = Field(..., description="Human-readable outcome")


class JobStatsResponse(BaseModel):
    """Aggregate processing statistics for a user."""

    total_jobs: int = Field(default=0, description="Jobs ever created")
    completed_jobs: int = Field(default=0, description="Jobs that completed")
    failed_jobs: int = Field(default=0, description="Jobs that failed or were cancelled")
    total_emails_processed: int = Field(default=0, description="Messages analyzed by completed jobs")
    average_processing_time_ms: float = Field(default=0.0, description="Mean completed-job duration")


class MessageResponse(BaseModel):
    """Analyzed message as shown in the inbox listing."""

    message_id: str = Field(..., description="Provider message ID")
    job_id: str | None = Field(None, description="Job that produced the analysis")
    provider: str = Field(..., description="gmail or outlook")
    thread_id: str | None = Field(None, description="Conversation ID")
    subject: str = Field(default="", description="Message subject")
    sender: str = Field(default="", description="Sender address")
    received_at: str | None = Field(None, description="ISO timestamp the message was received")
    is_read: bool = Field(default=False, description="Whether the message is read")
    is_starred: bool = Field(default=False, description="Whether the message is starred")
    priority_level: str = Field(..., description="critical, high, medium or low")
    priority_score: float = Field(..., ge=0, le=1, description="Derived priority score")
    action_required: bool = Field(default=False, description="Whether the message needs action")
    summary: str = Field(default="", description="Model summary")
    success: bool = Field(..., description="False when the analysis is a fallback")
    error: str | None = Field(None, description="Analysis failure reason")
    retryable: bool = Field(default=False, description="Whether reprocessing may succeed")


class MessageListResponse(BaseModel):
    messages: list[MessageResponse] = Field(..., description="Messages, highest priority first")
    count: int = Field(..., description="Number of messages returned")
    status_filter: str = Field(default="all", description="Applied filter")


class MessageSummaryResponse(BaseModel):
    message_id: str = Field(..., description="Provider message ID")
    summary: str = Field(..., description="Two to three sentence summary")
    confidence: float = Field(..., ge=0, le=1, description="Heuristic confidence in the summary")
    key_points: list[str] = Field(default_factory=list, description="Up to five key points")
    is_fallback: bool = Field(default=False, description="True when the model was unavailable")
    model_used: str = Field(..., description="Model that wrote the summary")
