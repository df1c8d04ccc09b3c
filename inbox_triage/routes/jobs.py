"""
Processing Job Routes
HTTP trigger surface for email processing jobs.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from inbox_triage.errors import StorageError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.middleware.rate_limit_dependencies import rate_limit_dependency
from inbox_triage.middleware.upstream_identity import user_id_dependency
from inbox_triage.models.api.job_request import CreateJobRequest
from inbox_triage.models.api.job_response import (
    JobCancelResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    MessageListResponse,
    MessageResponse,
)
from inbox_triage.models.domain.job_domain import ProcessingJob
from inbox_triage.services.container import Pipeline, get_pipeline
from inbox_triage.services.message_service import MessageService

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _storage_unavailable(e: StorageError, user_id: str) -> HTTPException:
    logger.error("Job storage unavailable", user_id=user_id, operation=e.operation, error=str(e))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "storage_unavailable", "message": "Job storage is temporarily unavailable"},
    )


async def _owned_job(pipeline: Pipeline, job_id: str, user_id: str) -> ProcessingJob:
    try:
        job = await pipeline.job_manager.get_job_status(job_id)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)

    # Other users' jobs are indistinguishable from missing ones
    if job is None or job.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "job_not_found", "message": f"Job {job_id} not found"},
        )
    return job


@router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit_dependency("email"))],
)
async def create_job(
    body: CreateJobRequest,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Start fetching and analyzing the user's email. Returns before any work is done."""
    try:
        connected = await pipeline.credential_supplier.get_credentials(user_id)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)

    if body.providers is not None:
        missing = sorted(set(body.providers) - {c.provider for c in connected})
        if missing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error": "provider_not_connected",
                    "message": f"No valid connection for: {', '.join(missing)}",
                },
            )
        connected = [c for c in connected if c.provider in body.providers]

    if not connected:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "no_providers", "message": "No connected email providers"},
        )

    try:
        job = await pipeline.job_manager.start_processing(user_id, connected, body.to_fetch_options())
    except StorageError as e:
        raise _storage_unavailable(e, user_id)

    logger.info("Processing job accepted", job_id=job.id, user_id=user_id, providers=job.provider_names)
    return JobResponse.from_job(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(default=20, ge=1, le=100, description="Maximum jobs to return"),
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        jobs = await pipeline.job_manager.list_jobs(user_id, limit)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)
    return JobListResponse(jobs=[JobResponse.from_job(j) for j in jobs], count=len(jobs))


@router.get("/stats", response_model=JobStatsResponse)
async def get_stats(
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Aggregate processing statistics for the user."""
    try:
        stats = await pipeline.job_manager.get_processing_stats(user_id)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)
    return JobStatsResponse(**stats)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    job = await _owned_job(pipeline, job_id, user_id)
    return JobResponse.from_job(job)


@router.get("/{job_id}/results", response_model=MessageListResponse)
async def get_job_results(
    job_id: str,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Persisted analyses of a job, including partial results of failed or cancelled jobs."""
    await _owned_job(pipeline, job_id, user_id)
    try:
        records = await pipeline.job_manager.get_job_results(job_id)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)

    messages = [MessageResponse(**MessageService.to_listing(r)) for r in records]
    return MessageListResponse(messages=messages, count=len(messages))


@router.post("/{job_id}/cancel", response_model=JobCancelResponse)
async def cancel_job(
    job_id: str,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    job = await _owned_job(pipeline, job_id, user_id)
    try:
        cancelled = await pipeline.job_manager.cancel_job(job_id)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)

    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "job_not_cancellable",
                "message": f"Job is {job.status.value}; only processing jobs can be cancelled",
            },
        )
    return JobCancelResponse(job_id=job_id, cancelled=True, message="Job cancelled")
