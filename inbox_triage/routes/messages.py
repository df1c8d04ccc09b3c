"""
Message Routes
Inbox listing of analyzed messages and the mutations that invalidate it.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from inbox_triage.errors import RateLimitError, StorageError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.middleware.rate_limit_dependencies import rate_limit_dependency
from inbox_triage.middleware.upstream_identity import user_id_dependency
from inbox_triage.models.api.job_request import MarkReadRequest, SetPriorityRequest
from inbox_triage.models.api.job_response import MessageListResponse, MessageResponse, MessageSummaryResponse
from inbox_triage.repositories.job_repository import MESSAGE_FILTERS
from inbox_triage.services.container import Pipeline, get_pipeline

logger = get_logger(__name__)

router = APIRouter(
    prefix="/messages",
    tags=["messages"],
    dependencies=[Depends(rate_limit_dependency("api"))],
)


def _not_found(message_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "message_not_found", "message": f"Message {message_id} not found"},
    )


def _storage_unavailable(e: StorageError, user_id: str) -> HTTPException:
    logger.error("Message storage unavailable", user_id=user_id, operation=e.operation, error=str(e))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "storage_unavailable", "message": "Message storage is temporarily unavailable"},
    )


@router.get("", response_model=MessageListResponse)
async def list_messages(
    status_filter: str = Query(default="all", description=f"One of: {', '.join(MESSAGE_FILTERS)}"),
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    if status_filter not in MESSAGE_FILTERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_filter", "message": f"Unknown status filter: {status_filter}"},
        )
    try:
        listing = await pipeline.message_service.list_messages(user_id, status_filter)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)

    return MessageListResponse(
        messages=[MessageResponse(**m) for m in listing],
        count=len(listing),
        status_filter=status_filter,
    )


@router.get("/{message_id}", response_model=MessageResponse)
async def get_message(
    message_id: str,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        message = await pipeline.message_service.get_message(user_id, message_id)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)
    if message is None:
        raise _not_found(message_id)
    return MessageResponse(**message)


@router.post("/{message_id}/read")
async def mark_read(
    message_id: str,
    body: MarkReadRequest,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        updated = await pipeline.message_service.mark_read(user_id, message_id, body.is_read)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)
    if not updated:
        raise _not_found(message_id)
    return {"message_id": message_id, "is_read": body.is_read}


@router.post("/{message_id}/priority")
async def set_priority(
    message_id: str,
    body: SetPriorityRequest,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        updated = await pipeline.message_service.set_priority(user_id, message_id, body.priority)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)
    if not updated:
        raise _not_found(message_id)
    return {"message_id": message_id, "priority_level": body.priority.value}


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        deleted = await pipeline.message_service.delete_message(user_id, message_id)
    except StorageError as e:
        raise _storage_unavailable(e, user_id)
    if not deleted:
        raise _not_found(message_id)
    return {"message_id": message_id, "deleted": True}


@router.post(
    "/{message_id}/reprocess",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit_dependency("ai"))],
)
async def reprocess_message(
    message_id: str,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Analyze a stored message again, ignoring any cached analysis."""
    try:
        message = await pipeline.message_service.reprocess(user_id, message_id)
    except RateLimitError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "rate_limit_exceeded", "message": str(e), "retry_after": e.retry_after_seconds},
            headers={"Retry-After": str(e.retry_after_seconds)},
        )
    except StorageError as e:
        raise _storage_unavailable(e, user_id)
    if message is None:
        raise _not_found(message_id)
    return MessageResponse(**message)


@router.post(
    "/{message_id}/summary",
    response_model=MessageSummaryResponse,
    dependencies=[Depends(rate_limit_dependency("ai"))],
)
async def summarize_message(
    message_id: str,
    user_id: str = Depends(user_id_dependency),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Summary and key points for a stored message."""
    try:
        summary = await pipeline.message_service.summarize(user_id, message_id)
    except RateLimitError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "rate_limit_exceeded", "message": str(e), "retry_after": e.retry_after_seconds},
            headers={"Retry-After": str(e.retry_after_seconds)},
        )
    except StorageError as e:
        raise _storage_unavailable(e, user_id)
    if summary is None:
        raise _not_found(message_id)
    return MessageSummaryResponse(**summary.to_dict())
