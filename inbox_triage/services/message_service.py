"""
Message mutations and the cached inbox listing.

Every mutation drops the user's email-list cache entries before returning,
so a listing read after a mutation never reflects the old state.
"""

from typing import Any

from inbox_triage.errors import RateLimitError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.analysis_domain import AnalysisRequest, MessageSummary, PriorityLevel
from inbox_triage.models.domain.job_domain import ProcessingResult
from inbox_triage.models.domain.message_domain import NormalizedMessage
from inbox_triage.repositories.job_repository import JobRepository
from inbox_triage.services.analysis.analysis_engine import AnalysisEngine
from inbox_triage.services.cache.cache_service import AnalysisCache, EmailListCache
from inbox_triage.services.suppliers import UserContextSupplier

logger = get_logger(__name__)


class MessageService:
    def __init__(
        self,
        repository: JobRepository,
        engine: AnalysisEngine,
        email_list_cache: EmailListCache,
        analysis_cache: AnalysisCache,
        user_context_supplier: UserContextSupplier,
    ):
        self.repository = repository
        self.engine = engine
        self.email_list_cache = email_list_cache
        self.analysis_cache = analysis_cache
        self.user_context_supplier = user_context_supplier

    async def list_messages(self, user_id: str, status_filter: str | None = None) -> list[dict[str, Any]]:
        cached = await self.email_list_cache.get(user_id, status_filter)
        if cached is not None:
            return cached

        records = await self.repository.list_messages(user_id, status_filter)
        listing = [self.to_listing(r) for r in records]
        await self.email_list_cache.set(user_id, listing, status_filter)
        return listing

    async def get_message(self, user_id: str, message_id: str) -> dict[str, Any] | None:
        record = await self.repository.get_message(user_id, message_id)
        return self.to_listing(record) if record else None

    async def mark_read(self, user_id: str, message_id: str, is_read: bool = True) -> bool:
        updated = await self.repository.update_message_state(user_id, message_id, is_read=is_read)
        await self.email_list_cache.invalidate_user(user_id)
        if updated:
            logger.info("Message read state updated", user_id=user_id, message_id=message_id, is_read=is_read)
        return updated

    async def set_priority(self, user_id: str, message_id: str, level: PriorityLevel) -> bool:
        updated = await self.repository.update_message_state(user_id, message_id, priority_level=level)
        await self.email_list_cache.invalidate_user(user_id)
        if updated:
            logger.info("Message priority overridden", user_id=user_id, message_id=message_id, priority=level.value)
        return updated

    async def delete_message(self, user_id: str, message_id: str) -> bool:
        deleted = await self.repository.delete_message(user_id, message_id)
        await self.email_list_cache.invalidate_user(user_id)
        await self.analysis_cache.invalidate(message_id)
        if deleted:
            logger.info("Message deleted", user_id=user_id, message_id=message_id)
        return deleted

    async def reprocess(self, user_id: str, message_id: str) -> dict[str, Any] | None:
        """
        Run analysis again for a stored message, bypassing the analysis cache.

        Returns the updated listing entry, or None when the message is unknown.

        Raises:
            RateLimitError: the user's analysis budget is exhausted
        """
        record = await self.repository.get_message(user_id, message_id)
        if record is None:
            return None

        await self.analysis_cache.invalidate(message_id)
        await self.email_list_cache.invalidate_user(user_id)

        message = NormalizedMessage.from_dict(record["message"])
        context = await self.user_context_supplier.get_user_context(user_id)
        try:
            response = await self.engine.analyze(AnalysisRequest(message, user_id, context))
        except RateLimitError:
            logger.warning("Reprocess rate limited", user_id=user_id, message_id=message_id)
            raise

        result = ProcessingResult(
            message_id=message.id,
            message=message,
            analysis=response.analysis,
            success=response.success,
            error=response.error,
            retryable=response.retryable,
            processing_time_ms=response.analysis.processing_time_ms,
        )
        await self.repository.replace_analysis(user_id, message_id, result)
        # Listing may have been refilled while the model call ran
        await self.email_list_cache.invalidate_user(user_id)
        logger.info(
            "Message reprocessed",
            user_id=user_id,
            message_id=message_id,
            success=response.success,
        )
        return await self.get_message(user_id, message_id)

    async def summarize(self, user_id: str, message_id: str) -> MessageSummary | None:
        """
        Model summary with key points for a stored message. Read-only: the
        stored analysis and the listing are left untouched.

        Raises:
            RateLimitError: the user's analysis budget is exhausted
        """
        record = await self.repository.get_message(user_id, message_id)
        if record is None:
            return None
        message = NormalizedMessage.from_dict(record["message"])
        return await self.engine.generate_summary(message, user_id)

    @staticmethod
    def to_listing(record: dict[str, Any]) -> dict[str, Any]:
        received_at = record.get("received_at")
        return {
            "message_id": record["message_id"],
            "job_id": record.get("job_id"),
            "provider": record["provider"],
            "thread_id": record.get("thread_id"),
            "subject": record.get("subject") or "",
            "sender": record.get("sender") or "",
            "received_at": received_at.isoformat() if hasattr(received_at, "isoformat") else received_at,
            "is_read": bool(record.get("is_read")),
            "is_starred": bool(record.get("is_starred")),
            "priority_level": record["priority_level"],
            "priority_score": float(record.get("priority_score") or 0.0),
            "action_required": bool(record.get("action_required")),
            "summary": record.get("summary") or "",
            "success": bool(record.get("success")),
            "error": record.get("error"),
            "retryable": bool(record.get("retryable")),
        }
