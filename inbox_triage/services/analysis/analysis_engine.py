"""
Analysis Engine
Turns a normalized message into a structured AnalysisResult.

Flow per message:
1. Analysis cache lookup (hit returns immediately)
2. Admission through the "analysis" limiter profile, keyed by user
3. Prompt + JSON-mode model call under an explicit retry policy
4. Schema-validated decode, derived priority score
5. Successful results written back to the analysis cache

Every failure other than a rate-limit denial degrades to the fallback
analysis with success=False and a retryable hint.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime

from inbox_triage.errors import AnalysisError, AnalysisValidationError, RateLimitError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.analysis_domain import (
    AnalysisRequest,
    AnalysisResponse,
    AnalysisResult,
    MessageSummary,
    SentimentType,
    calculate_summary_confidence,
)
from inbox_triage.models.domain.message_domain import NormalizedMessage
from inbox_triage.services.analysis.openai_client import ModelClient, classify_model_error
from inbox_triage.services.analysis.prompts import (
    SUMMARY_SYSTEM_PROMPT,
    SYSTEM_PROMPT,
    build_analysis_prompt,
    build_summary_prompt,
)
from inbox_triage.services.analysis.result_parser import decode_analysis, decode_summary
from inbox_triage.services.cache.cache_service import AnalysisCache
from inbox_triage.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

ANALYSIS_PROFILE = "analysis"
VIP_SUBJECT_KEYWORDS = ("urgent", "important", "meeting")
EXECUTIVE_DOMAIN_MARKERS = ("ceo", "cfo", "cto", "president", "vp", "director", "executive")


def calculate_priority_score(
    message: NormalizedMessage, analysis: AnalysisResult, now: datetime | None = None
) -> float:
    """
    Weighted blend of the model's assessments plus a recency bonus, capped at 1.0.

    0.4 priority + 0.3 urgency + 0.2 vip + 0.1 action required
    + 0.1 negative sentiment + 0.1 (< 1 h old) or 0.05 (< 24 h old)
    """
    score = analysis.priority.score * 0.4
    score += analysis.urgency.score * 0.3
    if analysis.vip_contact:
        score += 0.2
    if analysis.action_required:
        score += 0.1
    if analysis.sentiment.type == SentimentType.NEGATIVE:
        score += 0.1

    now = now or datetime.now(UTC)
    hours_since_received = (now - message.received_at).total_seconds() / 3600
    if hours_since_received < 1:
        score += 0.1
    elif hours_since_received < 24:
        score += 0.05

    return max(0.0, min(1.0, score))


def identify_vip_contacts(messages: list[NormalizedMessage]) -> dict[str, float]:
    """
    Heuristic VIP score per sender address: frequency, long bodies, meeting or
    urgent subjects, executive-looking domains. Scores accumulate per message.
    """
    scores: dict[str, float] = {}
    for message in messages:
        sender = message.sender.address.lower()
        if not sender:
            continue
        score = scores.get(sender, 0.0) + 0.1

        if len(message.preferred_body()) > 500:
            score += 0.05

        subject = message.subject.lower()
        if any(keyword in subject for keyword in VIP_SUBJECT_KEYWORDS):
            score += 0.1

        domain = sender.split("@", 1)[1] if "@" in sender else ""
        if domain and any(marker in domain for marker in EXECUTIVE_DOMAIN_MARKERS):
            score += 0.2

        scores[sender] = round(score, 4)
    return scores


class AnalysisEngine:
    def __init__(
        self,
        model_client: ModelClient,
        rate_limiter: RateLimiter,
        analysis_cache: AnalysisCache,
        batch_size: int = 10,
        batch_delay_seconds: float = 1.0,
        max_concurrency: int = 10,
        body_char_limit: int = 2000,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.model_client = model_client
        self.rate_limiter = rate_limiter
        self.analysis_cache = analysis_cache
        self.batch_size = max(1, batch_size)
        self.batch_delay_seconds = batch_delay_seconds
        self.body_char_limit = body_char_limit
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._clock = clock

    async def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        """
        Analyze one message.

        Raises:
            RateLimitError: the user's analysis budget is exhausted
        """
        message = request.message

        cached = await self.analysis_cache.get(message.id)
        if cached is not None:
            logger.debug("Analysis cache hit", message_id=message.id)
            return AnalysisResponse(analysis=cached, success=True)

        decision = await self.rate_limiter.admit_profile(ANALYSIS_PROFILE, request.user_id)
        if not decision.allowed:
            raise RateLimitError(
                f"Analysis rate limit exceeded for user {request.user_id}",
                retry_after_seconds=decision.retry_after_seconds,
            )

        started = time.perf_counter()
        try:
            analysis = await self._run_model(request)
        except AnalysisError as e:
            return self._fallback(message, str(e), e.retryable, e.error_code)
        except Exception as e:
            error_code, retryable = classify_model_error(e)
            logger.exception("Unexpected analysis failure", message_id=message.id)
            return self._fallback(message, str(e) or type(e).__name__, retryable, error_code)

        analysis.processing_time_ms = int((time.perf_counter() - started) * 1000)
        analysis.model_used = self.model_client.model
        analysis.priority_score = calculate_priority_score(message, analysis, self._clock())

        await self.analysis_cache.set(analysis)
        logger.debug(
            "Message analyzed",
            message_id=message.id,
            priority=analysis.priority.level.value,
            priority_score=analysis.priority_score,
            processing_time_ms=analysis.processing_time_ms,
        )
        return AnalysisResponse(analysis=analysis, success=True)

    async def _run_model(self, request: AnalysisRequest) -> AnalysisResult:
        prompt = build_analysis_prompt(request, self.body_char_limit)
        call = await self.model_client.complete_json(SYSTEM_PROMPT, prompt)
        if not call.ok:
            raise AnalysisError(
                call.error or "Model call failed", error_code=call.error_code, retryable=call.retryable
            )

        decoded = decode_analysis(call.content, request.message)
        if not decoded.ok:
            raise AnalysisValidationError(decoded.error)
        return decoded.analysis

    async def generate_summary(self, message: NormalizedMessage, user_id: str) -> MessageSummary:
        """
        Model-written summary with key points and a heuristic confidence.

        Model failures and unusable output degrade to the basic summary at
        confidence 0.5.

        Raises:
            RateLimitError: the user's analysis budget is exhausted
        """
        decision = await self.rate_limiter.admit_profile(ANALYSIS_PROFILE, user_id)
        if not decision.allowed:
            raise RateLimitError(
                f"Analysis rate limit exceeded for user {user_id}",
                retry_after_seconds=decision.retry_after_seconds,
            )

        try:
            call = await self.model_client.complete_json(
                SUMMARY_SYSTEM_PROMPT, build_summary_prompt(message, self.body_char_limit)
            )
        except Exception:
            logger.exception("Unexpected summary failure", message_id=message.id)
            return MessageSummary.fallback(message)

        payload = decode_summary(call.content, message) if call.ok else None
        if payload is None:
            logger.warning("Summary degraded to basic summary", message_id=message.id, error=call.error)
            return MessageSummary.fallback(message)

        return MessageSummary(
            message_id=message.id,
            summary=payload.summary,
            confidence=calculate_summary_confidence(message, payload.summary),
            key_points=payload.key_points,
            model_used=self.model_client.model,
        )

    def _fallback(
        self, message: NormalizedMessage, error: str, retryable: bool, error_code: str | None
    ) -> AnalysisResponse:
        logger.warning(
            "Analysis degraded to fallback",
            message_id=message.id,
            error=error,
            error_code=error_code,
            retryable=retryable,
        )
        return AnalysisResponse(
            analysis=AnalysisResult.fallback(message),
            success=False,
            error=error,
            retryable=retryable,
        )

    async def _analyze_bounded(self, request: AnalysisRequest) -> AnalysisResponse:
        async with self._semaphore:
            return await self.analyze(request)

    async def analyze_batch(self, requests: list[AnalysisRequest]) -> list[AnalysisResponse]:
        """
        Analyze many messages. Output has the same length and order as the input
        and the call never raises: per-element failures become fallback responses.
        """
        responses: list[AnalysisResponse] = []

        for start in range(0, len(requests), self.batch_size):
            if start > 0 and self.batch_delay_seconds > 0:
                await asyncio.sleep(self.batch_delay_seconds)

            chunk = requests[start : start + self.batch_size]
            results = await asyncio.gather(
                *(self._analyze_bounded(r) for r in chunk), return_exceptions=True
            )

            for request, result in zip(chunk, results, strict=True):
                if isinstance(result, AnalysisResponse):
                    responses.append(result)
                elif isinstance(result, RateLimitError):
                    responses.append(
                        self._fallback(request.message, str(result), True, "rate_limit_exceeded")
                    )
                elif isinstance(result, asyncio.CancelledError):
                    raise result
                else:
                    error_code, retryable = classify_model_error(result)
                    responses.append(
                        self._fallback(
                            request.message, str(result) or type(result).__name__, retryable, error_code
                        )
                    )

        return responses
