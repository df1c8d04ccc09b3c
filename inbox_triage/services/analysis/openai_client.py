"""
OpenAI model client for JSON-mode chat completions.

Every call carries an explicit timeout and runs under a RetryPolicy. The
result is a ModelCallResult; transport and API failures are classified, not
raised.
"""

from dataclasses import dataclass

import openai
from openai import AsyncOpenAI

from inbox_triage.config import Settings
from inbox_triage.errors import AnalysisError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.services.analysis.retry_policy import RetryPolicy, run_with_retry

logger = get_logger(__name__)

RETRYABLE_ERROR_CODES = {
    "rate_limit_exceeded",
    "quota_exceeded",
    "insufficient_quota",
    "internal_error",
    "timeout",
    "network_error",
    "empty_response",
}


@dataclass(slots=True)
class ModelCallResult:
    content: str | None
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None


def classify_model_error(error: Exception) -> tuple[str | None, bool]:
    """(error_code, retryable) for an exception raised by a model call."""
    if isinstance(error, AnalysisError):
        return error.error_code, error.retryable
    if isinstance(error, openai.APITimeoutError):
        return "timeout", True
    if isinstance(error, openai.APIConnectionError):
        return "network_error", True
    if isinstance(error, openai.RateLimitError):
        return getattr(error, "code", None) or "rate_limit_exceeded", True
    if isinstance(error, openai.APIStatusError):
        code = getattr(error, "code", None)
        if error.status_code >= 500:
            return code or "internal_error", True
        return code, bool(code and code in RETRYABLE_ERROR_CODES)

    code = getattr(error, "code", None)
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    retryable = (
        (isinstance(code, str) and code in RETRYABLE_ERROR_CODES)
        or (isinstance(status, int) and status >= 500)
        or "timeout" in str(error).lower()
    )
    return (code if isinstance(code, str) else None), retryable


class ModelClient:
    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "gpt-4o",
        max_tokens: int = 2000,
        temperature: float = 0.3,
        timeout_seconds: float = 30.0,
        retry_policy: RetryPolicy | None = None,
    ):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelClient":
        if not settings.OPENAI_API_KEY:
            logger.warning("OPENAI_API_KEY not configured, model calls will fail")
        client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY or "missing",
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
            # retries are driven by RetryPolicy, not the SDK
            max_retries=0,
        )
        return cls(
            client=client,
            model=settings.OPENAI_MODEL,
            max_tokens=settings.OPENAI_MAX_TOKENS,
            temperature=settings.OPENAI_TEMPERATURE,
            timeout_seconds=settings.OPENAI_TIMEOUT_SECONDS,
            retry_policy=RetryPolicy(
                max_attempts=settings.OPENAI_MAX_RETRIES,
                base_delay=settings.OPENAI_RETRY_BASE_DELAY,
                max_delay=settings.OPENAI_RETRY_MAX_DELAY,
            ),
        )

    async def _create(self, system_message: str, user_message: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_message},
                {"role": "user", "content": user_message},
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            response_format={"type": "json_object"},
            timeout=self.timeout_seconds,
        )

        if not response.choices or not response.choices[0].message.content:
            raise AnalysisError("No response from model", error_code="empty_response", retryable=True)

        content = response.choices[0].message.content.strip()
        logger.debug(
            "Model call successful",
            model=self.model,
            response_length=len(content),
            usage_tokens=response.usage.total_tokens if response.usage else 0,
        )
        return content

    async def complete_json(self, system_message: str, user_message: str) -> ModelCallResult:
        outcome = await run_with_retry(
            self.retry_policy,
            lambda: self._create(system_message, user_message),
            is_retryable=lambda e: classify_model_error(e)[1],
            operation_name="chat_completion",
        )
        if outcome.succeeded:
            return ModelCallResult(content=outcome.value, attempts=outcome.attempts)

        error_code, retryable = classify_model_error(outcome.error)
        return ModelCallResult(
            content=None,
            error=str(outcome.error) or type(outcome.error).__name__,
            error_code=error_code,
            retryable=retryable,
            attempts=outcome.attempts,
        )
