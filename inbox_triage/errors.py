"""
Pipeline error taxonomy.

Every error carries a ``retryable`` flag so callers (job manager, trigger
routes) can tell the user whether resubmitting makes sense.
"""


class PipelineError(Exception):
    """Base exception for ingestion and analysis pipeline errors."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class MessageFetchError(PipelineError):
    """Raised by a provider adapter when fetching messages fails."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        error_code: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message, retryable=retryable)
        self.provider = provider
        self.status_code = status_code
        self.error_code = error_code


class AllProvidersFailedError(PipelineError):
    """Raised when every configured provider failed to return messages."""

    def __init__(self, errors: list[MessageFetchError]):
        providers = ", ".join(e.provider for e in errors)
        details = "; ".join(str(e) for e in errors)
        super().__init__(
            f"All providers failed ({providers}): {details}",
            retryable=any(e.retryable for e in errors),
        )
        self.errors = errors


class AnalysisError(PipelineError):
    """Model call failure. Always degraded to a fallback result."""

    def __init__(self, message: str, error_code: str | None = None, retryable: bool = False):
        super().__init__(message, retryable=retryable)
        self.error_code = error_code


class AnalysisValidationError(AnalysisError):
    """Model output could not be decoded into an analysis."""

    def __init__(self, message: str):
        super().__init__(message, error_code="invalid_model_output", retryable=False)


class RateLimitError(PipelineError):
    """Admission denied by the rate limiter."""

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message, retryable=True)
        self.retry_after_seconds = retry_after_seconds


class StorageError(PipelineError):
    """Persistence failure. Fails the job since correctness depends on durable state."""

    def __init__(self, message: str, operation: str = "unknown"):
        super().__init__(message, retryable=True)
        self.operation = operation
