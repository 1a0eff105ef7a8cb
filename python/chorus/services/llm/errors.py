"""LLM error classification and normalization.

Classifies provider-specific errors into normalized error classes. Called
by the router after catching adapter exceptions.

Error classes:
- E_LLM_INVALID_KEY: Authentication failure (401/403)
- E_LLM_RATE_LIMIT: Rate limit exceeded (429)
- E_LLM_CONTEXT_TOO_LARGE: Context length exceeded
- E_LLM_TIMEOUT: Request timed out
- E_LLM_PROVIDER_DOWN: Provider unavailable (5xx, network error)
- E_MODEL_NOT_AVAILABLE: Model not found or disabled
"""

from enum import Enum

from chorus.logging import get_logger

logger = get_logger(__name__)


class LLMErrorClass(str, Enum):
    """Normalized LLM error classifications."""

    INVALID_KEY = "E_LLM_INVALID_KEY"
    RATE_LIMIT = "E_LLM_RATE_LIMIT"
    CONTEXT_TOO_LARGE = "E_LLM_CONTEXT_TOO_LARGE"
    TIMEOUT = "E_LLM_TIMEOUT"
    PROVIDER_DOWN = "E_LLM_PROVIDER_DOWN"
    MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"


# Messages shown to the caller in the terminal error chunk of a turn
ERROR_CLASS_TO_MESSAGE: dict[LLMErrorClass, str] = {
    LLMErrorClass.INVALID_KEY: "The model provider rejected our credentials. Please try later.",
    LLMErrorClass.RATE_LIMIT: "The model provider is busy. Please try again in a moment.",
    LLMErrorClass.CONTEXT_TOO_LARGE: "This conversation is too long for the selected model.",
    LLMErrorClass.TIMEOUT: "The model took too long to respond. Please try again.",
    LLMErrorClass.PROVIDER_DOWN: "The model provider is unavailable. Please try again.",
    LLMErrorClass.MODEL_NOT_AVAILABLE: "The selected model is not available.",
}


class LLMError(Exception):
    """Exception for LLM-related errors.

    Attributes:
        error_class: The normalized error classification
        message: Human-readable error message
        provider: The provider that returned the error (if known)
    """

    def __init__(
        self,
        error_class: LLMErrorClass,
        message: str,
        provider: str | None = None,
    ):
        self.error_class = error_class
        self.message = message
        self.provider = provider
        super().__init__(message)


def classify_provider_error(
    provider: str,
    status_code: int | None,
    json_body: dict | None,
    exception: Exception | None,
) -> LLMErrorClass:
    """Classify provider error into normalized error class.

    Args:
        provider: One of "openai", "anthropic"
        status_code: HTTP status code (if available)
        json_body: Parsed JSON error response (if available)
        exception: The exception that was raised (if any)
    """
    if exception is not None:
        exception_type = type(exception).__name__
        if "Timeout" in exception_type or "timeout" in str(exception).lower():
            return LLMErrorClass.TIMEOUT
        if "Network" in exception_type or "Connection" in exception_type:
            return LLMErrorClass.PROVIDER_DOWN

    if status_code is None:
        return LLMErrorClass.PROVIDER_DOWN

    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY
    if status_code == 429:
        return LLMErrorClass.RATE_LIMIT
    if status_code == 404:
        return LLMErrorClass.MODEL_NOT_AVAILABLE
    if status_code >= 500:
        return LLMErrorClass.PROVIDER_DOWN

    if status_code == 400 and json_body:
        if provider == "openai":
            return _classify_openai_bad_request(json_body)
        if provider == "anthropic":
            return _classify_anthropic_bad_request(json_body)
        logger.warning("unknown_provider_for_error_classification", provider=provider)

    return LLMErrorClass.PROVIDER_DOWN


def _classify_openai_bad_request(json_body: dict) -> LLMErrorClass:
    error = json_body.get("error") or {}
    error_code = error.get("code") or ""
    error_message = (error.get("message") or "").lower()

    if error_code == "context_length_exceeded" or "maximum context length" in error_message:
        return LLMErrorClass.CONTEXT_TOO_LARGE
    if "model" in error_message and "not found" in error_message:
        return LLMErrorClass.MODEL_NOT_AVAILABLE
    return LLMErrorClass.PROVIDER_DOWN


def _classify_anthropic_bad_request(json_body: dict) -> LLMErrorClass:
    error = json_body.get("error") or {}
    if error.get("type") == "invalid_request_error" and "too long" in (
        error.get("message") or ""
    ).lower():
        return LLMErrorClass.CONTEXT_TOO_LARGE
    return LLMErrorClass.PROVIDER_DOWN
