"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"
    E_INTERNAL_ONLY = "E_INTERNAL_ONLY"
    E_MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_CHAT_NOT_FOUND = "E_CHAT_NOT_FOUND"
    E_MESSAGE_NOT_FOUND = "E_MESSAGE_NOT_FOUND"
    E_DOCUMENT_NOT_FOUND = "E_DOCUMENT_NOT_FOUND"
    E_USER_NOT_FOUND = "E_USER_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"

    # Budget errors (402)
    E_INSUFFICIENT_BUDGET = "E_INSUFFICIENT_BUDGET"
    E_ANONYMOUS_LIMIT_EXCEEDED = "E_ANONYMOUS_LIMIT_EXCEEDED"

    # Size errors (413)
    E_INPUT_TOO_LONG = "E_INPUT_TOO_LONG"

    # Rate limiting (429)
    E_RATE_LIMITED = "E_RATE_LIMITED"

    # Server errors
    E_PROVIDER_ERROR = "E_PROVIDER_ERROR"  # 502
    E_AUTH_UNAVAILABLE = "E_AUTH_UNAVAILABLE"  # 503
    E_TIMEOUT = "E_TIMEOUT"  # 504
    E_INTERNAL = "E_INTERNAL"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_INTERNAL_ONLY: 403,
    ApiErrorCode.E_MODEL_NOT_AVAILABLE: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_CHAT_NOT_FOUND: 404,
    ApiErrorCode.E_MESSAGE_NOT_FOUND: 404,
    ApiErrorCode.E_DOCUMENT_NOT_FOUND: 404,
    ApiErrorCode.E_USER_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INSUFFICIENT_BUDGET: 402,
    ApiErrorCode.E_ANONYMOUS_LIMIT_EXCEEDED: 402,
    ApiErrorCode.E_INPUT_TOO_LONG: 413,
    ApiErrorCode.E_RATE_LIMITED: 429,
    ApiErrorCode.E_PROVIDER_ERROR: 502,
    ApiErrorCode.E_AUTH_UNAVAILABLE: 503,
    ApiErrorCode.E_TIMEOUT: 504,
    ApiErrorCode.E_INTERNAL: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class InsufficientBudgetError(ApiError):
    """Credit or tool affordability failure.

    Attributes:
        tool: The requested tool that could not be afforded, if any.
    """

    def __init__(self, message: str = "Insufficient credits", tool: str | None = None):
        self.tool = tool
        super().__init__(ApiErrorCode.E_INSUFFICIENT_BUDGET, message)


class InputTooLongError(ApiError):
    """Model input exceeds the token ceiling."""

    def __init__(self, total_tokens: int, max_tokens: int):
        self.total_tokens = total_tokens
        self.max_tokens = max_tokens
        super().__init__(
            ApiErrorCode.E_INPUT_TOO_LONG,
            f"Message too long: {total_tokens} tokens (max: {max_tokens})",
        )
