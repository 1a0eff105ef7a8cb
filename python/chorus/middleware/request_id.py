"""X-Request-ID middleware for request correlation and access logging.

Must be added LAST so it runs FIRST: auth failures and anonymous-limit
rejections still carry an X-Request-ID header and an access log entry.

Streaming responses are logged when the response headers are produced,
not when the event stream ends; the turn task logs its own completion.
"""

import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from chorus.logging import clear_request_context, get_logger, set_request_context

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

VALID_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

logger = get_logger(__name__)


def normalize_request_id(value: str | None) -> str | None:
    """Return a normalized request ID, or None if the value is unusable.

    UUIDs are lowercased into canonical form; other IDs must be short and
    limited to alphanumerics, dots, hyphens and underscores.
    """
    if not value or len(value.encode("utf-8")) > MAX_REQUEST_ID_LENGTH:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        pass
    if VALID_REQUEST_ID_PATTERN.match(value):
        return value
    return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every request, echo it, and log access.

    Args:
        app: The ASGI application.
        log_requests: If True, log one access entry per request.
    """

    def __init__(self, app, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.monotonic()
        request_id = normalize_request_id(request.headers.get(REQUEST_ID_HEADER)) or str(
            uuid.uuid4()
        )
        request.state.request_id = request_id
        set_request_context(request_id)

        try:
            response = await call_next(request)

            viewer = getattr(request.state, "viewer", None)
            if viewer is not None and viewer.user_id is not None:
                set_request_context(request_id, str(viewer.user_id))

            response.headers[REQUEST_ID_HEADER] = request_id

            if self.log_requests:
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )
            return response

        except Exception:
            logger.exception("request_failed", method=request.method, path=request.url.path)
            raise

        finally:
            clear_request_context()
