"""Authentication middleware for FastAPI.

Provides:
- AuthMiddleware: internal header check + optional bearer token verification
- Viewer: the caller identity attached to request.state
- get_viewer: Dependency for accessing the viewer

Callers without a bearer token are anonymous. They are identified by the
X-Anonymous-Session header (issued by the chat route on first use) and by
client IP for rate limiting.
"""

import hmac
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from chorus.auth.verifier import TokenVerifier
from chorus.errors import ApiError, ApiErrorCode
from chorus.logging import get_logger
from chorus.responses import error_response

logger = get_logger(__name__)

AUTHORIZATION_HEADER = "authorization"
INTERNAL_HEADER = "x-chorus-internal"
ANONYMOUS_SESSION_HEADER = "x-anonymous-session"
FORWARDED_FOR_HEADER = "x-forwarded-for"

PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


@dataclass(frozen=True)
class Viewer:
    """Caller identity.

    Attributes:
        user_id: Authenticated user ID (JWT sub), None for anonymous callers.
        anonymous_session_id: Anonymous session presented by the caller, if any.
        client_ip: Best-effort client address used for anonymous rate limits.
    """

    user_id: UUID | None
    anonymous_session_id: UUID | None = None
    client_ip: str = "unknown"

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get(FORWARDED_FOR_HEADER)
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


class AuthMiddleware(BaseHTTPMiddleware):
    """Authentication middleware.

    Order of checks:
    1. Skip if public path
    2. Verify internal header (if required)
    3. Bearer token present → verify it and attach an authenticated Viewer
    4. No bearer token → attach an anonymous Viewer
    """

    def __init__(
        self,
        app: ASGIApp,
        verifier: TokenVerifier | None,
        requires_internal_header: bool = False,
        internal_secret: str | None = None,
    ):
        super().__init__(app)
        self.verifier = verifier
        self.requires_internal_header = requires_internal_header
        self.internal_secret = internal_secret

    async def dispatch(self, request: Request, call_next) -> JSONResponse:
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        if self.requires_internal_header:
            rejection = self._verify_internal_header(request)
            if rejection:
                return rejection

        client_ip = _client_ip(request)
        auth_header = request.headers.get(AUTHORIZATION_HEADER)

        if not auth_header:
            request.state.viewer = Viewer(
                user_id=None,
                anonymous_session_id=_parse_uuid(request.headers.get(ANONYMOUS_SESSION_HEADER)),
                client_ip=client_ip,
            )
            return await call_next(request)

        if not auth_header.lower().startswith("bearer ") or not auth_header[7:].strip():
            logger.warning("auth_failure", reason="invalid_header_format")
            return self._error_json_response(
                ApiErrorCode.E_UNAUTHENTICATED, "Invalid authorization header format"
            )

        if self.verifier is None:
            logger.warning("auth_failure", reason="verifier_not_configured")
            return self._error_json_response(
                ApiErrorCode.E_UNAUTHENTICATED, "Bearer authentication is not configured"
            )

        try:
            payload = self.verifier.verify(auth_header[7:].strip())
        except ApiError as e:
            return self._error_json_response(e.code, e.message)

        request.state.viewer = Viewer(user_id=UUID(payload["sub"]), client_ip=client_ip)
        return await call_next(request)

    def _verify_internal_header(self, request: Request) -> JSONResponse | None:
        """Constant-time check of the BFF shared secret."""
        header_value = request.headers.get(INTERNAL_HEADER)

        if header_value is None or not self.internal_secret:
            logger.warning(
                "auth_failure",
                reason="internal_header_missing",
                request_path=request.url.path,
            )
            return self._error_json_response(
                ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required"
            )

        if not hmac.compare_digest(header_value.encode(), self.internal_secret.encode()):
            logger.warning(
                "auth_failure",
                reason="internal_header_mismatch",
                request_path=request.url.path,
            )
            return self._error_json_response(
                ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required"
            )

        return None

    def _error_json_response(self, code: ApiErrorCode, message: str) -> JSONResponse:
        return JSONResponse(
            status_code=ApiError(code, message).status_code,
            content=error_response(code, message),
        )


def get_viewer(request: Request) -> Viewer:
    """FastAPI dependency returning the caller identity.

    Raises:
        ApiError: If the middleware did not run for this path.
    """
    viewer = getattr(request.state, "viewer", None)
    if viewer is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return viewer


ViewerDep = Depends(get_viewer)
