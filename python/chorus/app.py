"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, auth middleware, request-id middleware, and routes.

Token Verification:
- AUTH_JWKS_URL configured: bearer tokens are verified via the JWKS endpoint
- Not configured: every caller is anonymous; bearer tokens are rejected

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures all requests (including auth failures) get X-Request-ID

Actual execution order per request:
1. RequestIDMiddleware (sets request_id, starts timer)
2. AuthMiddleware (verifies auth, sets viewer)
3. Route handler
4. AuthMiddleware (returns response)
5. RequestIDMiddleware (logs, sets response header)

Shared client lifecycle:
- httpx.AsyncClient, LLMRouter, Redis client, rate limiter, stream store,
  tool registry and turn registry are created at startup on app.state
- Running turns get a bounded drain at shutdown, then the clients close
"""

import json
from contextlib import asynccontextmanager

import httpx
import redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chorus.api.routes import create_api_router
from chorus.auth.middleware import AuthMiddleware
from chorus.auth.verifier import JwksTokenVerifier
from chorus.config import get_settings
from chorus.errors import ApiError, ApiErrorCode
from chorus.logging import configure_logging, get_logger
from chorus.middleware.request_id import RequestIDMiddleware
from chorus.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    unhandled_exception_handler,
)
from chorus.services.chat_turn import TurnRegistry
from chorus.services.llm import LLMRouter
from chorus.services.rate_limit import RateLimiter, set_rate_limiter
from chorus.services.resumable import create_stream_store
from chorus.services.tools import build_default_registry

# Configure structured logging at import time
configure_logging()

logger = get_logger(__name__)

# Time running turns get to finish at shutdown before they are cancelled
SHUTDOWN_DRAIN_S = 30.0


def create_token_verifier():
    """Create the JWKS token verifier, or None when auth is not configured."""
    settings = get_settings()
    if not settings.auth_enabled:
        return None

    return JwksTokenVerifier(
        jwks_url=settings.auth_jwks_url,  # type: ignore
        issuer=settings.normalized_issuer,  # type: ignore
        audiences=settings.audience_list,
    )


def create_redis_client(redis_url: str | None):
    """Connect to Redis; None when unset or unreachable (in-process fallbacks)."""
    if not redis_url:
        return None
    try:
        client = redis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=5)
        client.ping()
        logger.info("redis_client_initialized", redis_url=redis_url[:30] + "...")
        return client
    except Exception as e:
        logger.warning("redis_client_init_failed", error=str(e))
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle resources."""
    settings = get_settings()

    # Shared HTTP client for provider, search and image calls
    app.state.httpx_client = httpx.AsyncClient(
        timeout=httpx.Timeout(60.0, connect=10.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )

    app.state.llm_router = LLMRouter(
        app.state.httpx_client,
        api_keys={
            "openai": settings.openai_api_key,
            "anthropic": settings.anthropic_api_key,
        },
        enable_openai=settings.enable_openai,
        enable_anthropic=settings.enable_anthropic,
    )

    logger.info(
        "llm_router_initialized",
        enable_openai=settings.enable_openai,
        enable_anthropic=settings.enable_anthropic,
        openai_available=app.state.llm_router.is_provider_available("openai"),
        anthropic_available=app.state.llm_router.is_provider_available("anthropic"),
    )

    redis_client = create_redis_client(settings.redis_url)
    app.state.redis_client = redis_client

    rate_limiter = RateLimiter(redis_client=redis_client, ip_rpm_limit=settings.anonymous_rpm_limit)
    set_rate_limiter(rate_limiter)

    app.state.stream_store = create_stream_store(
        redis_client,
        ttl_s=settings.stream_ttl_s,
        expire_after_s=settings.stream_expire_after_s,
    )
    app.state.tool_registry = build_default_registry()
    app.state.turn_registry = TurnRegistry()

    yield

    # Shutdown: drain running turns, then close HTTP client and Redis
    running = len(app.state.turn_registry)
    if running:
        logger.info("turn_registry_draining", running=running)
    await app.state.turn_registry.wait_all(SHUTDOWN_DRAIN_S)

    await app.state.httpx_client.aclose()
    if redis_client:
        try:
            redis_client.close()
        except Exception as e:
            logger.warning("redis_client_close_failed", error=str(e))
    logger.info("httpx_client_closed")


def create_app(
    skip_auth_middleware: bool = False,
    token_verifier=None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_auth_middleware: If True, skip adding auth middleware (for testing).
        token_verifier: Optional custom token verifier (for testing).

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Chorus API",
        description="Streaming multi-provider chat with tools and credits",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Register exception handlers
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors (including malformed JSON)."""
        return JSONResponse(
            status_code=400,
            content=error_response(ApiErrorCode.E_INVALID_REQUEST, "Invalid request body"),
        )

    @app.middleware("http")
    async def catch_json_decode_errors(request: Request, call_next):
        """Catch JSON decode errors before they reach route handlers."""
        if request.method in ("POST", "PUT", "PATCH"):
            content_type = request.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await request.body()
                if body:
                    try:
                        json.loads(body)
                    except json.JSONDecodeError:
                        return JSONResponse(
                            status_code=400,
                            content=error_response(
                                ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body"
                            ),
                        )
        return await call_next(request)

    app.include_router(create_api_router())

    # Add auth middleware (runs on all requests except public paths)
    if not skip_auth_middleware:
        verifier = token_verifier or create_token_verifier()

        app.add_middleware(
            AuthMiddleware,
            verifier=verifier,
            requires_internal_header=settings.requires_internal_header,
            internal_secret=settings.chorus_internal_secret,
        )

        logger.info(
            "auth_middleware_enabled",
            env=settings.chorus_env.value,
            internal_header_required=settings.requires_internal_header,
            bearer_auth=verifier is not None,
        )

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    This ensures every response includes X-Request-ID, including auth failures.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
