"""FastAPI dependencies for route handlers.

Process-scoped collaborators are created in the app lifespan and stored on
app.state; these dependencies hand them to route handlers.
"""

from fastapi import Request

from chorus.config import get_settings
from chorus.db.session import get_db, get_session_factory
from chorus.services.chat_turn import TurnServices
from chorus.services.llm import LLMRouter
from chorus.services.rate_limit import get_rate_limiter

__all__ = ["get_db", "get_llm_router", "get_session_factory", "get_turn_services"]


def get_llm_router(request: Request) -> LLMRouter:
    """Get the shared LLM router from app state."""
    return request.app.state.llm_router


def get_turn_services(request: Request) -> TurnServices:
    """Bundle the shared clients and registries a chat turn runs on.

    Args:
        request: The incoming request (provides access to app.state)

    Returns:
        TurnServices built from app.state and the current settings.
    """
    state = request.app.state
    return TurnServices(
        settings=get_settings(),
        llm_router=state.llm_router,
        http_client=state.httpx_client,
        stream_store=state.stream_store,
        tool_registry=state.tool_registry,
        turn_registry=state.turn_registry,
        session_factory=get_session_factory(),
        rate_limiter=get_rate_limiter(),
    )
