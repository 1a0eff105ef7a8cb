"""Pytest configuration and fixtures for Chorus tests.

Test isolation strategy:
- Every test gets its own SQLite database file under tmp_path
- Settings are rebuilt from a clean environment for every test
- Provider calls go through FakeLLMRouter (scripted) or respx (adapters)
- Auth tests use MockJwtVerifier with locally minted RS256 tokens
"""

import sys
from collections.abc import Generator
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from chorus.app import add_request_id_middleware, create_app
from chorus.config import clear_settings_cache, get_settings
from chorus.db.engine import create_db_engine
from chorus.db.models import Base
from chorus.db.session import create_session_factory, set_session_factory
from chorus.services.chat_turn import TurnRegistry, TurnServices
from chorus.services.rate_limit import RateLimiter, set_rate_limiter
from chorus.services.resumable import MemoryStreamStore
from chorus.services.tools.registry import build_default_registry
from tests.support.fake_llm import FakeLLMRouter
from tests.support.test_verifier import MockJwtVerifier

_CLEARED_ENV = (
    "AUTH_JWKS_URL",
    "AUTH_ISSUER",
    "AUTH_AUDIENCES",
    "CHORUS_INTERNAL_SECRET",
    "REDIS_URL",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "TAVILY_API_KEY",
)


@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path) -> Generator[None, None, None]:
    """Point settings at a per-test SQLite file and clear optional config."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path}/chorus.db")
    monkeypatch.setenv("CHORUS_ENV", "test")
    for name in _CLEARED_ENV:
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()
    set_rate_limiter(None)


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """Engine with the full schema, bound as the default session factory."""
    engine = create_db_engine(get_settings().database_url)
    Base.metadata.create_all(engine)
    set_session_factory(create_session_factory(engine))
    yield engine
    set_session_factory(None)
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine):
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_llm() -> FakeLLMRouter:
    return FakeLLMRouter()


@pytest.fixture
def httpx_client():
    """Create an httpx AsyncClient for testing."""
    return httpx.AsyncClient()


@pytest.fixture
def stream_store() -> MemoryStreamStore:
    return MemoryStreamStore(ttl_s=60, expire_after_s=60)


@pytest.fixture
def services(session_factory, fake_llm, stream_store) -> TurnServices:
    """Turn collaborators wired to the test database and the fake router."""
    return TurnServices(
        settings=get_settings(),
        llm_router=fake_llm,
        http_client=httpx.AsyncClient(),
        stream_store=stream_store,
        tool_registry=build_default_registry(),
        turn_registry=TurnRegistry(),
        session_factory=session_factory,
        rate_limiter=RateLimiter(redis_client=None),
    )


@pytest.fixture
def app(engine: Engine):
    """App with bearer auth through MockJwtVerifier and request IDs."""
    app = create_app(token_verifier=MockJwtVerifier())
    add_request_id_middleware(app, log_requests=False)
    return app


@pytest.fixture
def client(app, fake_llm: FakeLLMRouter) -> Generator[TestClient, None, None]:
    """TestClient with the lifespan running and the scripted router installed."""
    with TestClient(app) as client:
        app.state.llm_router = fake_llm
        yield client
