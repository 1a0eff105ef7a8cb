"""Test helpers for authentication and common test operations.

Provides:
- Token minting for test authentication
- Header generation for test requests
- User, chat and message rows for turn tests
- Chat request bodies and SSE parsing
"""

import asyncio
import json
import time
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import httpx
import jwt
from sqlalchemy import select

from chorus.config import get_settings
from chorus.db.models import Chat, Message, User, utcnow
from chorus.schemas.chat import ChatRequest
from chorus.services.costs import CostAccumulator
from chorus.services.models import get_model
from chorus.services.stream_writer import StreamWriter
from chorus.services.tools.registry import ToolContext
from tests.support.test_verifier import MockJwtVerifier

# Default test token settings
DEFAULT_ISSUER = "test-issuer"
DEFAULT_AUDIENCE = "test-audience"
DEFAULT_EXPIRES_IN = 3600  # 1 hour


def mint_test_token(
    user_id: UUID | str,
    expires_in: int = DEFAULT_EXPIRES_IN,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
    **extra_claims,
) -> str:
    """Mint a valid test JWT token.

    Args:
        user_id: The user ID to set as the `sub` claim.
        expires_in: Token validity in seconds from now.
        issuer: The `iss` claim value.
        audience: The `aud` claim value.
        **extra_claims: Additional claims to include in the token.

    Returns:
        A signed JWT token string.
    """
    private_key = MockJwtVerifier.get_private_key()

    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        **extra_claims,
    }

    return jwt.encode(payload, private_key, algorithm="RS256")


def mint_expired_token(
    user_id: UUID | str,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
) -> str:
    """Mint a token that expired 1 hour ago.

    Args:
        user_id: The user ID to set as the `sub` claim.
        issuer: The `iss` claim value.
        audience: The `aud` claim value.

    Returns:
        A signed JWT token string that is already expired.
    """
    return mint_test_token(
        user_id=user_id,
        expires_in=-3600,  # Expired 1 hour ago
        issuer=issuer,
        audience=audience,
    )


def mint_token_with_bad_signature(
    user_id: UUID | str,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
) -> str:
    """Mint a token signed with a different key (bad signature).

    Args:
        user_id: The user ID to set as the `sub` claim.
        issuer: The `iss` claim value.
        audience: The `aud` claim value.

    Returns:
        A JWT token with an invalid signature.
    """
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    # Generate a different private key
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend(),
    )
    private_key_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )

    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + DEFAULT_EXPIRES_IN,
    }

    return jwt.encode(payload, private_key_bytes, algorithm="RS256")


def auth_headers(user_id: UUID | str, **token_kwargs) -> dict[str, str]:
    """Return headers dict with valid Authorization for the given user.

    Args:
        user_id: The user ID to authenticate as.
        **token_kwargs: Additional arguments passed to mint_test_token.

    Returns:
        Dict with Authorization header.
    """
    token = mint_test_token(user_id, **token_kwargs)
    return {"Authorization": f"Bearer {token}"}


def create_test_user_id() -> UUID:
    """Generate a random UUID for a test user.

    Returns:
        A random UUID.
    """
    return uuid4()


# =============================================================================
# Database rows
# =============================================================================


def create_user(session_factory, credits: int = 100, user_id: UUID | None = None) -> UUID:
    """Insert a user with the given credit balance."""
    user_id = user_id or create_test_user_id()
    db = session_factory()
    try:
        db.add(User(id=user_id, email=f"{user_id}@example.com", credits=credits))
        db.commit()
    finally:
        db.close()
    return user_id


def get_user_balance(session_factory, user_id: UUID) -> tuple[int, int]:
    """(credits, reserved_credits) of a user, read in a fresh session."""
    db = session_factory()
    try:
        user = db.get(User, user_id)
        return user.credits, user.reserved_credits
    finally:
        db.close()


def create_chat_with_messages(
    session_factory,
    user_id: UUID,
    messages: list[tuple[str, str]],
    *,
    visibility: str = "private",
    created_at: datetime | None = None,
) -> tuple[UUID, list[UUID]]:
    """Insert a chat and a linear thread of text messages.

    Returns:
        (chat id, message ids in thread order)
    """
    chat_id = uuid4()
    base = created_at or utcnow() - timedelta(minutes=10)
    db = session_factory()
    try:
        db.add(Chat(id=chat_id, user_id=user_id, title="Existing chat", visibility=visibility))
        db.commit()
        ids: list[UUID] = []
        parent = None
        for i, (role, text) in enumerate(messages):
            message_id = uuid4()
            db.add(
                Message(
                    id=message_id,
                    chat_id=chat_id,
                    role=role,
                    parts=[{"type": "text", "text": text}],
                    parent_message_id=parent,
                    created_at=base + timedelta(seconds=i),
                    updated_at=base + timedelta(seconds=i),
                )
            )
            ids.append(message_id)
            parent = message_id
        db.commit()
    finally:
        db.close()
    return chat_id, ids


def load_messages(session_factory, chat_id: UUID) -> list[Message]:
    """All messages of a chat, oldest first."""
    db = session_factory()
    try:
        rows = db.scalars(
            select(Message).where(Message.chat_id == chat_id).order_by(Message.created_at)
        ).all()
        for row in rows:
            db.expunge(row)
        return list(rows)
    finally:
        db.close()


# =============================================================================
# Requests and streams
# =============================================================================


def chat_body(
    text: str = "Hello there",
    *,
    chat_id: UUID | None = None,
    message_id: UUID | None = None,
    model: str = "openai/gpt-4o-mini",
    parent_message_id: UUID | None = None,
    selected_tool: str | None = None,
    **extra,
) -> dict:
    """JSON body of POST /chat."""
    metadata = {"selectedModel": model}
    if parent_message_id is not None:
        metadata["parentMessageId"] = str(parent_message_id)
    if selected_tool is not None:
        metadata["selectedTool"] = selected_tool
    return {
        "id": str(chat_id or uuid4()),
        "message": {
            "id": str(message_id or uuid4()),
            "role": "user",
            "parts": [{"type": "text", "text": text}],
            "metadata": metadata,
        },
        **extra,
    }


def chat_request(text: str = "Hello there", **kwargs) -> ChatRequest:
    return ChatRequest.model_validate(chat_body(text, **kwargs))


def parse_sse(body: str) -> list[dict]:
    """Decode an SSE body into its JSON data payloads."""
    events = []
    for block in body.split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
    return events


async def collect(stream) -> list[dict]:
    return [chunk async for chunk in stream]


# =============================================================================
# Tool contexts
# =============================================================================


class RecordingStore:
    """Stream store that keeps every appended chunk, for tool-level tests."""

    def __init__(self) -> None:
        self.chunks: list[dict] = []

    async def register(self, chat_id: str, stream_id: str, anonymous: bool = False) -> None:
        pass

    async def append(self, stream_id: str, chunk: dict) -> None:
        self.chunks.append(chunk)

    async def complete(self, stream_id: str) -> None:
        pass

    async def active_stream_id(self, chat_id: str, anonymous: bool = False) -> str | None:
        return None

    def has_stream(self, stream_id: str) -> bool:
        return False

    def types(self) -> list[str]:
        return [chunk["type"] for chunk in self.chunks]


def make_tool_context(
    llm_router,
    *,
    store: RecordingStore | None = None,
    session_factory=None,
    user_id: UUID | None = None,
    http_client: httpx.AsyncClient | None = None,
    model_id: str = "openai/gpt-4o-mini",
    settings=None,
) -> ToolContext:
    """A ToolContext writing into a RecordingStore."""
    store = store or RecordingStore()
    return ToolContext(
        settings=settings or get_settings(),
        llm_router=llm_router,
        http_client=http_client or httpx.AsyncClient(),
        writer=StreamWriter(store, "test-stream"),
        session_factory=session_factory,
        model=get_model(model_id),
        costs=CostAccumulator(),
        abort_event=asyncio.Event(),
        chat_id=uuid4(),
        message_id=uuid4(),
        user_id=user_id,
    )
