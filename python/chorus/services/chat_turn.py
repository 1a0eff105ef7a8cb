"""Chat turn orchestration.

A turn runs in three phases:

Admission (request scope, before any model call):
    model lookup → input size ceiling → anonymous allowance or
    chat/title/user message persistence → thread resolution and windowing
    → credit reservation → tool gate → assistant placeholder.
    Any refusal raises an ApiError; credits taken so far are given back.

Generation (a task owned by the TurnRegistry, detached from the request):
    the engine streams through a StreamWriter into the turn's resumable
    stream record; a wall-clock timer sets the abort event.

Finalization (once, in the turn task, whatever the outcome):
    credits settled (debit on success, release or refund otherwise), the
    assistant placeholder overwritten with the parts produced so far, the
    final metadata and finish/error chunk written, and the stream record
    completed.

Sync DB access uses run_in_threadpool (starlette) to avoid blocking the
event loop.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Coroutine
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import httpx
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chorus.auth.middleware import Viewer
from chorus.config import Settings
from chorus.db.models import ChatVisibility, Message, as_utc, utcnow
from chorus.errors import (
    ApiError,
    ApiErrorCode,
    ForbiddenError,
    InputTooLongError,
    NotFoundError,
)
from chorus.logging import bind_turn_context, get_logger
from chorus.schemas.chat import ChatRequest
from chorus.services import anonymous, chats, credits
from chorus.services.costs import CostAccumulator
from chorus.services.followups import write_followups
from chorus.services.generation import GenerationEngine
from chorus.services.llm.errors import ERROR_CLASS_TO_MESSAGE, LLMError
from chorus.services.llm.prompt import build_system_prompt
from chorus.services.llm.router import LLMRouter
from chorus.services.llm.types import Turn
from chorus.services.message_parts import TOOL_PART_PREFIX, messages_to_turns, parts_to_turns
from chorus.services.models import (
    ModelDefinition,
    anonymous_model_ids,
    get_model,
    output_tokens_for,
)
from chorus.services.rate_limit import RateLimiter
from chorus.services.resumable import StreamStore, append_message_chunk, single_chunk
from chorus.services.stream_writer import StreamWriter
from chorus.services.thread import window_thread
from chorus.services.titles import generate_title
from chorus.services.token_budget import estimate_tokens, truncate_to_fit
from chorus.services.tools.gate import (
    TOOL_CATALOG,
    anonymous_catalog,
    expand_selected_tool,
    invocation_cost,
    select_active_tools,
)
from chorus.services.tools.registry import GenerationAborted, ToolContext, ToolRegistry

logger = get_logger(__name__)

# Time the engine gets to notice the abort event before it is cancelled
ABORT_GRACE_S = 10.0

GENERIC_ERROR_MESSAGE = "Oops, an error occurred!"
TIMEOUT_ERROR_MESSAGE = "The response took too long and was stopped."


@dataclass
class TurnServices:
    """Process-scoped collaborators of every turn (from app.state)."""

    settings: Settings
    llm_router: LLMRouter
    http_client: httpx.AsyncClient
    stream_store: StreamStore
    tool_registry: ToolRegistry
    turn_registry: "TurnRegistry"
    session_factory: Any
    rate_limiter: RateLimiter


@dataclass
class AdmittedTurn:
    """A turn that passed admission and is ready to generate."""

    chat_id: UUID
    user_message_id: UUID
    assistant_message_id: UUID
    stream_id: str
    viewer: Viewer
    model: ModelDefinition
    base_cost: int
    system: str
    messages: list[Turn]
    active_tools: list[str]
    reservation: credits.Reservation | None = None
    anonymous_session_id: UUID | None = None
    created_at: datetime | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.viewer.is_anonymous


# =============================================================================
# Turn registry
# =============================================================================


class TurnRegistry:
    """Owns running turn tasks so a client disconnect never cancels a turn."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self, stream_id: str, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"turn:{stream_id}")
        self._tasks[stream_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(stream_id, None))
        return task

    def is_running(self, stream_id: str) -> bool:
        return stream_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait_all(self, timeout_s: float | None = None) -> None:
        """Wait for running turns; cancel whatever is left after timeout_s."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


# =============================================================================
# Admission
# =============================================================================


def _check_input_size(parts: list[dict], max_tokens: int) -> None:
    total = estimate_tokens(parts_to_turns("user", parts))
    if total > max_tokens:
        logger.warning("input_too_long", total_tokens=total, max_tokens=max_tokens)
        raise InputTooLongError(total, max_tokens)


def _fit_prompt(
    system: str, history: list[tuple[str, list[dict]]], model: ModelDefinition
) -> tuple[str, list[Turn]]:
    """Convert history to model turns and truncate to the model's context."""
    turns = [Turn(role="system", content=system), *messages_to_turns(history)]
    fitted = truncate_to_fit(turns, model.context_window - output_tokens_for(model))
    if fitted and fitted[0].role == "system":
        return fitted[0].text, fitted[1:]
    return system, fitted


def _load_authenticated(
    db: Session, viewer: Viewer, body: ChatRequest
) -> tuple[bool, list[Message], str | None]:
    """Ownership checks and the thread up to the new message's parent.

    Returns:
        (chat exists, thread, project instructions)
    """
    if chats.get_user(db, viewer.user_id) is None:
        raise NotFoundError(ApiErrorCode.E_USER_NOT_FOUND, "User not found")

    chat = chats.get_chat(db, body.id)
    if chat is not None and chat.user_id != viewer.user_id:
        logger.warning("chat_ownership_mismatch", chat_id=str(body.id))
        raise ForbiddenError(message="Chat belongs to another user")

    existing = chats.get_message_by_id(db, body.message.id)
    if existing is not None and existing.chat_id != body.id:
        logger.warning("message_chat_mismatch", message_id=str(body.message.id))
        raise ForbiddenError(message="Message belongs to another chat")

    parent_id = body.message.metadata.parent_message_id
    thread: list[Message] = []
    if parent_id is not None:
        thread = chats.get_thread_up_to_message_id(db, body.id, parent_id)

    project_id = chat.project_id if chat is not None else body.project_id
    instructions = None
    if project_id is not None:
        instructions = chats.get_project_instructions(db, project_id, viewer.user_id)
    return chat is not None, thread, instructions


def _persist_chat_and_user_message(
    db: Session, viewer: Viewer, body: ChatRequest, title: str | None
) -> None:
    if title is not None:
        chats.save_chat(
            db,
            chat_id=body.id,
            user_id=viewer.user_id,
            title=title,
            visibility=body.visibility,
            project_id=body.project_id,
        )
    metadata = body.message.metadata
    chats.save_message(
        db,
        message_id=body.message.id,
        chat_id=body.id,
        role="user",
        parts=body.message.parts,
        parent_message_id=metadata.parent_message_id,
        selected_model=metadata.selected_model,
        created_at=metadata.created_at,
    )


def _user_text(body: ChatRequest) -> str:
    return "".join(p.get("text", "") for p in body.message.parts if p.get("type") == "text")


async def admit_turn(services: TurnServices, viewer: Viewer, body: ChatRequest) -> AdmittedTurn:
    """Validate, charge and persist everything a turn needs before generation.

    Raises:
        ApiError: E_MODEL_NOT_AVAILABLE, E_INPUT_TOO_LONG, E_RATE_LIMITED,
            E_ANONYMOUS_LIMIT_EXCEEDED, E_INSUFFICIENT_BUDGET, E_FORBIDDEN,
            E_USER_NOT_FOUND, E_MESSAGE_NOT_FOUND or E_INVALID_REQUEST.
    """
    settings = services.settings
    metadata = body.message.metadata

    model = get_model(metadata.selected_model)
    if not services.llm_router.is_provider_available(model.provider):
        raise ApiError(ApiErrorCode.E_MODEL_NOT_AVAILABLE, "Model provider is not available")
    _check_input_size(body.message.parts, settings.max_input_tokens)
    requested = expand_selected_tool(metadata.selected_tool)
    base_cost = model.credit_cost

    if viewer.is_anonymous:
        turn = await _admit_anonymous(services, viewer, body, model, requested)
    else:
        turn = await _admit_authenticated(services, viewer, body, model, requested)

    logger.info(
        "turn.admitted",
        chat_id=str(turn.chat_id),
        stream_id=turn.stream_id,
        model_id=model.id,
        anonymous=viewer.is_anonymous,
        base_cost=base_cost,
        active_tools=turn.active_tools,
        requested_tools=requested,
        message_count=len(turn.messages),
    )
    return turn


async def _admit_anonymous(
    services: TurnServices,
    viewer: Viewer,
    body: ChatRequest,
    model: ModelDefinition,
    requested: list[str] | None,
) -> AdmittedTurn:
    settings = services.settings
    services.rate_limiter.check_ip_limit(viewer.client_ip)

    # Built before the allowance is decremented
    history = [(m.role, m.parts) for m in body.previous_messages]
    history.append(("user", body.message.parts))
    history = window_thread(history, settings.thread_window)
    system, messages = _fit_prompt(build_system_prompt(), history, model)

    db = services.session_factory()
    try:
        if await run_in_threadpool(chats.get_chat, db, body.id) is not None:
            logger.warning("anonymous_chat_id_taken", chat_id=str(body.id))
            raise ForbiddenError(message="Chat belongs to another user")

        session = await run_in_threadpool(
            anonymous.get_or_create_session,
            db,
            viewer.anonymous_session_id,
            settings.anonymous_credits,
        )
        if session.remaining_credits <= 0:
            raise ApiError(
                ApiErrorCode.E_ANONYMOUS_LIMIT_EXCEEDED,
                f"You've used all {settings.anonymous_credits} free credits. "
                "Sign in to keep chatting.",
            )
        if model.id not in anonymous_model_ids():
            raise ApiError(
                ApiErrorCode.E_MODEL_NOT_AVAILABLE, "Model not available for anonymous users"
            )
        await run_in_threadpool(anonymous.consume_credits, db, session.id, model.credit_cost)

        try:
            active_tools = select_active_tools(
                anonymous_catalog(), settings.anonymous_credits, requested, model
            )
        except Exception:
            await run_in_threadpool(
                anonymous.refund_credits, db, session.id, model.credit_cost
            )
            raise
    finally:
        db.close()

    return AdmittedTurn(
        chat_id=body.id,
        user_message_id=body.message.id,
        assistant_message_id=uuid4(),
        stream_id=uuid4().hex,
        viewer=viewer,
        model=model,
        base_cost=model.credit_cost,
        system=system,
        messages=messages,
        active_tools=active_tools,
        anonymous_session_id=session.id,
        created_at=utcnow(),
    )


async def _admit_authenticated(
    services: TurnServices,
    viewer: Viewer,
    body: ChatRequest,
    model: ModelDefinition,
    requested: list[str] | None,
) -> AdmittedTurn:
    settings = services.settings
    db = services.session_factory()
    try:
        chat_exists, thread, instructions = await run_in_threadpool(
            _load_authenticated, db, viewer, body
        )

        title = None
        if not chat_exists:
            title = await generate_title(services.llm_router, _user_text(body), str(body.id))
        await run_in_threadpool(_persist_chat_and_user_message, db, viewer, body, title)

        history = [(m.role, m.parts) for m in thread]
        history.append(("user", body.message.parts))
        history = window_thread(history, settings.thread_window)
        system, messages = _fit_prompt(build_system_prompt(instructions), history, model)

        reservation = await run_in_threadpool(
            credits.reserve_credits, db, viewer.user_id, model.credit_cost, body.id
        )
        try:
            active_tools = select_active_tools(
                TOOL_CATALOG, reservation.budget - model.credit_cost, requested, model
            )
            assistant_message_id = uuid4()
            created_at = utcnow()
            await run_in_threadpool(
                chats.save_message,
                db,
                message_id=assistant_message_id,
                chat_id=body.id,
                role="assistant",
                parts=[],
                parent_message_id=body.message.id,
                selected_model=model.id,
                is_partial=True,
                created_at=created_at,
            )
        except Exception:
            await run_in_threadpool(credits.release_reservation, db, reservation)
            raise
    finally:
        db.close()

    return AdmittedTurn(
        chat_id=body.id,
        user_message_id=body.message.id,
        assistant_message_id=assistant_message_id,
        stream_id=uuid4().hex,
        viewer=viewer,
        model=model,
        base_cost=model.credit_cost,
        system=system,
        messages=messages,
        active_tools=active_tools,
        reservation=reservation,
        created_at=created_at,
    )


# =============================================================================
# Generation task
# =============================================================================


async def start_turn(services: TurnServices, turn: AdmittedTurn) -> asyncio.Task:
    """Register the turn's stream record and launch its task."""
    await services.stream_store.register(
        str(turn.chat_id), turn.stream_id, anonymous=turn.is_anonymous
    )
    return services.turn_registry.start(turn.stream_id, run_turn(services, turn))


def _base_metadata(turn: AdmittedTurn) -> dict[str, Any]:
    created_at = turn.created_at or utcnow()
    return {
        "createdAt": created_at.isoformat(),
        "parentMessageId": str(turn.user_message_id),
        "selectedModel": turn.model.id,
        "isPartial": False,
    }


def _actual_cost(turn: AdmittedTurn, parts: list[dict]) -> int:
    """Base model cost plus the fixed cost of every tool call that produced output."""
    invoked = [
        p["type"].removeprefix(TOOL_PART_PREFIX)
        for p in parts
        if p.get("type", "").startswith(TOOL_PART_PREFIX) and p.get("state") == "output-available"
    ]
    return turn.base_cost + invocation_cost(invoked)


async def run_turn(services: TurnServices, turn: AdmittedTurn) -> None:
    """Generate, then finalize exactly once."""
    settings = services.settings
    bind_turn_context(
        str(turn.chat_id),
        turn.stream_id,
        str(turn.viewer.user_id) if turn.viewer.user_id else None,
    )
    writer = StreamWriter(services.stream_store, turn.stream_id)
    costs = CostAccumulator()
    abort_event = asyncio.Event()
    ctx = ToolContext(
        settings=settings,
        llm_router=services.llm_router,
        http_client=services.http_client,
        writer=writer,
        session_factory=services.session_factory,
        model=turn.model,
        costs=costs,
        abort_event=abort_event,
        chat_id=turn.chat_id,
        message_id=turn.assistant_message_id,
        user_id=turn.viewer.user_id,
    )
    engine = GenerationEngine(services.tool_registry, max_steps=settings.max_tool_steps)
    metadata = _base_metadata(turn)

    loop = asyncio.get_running_loop()
    timer = loop.call_later(settings.turn_timeout_s, abort_event.set)
    start = time.monotonic()
    outcome = "completed"
    error_message: str | None = None
    error_code = ApiErrorCode.E_INTERNAL
    cancelled = False

    logger.info("turn.started", model_id=turn.model.id, active_tools=turn.active_tools)
    try:
        await writer.write(
            {
                "type": "start",
                "messageId": str(turn.assistant_message_id),
                "messageMetadata": metadata,
            }
        )
        await asyncio.wait_for(
            engine.run(
                ctx,
                system=turn.system,
                messages=turn.messages,
                active_tools=turn.active_tools,
            ),
            settings.turn_timeout_s + ABORT_GRACE_S,
        )
        if not abort_event.is_set():
            await write_followups(ctx, writer.builder.text(), settings.followup_timeout_s)
    except (GenerationAborted, TimeoutError):
        outcome = "aborted"
        error_message = TIMEOUT_ERROR_MESSAGE
        error_code = ApiErrorCode.E_TIMEOUT
        logger.warning("turn.aborted", timeout_s=settings.turn_timeout_s)
    except LLMError as e:
        outcome = "errored"
        error_message = ERROR_CLASS_TO_MESSAGE.get(e.error_class, GENERIC_ERROR_MESSAGE)
        error_code = ApiErrorCode.E_PROVIDER_ERROR
        logger.warning("turn.llm_error", error_class=e.error_class.value, error=e.message)
    except asyncio.CancelledError:
        outcome = "aborted"
        error_message = TIMEOUT_ERROR_MESSAGE
        error_code = ApiErrorCode.E_TIMEOUT
        cancelled = True
        logger.warning("turn.cancelled")
    except Exception as e:
        outcome = "errored"
        error_message = GENERIC_ERROR_MESSAGE
        logger.exception("turn.unexpected_error", error=str(e))
    finally:
        timer.cancel()
        await _finalize(
            services,
            turn,
            writer,
            costs,
            metadata,
            outcome,
            error_message,
            error_code,
        )
        logger.info(
            "turn.finished",
            outcome=outcome,
            total_ms=int((time.monotonic() - start) * 1000),
            engine_state=engine.state.value,
            input_tokens=costs.input_tokens,
            output_tokens=costs.output_tokens,
            cost_usd=round(costs.total_cost_usd, 6),
        )

    if cancelled:
        raise asyncio.CancelledError()


async def _finalize(
    services: TurnServices,
    turn: AdmittedTurn,
    writer: StreamWriter,
    costs: CostAccumulator,
    metadata: dict[str, Any],
    outcome: str,
    error_message: str | None,
    error_code: ApiErrorCode = ApiErrorCode.E_INTERNAL,
) -> None:
    """Settle credits, persist the message and close the stream.

    A failed turn ends with an error chunk carrying a user-facing message and
    the error code a client would get for the same failure outside a stream.
    """
    writer.builder.close_open_blocks()
    parts = [dict(p) for p in writer.parts]
    usage = costs.summary()
    succeeded = outcome == "completed"

    await _settle_credits(services, turn, _actual_cost(turn, parts) if succeeded else None)

    if not turn.is_anonymous:
        await _save_final_message(services, turn, parts, usage)

    try:
        await writer.write(
            {"type": "message-metadata", "messageMetadata": {**metadata, "usage": usage}}
        )
        if succeeded:
            await writer.write({"type": "finish"})
        else:
            await writer.write(
                {
                    "type": "error",
                    "errorText": error_message or GENERIC_ERROR_MESSAGE,
                    "code": error_code.value,
                }
            )
    finally:
        await services.stream_store.complete(turn.stream_id)


async def _settle_credits(
    services: TurnServices, turn: AdmittedTurn, actual_amount: int | None
) -> None:
    def _settle() -> None:
        db = services.session_factory()
        try:
            if turn.reservation is not None:
                credits.settle_reservation(db, turn.reservation, actual_amount)
            elif turn.anonymous_session_id is not None and actual_amount is None:
                anonymous.refund_credits(db, turn.anonymous_session_id, turn.base_cost)
        finally:
            db.close()

    try:
        await run_in_threadpool(_settle)
    except Exception as e:
        # The sweeper releases reservations left active
        logger.error("turn.settle_failed", error=str(e))


async def _save_final_message(
    services: TurnServices, turn: AdmittedTurn, parts: list[dict], usage: dict
) -> None:
    def _save() -> None:
        db = services.session_factory()
        try:
            chats.update_message(db, turn.assistant_message_id, parts=parts, usage=usage)
        finally:
            db.close()

    try:
        await run_in_threadpool(_save)
    except Exception as e:
        logger.error(
            "turn.persist_failed",
            assistant_message_id=str(turn.assistant_message_id),
            error=str(e),
        )


# =============================================================================
# Resume
# =============================================================================


def serialize_message(message: Message) -> dict[str, Any]:
    return {
        "id": str(message.id),
        "role": message.role,
        "parts": message.parts,
        "metadata": {
            "createdAt": as_utc(message.created_at).isoformat(),
            "parentMessageId": (
                str(message.parent_message_id) if message.parent_message_id else None
            ),
            "selectedModel": message.selected_model,
            "isPartial": message.is_partial,
            "usage": message.usage,
        },
    }


def _resume_context(db: Session, viewer: Viewer, chat_id: UUID) -> Message | None:
    """Permission checks, then the chat's latest message.

    Raises:
        NotFoundError(E_CHAT_NOT_FOUND): Unknown chat.
        ForbiddenError: Private chat of another user.
    """
    chat = chats.get_chat(db, chat_id)
    if chat is None:
        raise NotFoundError(ApiErrorCode.E_CHAT_NOT_FOUND, "Chat not found")
    if chat.visibility != ChatVisibility.public.value and chat.user_id != viewer.user_id:
        raise ForbiddenError(message="Chat belongs to another user")
    return chats.get_latest_message(db, chat_id)


async def resume_turn_stream(
    services: TurnServices,
    viewer: Viewer,
    chat_id: UUID,
    now: datetime | None = None,
) -> AsyncIterator[dict[str, Any]] | None:
    """Chunks for a client reconnecting to a chat; None means nothing to resume.

    - a live turn: its whole stream record, followed until it completes
    - a turn that just finished (latest message is a complete assistant
      message created within RESUME_RECENCY_S): one transient
      data-appendMessage chunk carrying that message
    - otherwise None

    Anonymous chats are not persisted, so only a live turn can be resumed,
    and anonymous callers only see streams started by anonymous turns.
    """
    store = services.stream_store
    latest = None
    if not viewer.is_anonymous:
        db = services.session_factory()
        try:
            latest = await run_in_threadpool(_resume_context, db, viewer, chat_id)
        finally:
            db.close()

    stream_id = await store.active_stream_id(str(chat_id), anonymous=viewer.is_anonymous)
    if stream_id is not None:
        logger.info("turn.resumed", chat_id=str(chat_id), stream_id=stream_id, mode="follow")
        return store.follow(stream_id)

    if latest is None or latest.role != "assistant" or latest.is_partial:
        return None
    now = now or utcnow()
    recency = timedelta(seconds=services.settings.resume_recency_s)
    if now - as_utc(latest.created_at) > recency:
        return None

    logger.info("turn.resumed", chat_id=str(chat_id), mode="append_message")
    return single_chunk(append_message_chunk(serialize_message(latest)))
