"""Chat streaming routes.

- POST /chat: admit a turn, start it, stream its chunks as SSE
- GET /chat/{chat_id}/stream: resume the chat's live or just-finished turn

The turn task is owned by the TurnRegistry, not by the response: a client
that disconnects stops reading, the turn keeps generating into its stream
record and can be resumed.
"""

from collections.abc import AsyncIterator
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Response
from fastapi.responses import StreamingResponse

from chorus.api.deps import get_turn_services
from chorus.auth.middleware import Viewer, get_viewer
from chorus.logging import get_logger
from chorus.schemas.chat import ChatRequest
from chorus.services.chat_turn import TurnServices, admit_turn, resume_turn_stream, start_turn
from chorus.services.stream_writer import format_sse_chunk

logger = get_logger(__name__)

router = APIRouter()

SSE_MEDIA_TYPE = "text/event-stream; charset=utf-8"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}
ANONYMOUS_SESSION_RESPONSE_HEADER = "X-Anonymous-Session"


async def _sse(chunks: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    async for chunk in chunks:
        yield format_sse_chunk(chunk)


@router.post("/chat")
async def post_chat(
    body: ChatRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    services: Annotated[TurnServices, Depends(get_turn_services)],
) -> StreamingResponse:
    """Run one chat turn and stream it as server-sent events.

    Admission errors (budget, size, ownership, model) are raised before the
    response starts and render as the usual JSON error envelope.
    """
    turn = await admit_turn(services, viewer, body)
    await start_turn(services, turn)

    headers = dict(SSE_HEADERS)
    if turn.anonymous_session_id is not None:
        headers[ANONYMOUS_SESSION_RESPONSE_HEADER] = str(turn.anonymous_session_id)

    return StreamingResponse(
        _sse(services.stream_store.follow(turn.stream_id)),
        media_type=SSE_MEDIA_TYPE,
        headers=headers,
    )


@router.get("/chat/{chat_id}/stream")
async def resume_chat_stream(
    chat_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    services: Annotated[TurnServices, Depends(get_turn_services)],
) -> Response:
    """Resume a chat's stream; 204 when there is nothing to resume."""
    chunks = await resume_turn_stream(services, viewer, chat_id)
    if chunks is None:
        return Response(status_code=204)
    return StreamingResponse(_sse(chunks), media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS)
