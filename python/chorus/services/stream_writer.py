"""Turn stream writer and SSE framing.

All producers of a turn (the generation engine, tools and their nested
artifact streams, the turn task itself) write chunks through one
StreamWriter. Each chunk is folded into the message being built and
appended to the turn's resumable stream record, in call order.
"""

import json
from typing import Any
from uuid import uuid4

from chorus.services.message_parts import MessagePartsBuilder
from chorus.services.resumable import StreamStore


def format_sse_event(event: str, data: dict) -> str:
    """Format data as an SSE event."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def format_sse_chunk(chunk: dict[str, Any]) -> str:
    return format_sse_event(chunk["type"], chunk)


def new_part_id() -> str:
    return uuid4().hex


class StreamWriter:
    def __init__(
        self,
        store: StreamStore,
        stream_id: str,
        builder: MessagePartsBuilder | None = None,
    ):
        self._store = store
        self.stream_id = stream_id
        self.builder = builder or MessagePartsBuilder()

    async def write(self, chunk: dict[str, Any]) -> None:
        self.builder.apply(chunk)
        await self._store.append(self.stream_id, chunk)

    async def write_data(
        self,
        name: str,
        data: Any,
        *,
        transient: bool = False,
        part_id: str | None = None,
    ) -> None:
        """Write a data-<name> chunk."""
        chunk: dict[str, Any] = {"type": f"data-{name}", "data": data}
        if part_id is not None:
            chunk["id"] = part_id
        if transient:
            chunk["transient"] = True
        await self.write(chunk)

    @property
    def parts(self) -> list[dict[str, Any]]:
        return self.builder.parts
