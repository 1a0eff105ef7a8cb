"""UI message parts: reduction from stream chunks and conversion to model turns.

A message is stored as an ordered list of parts (JSON dicts):

    {"type": "text", "text": "..."}
    {"type": "reasoning", "text": "..."}
    {"type": "file", "url": "...", "mediaType": "image/png", "filename": "..."}
    {"type": "source-url", "sourceId": "...", "url": "...", "title": "..."}
    {"type": "tool-<name>", "toolCallId": "...", "state": "...", "input": ..., "output": ...}
    {"type": "data-<name>", "id": "...", "data": ...}

MessagePartsBuilder folds the chunks of one turn into these parts in
generation order. Transient data chunks are delivered to the client but
never persisted.
"""

import json
from typing import Any

from chorus.services.llm.types import (
    ContentPart,
    FileContent,
    TextContent,
    ToolCallContent,
    ToolResultContent,
    Turn,
)

TOOL_PART_PREFIX = "tool-"
DATA_PART_PREFIX = "data-"


class MessagePartsBuilder:
    """Accumulates chunk dicts into persisted message parts."""

    def __init__(self) -> None:
        self.parts: list[dict[str, Any]] = []
        self.metadata: dict[str, Any] = {}
        self._open_blocks: dict[str, int] = {}
        self._tool_parts: dict[str, int] = {}

    def apply(self, chunk: dict[str, Any]) -> None:
        chunk_type = chunk.get("type", "")

        if chunk_type in ("text-start", "reasoning-start"):
            kind = chunk_type.removesuffix("-start")
            self._open_blocks[f"{kind}:{chunk['id']}"] = len(self.parts)
            self.parts.append({"type": kind, "text": "", "state": "streaming"})
        elif chunk_type in ("text-delta", "reasoning-delta"):
            kind = chunk_type.removesuffix("-delta")
            index = self._open_blocks.get(f"{kind}:{chunk['id']}")
            if index is None:
                self._open_blocks[f"{kind}:{chunk['id']}"] = len(self.parts)
                self.parts.append({"type": kind, "text": chunk["delta"], "state": "streaming"})
            else:
                self.parts[index]["text"] += chunk["delta"]
        elif chunk_type in ("text-end", "reasoning-end"):
            kind = chunk_type.removesuffix("-end")
            index = self._open_blocks.pop(f"{kind}:{chunk['id']}", None)
            if index is not None:
                self.parts[index]["state"] = "done"
        elif chunk_type == "tool-input-start":
            self._tool_part(chunk)
        elif chunk_type == "tool-input-available":
            part = self._tool_part(chunk)
            part["state"] = "input-available"
            part["input"] = chunk.get("input")
        elif chunk_type == "tool-output-available":
            part = self._tool_part(chunk)
            part["state"] = "output-available"
            part["output"] = chunk.get("output")
        elif chunk_type == "tool-output-error":
            part = self._tool_part(chunk)
            part["state"] = "output-error"
            part["errorText"] = chunk.get("errorText", "")
        elif chunk_type in ("file", "source-url", "source-document"):
            self.parts.append({k: v for k, v in chunk.items() if k != "transient"})
        elif chunk_type.startswith(DATA_PART_PREFIX):
            if not chunk.get("transient"):
                self._data_part(chunk)
        elif chunk_type == "message-metadata":
            self.metadata.update(chunk.get("messageMetadata") or {})
        # start, finish, error and step markers carry no content

    def _tool_part(self, chunk: dict[str, Any]) -> dict[str, Any]:
        call_id = chunk["toolCallId"]
        index = self._tool_parts.get(call_id)
        if index is not None:
            return self.parts[index]
        part: dict[str, Any] = {
            "type": f"{TOOL_PART_PREFIX}{chunk.get('toolName', 'unknown')}",
            "toolCallId": call_id,
            "state": "input-streaming",
        }
        self._tool_parts[call_id] = len(self.parts)
        self.parts.append(part)
        return part

    def _data_part(self, chunk: dict[str, Any]) -> None:
        # A data chunk with an id replaces the earlier part with the same type and id
        part_id = chunk.get("id")
        if part_id is not None:
            for part in self.parts:
                if part["type"] == chunk["type"] and part.get("id") == part_id:
                    part["data"] = chunk.get("data")
                    return
        part = {"type": chunk["type"], "data": chunk.get("data")}
        if part_id is not None:
            part["id"] = part_id
        self.parts.append(part)

    def close_open_blocks(self) -> None:
        """Mark text/reasoning parts cut off mid-stream as done."""
        for index in self._open_blocks.values():
            self.parts[index]["state"] = "done"
        self._open_blocks.clear()

    def text(self) -> str:
        return "".join(p["text"] for p in self.parts if p["type"] == "text")


# =============================================================================
# Parts → model turns
# =============================================================================


def _output_text(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output)


def parts_to_turns(role: str, parts: list[dict[str, Any]]) -> list[Turn]:
    """Convert one stored message into the turns a model sees.

    Reasoning, data and source parts are dropped. Assistant tool parts that
    reached a result become a tool call on the assistant turn followed by a
    tool turn with the result; tool parts without a result are dropped.
    """
    if role in ("user", "system"):
        content: list[ContentPart] = []
        for part in parts:
            if part.get("type") == "text":
                content.append(TextContent(text=part.get("text", "")))
            elif part.get("type") == "file":
                content.append(
                    FileContent(
                        url=part["url"],
                        media_type=part.get("mediaType", "application/octet-stream"),
                        filename=part.get("filename"),
                    )
                )
        if all(isinstance(c, TextContent) for c in content):
            return [Turn(role=role, content="".join(c.text for c in content))]
        return [Turn(role=role, content=tuple(content))]

    turns: list[Turn] = []
    assistant: list[ContentPart] = []
    results: list[ContentPart] = []

    def flush() -> None:
        if assistant:
            turns.append(Turn(role="assistant", content=tuple(assistant)))
        if results:
            turns.append(Turn(role="tool", content=tuple(results)))
        assistant.clear()
        results.clear()

    for part in parts:
        part_type = part.get("type", "")
        if part_type == "text":
            if results:
                flush()
            if part.get("text"):
                assistant.append(TextContent(text=part["text"]))
        elif part_type.startswith(TOOL_PART_PREFIX):
            state = part.get("state")
            if state not in ("output-available", "output-error"):
                continue
            tool_name = part_type.removeprefix(TOOL_PART_PREFIX)
            assistant.append(
                ToolCallContent(
                    tool_call_id=part["toolCallId"],
                    tool_name=tool_name,
                    input=part.get("input") or {},
                )
            )
            is_error = state == "output-error"
            if is_error:
                output = part.get("errorText", "")
            else:
                output = _output_text(part.get("output"))
            results.append(
                ToolResultContent(
                    tool_call_id=part["toolCallId"],
                    tool_name=tool_name,
                    output=output,
                    is_error=is_error,
                )
            )
    flush()
    return turns


def messages_to_turns(messages: list[tuple[str, list[dict[str, Any]]]]) -> list[Turn]:
    """Flatten (role, parts) pairs into model turns, skipping empty messages."""
    turns: list[Turn] = []
    for role, parts in messages:
        for turn in parts_to_turns(role, parts):
            if turn.content:
                turns.append(turn)
    return turns
