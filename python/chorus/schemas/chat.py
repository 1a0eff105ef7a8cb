"""Chat request and message schemas.

Field names on the wire are camelCase (the web client's message format);
the Python side uses snake_case through aliases.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chorus.services.message_parts import TOOL_PART_PREFIX

# Valid chat visibilities - must match DB constraint
CHAT_VISIBILITIES = Literal["private", "public"]

# Part types a user message may carry
USER_PART_TYPES = frozenset({"text", "file"})


def _check_part(part: dict[str, Any]) -> None:
    """Fields a part needs before it can be turned into model input."""
    part_type = part.get("type")
    if not isinstance(part_type, str):
        raise ValueError("part requires a string 'type'")
    if part_type == "text" and not isinstance(part.get("text"), str):
        raise ValueError("text part requires a string 'text'")
    if part_type == "file" and not part.get("url"):
        raise ValueError("file part requires 'url'")
    if part_type.startswith(TOOL_PART_PREFIX) and not isinstance(part.get("toolCallId"), str):
        raise ValueError("tool part requires a string 'toolCallId'")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MessageMetadata(_CamelModel):
    created_at: datetime | None = Field(default=None, alias="createdAt")
    parent_message_id: UUID | None = Field(default=None, alias="parentMessageId")
    selected_model: str = Field(alias="selectedModel", min_length=1)
    selected_tool: str | None = Field(default=None, alias="selectedTool")


class UserMessageIn(_CamelModel):
    """The new user message of a turn."""

    id: UUID
    role: Literal["user"]
    parts: list[dict[str, Any]] = Field(min_length=1)
    metadata: MessageMetadata

    @field_validator("parts")
    @classmethod
    def validate_parts(cls, parts: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for part in parts:
            if part.get("type") not in USER_PART_TYPES:
                raise ValueError(f"unsupported part type: {part.get('type')}")
            _check_part(part)
        return parts


class PreviousMessageIn(_CamelModel):
    """A message of an anonymous conversation, supplied by the client."""

    id: UUID | None = None
    role: Literal["user", "assistant", "system"]
    parts: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("parts")
    @classmethod
    def validate_parts(cls, parts: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for part in parts:
            _check_part(part)
        return parts


class ChatRequest(_CamelModel):
    """POST /chat body."""

    id: UUID
    message: UserMessageIn
    project_id: UUID | None = Field(default=None, alias="projectId")
    visibility: CHAT_VISIBILITIES = "private"
    previous_messages: list[PreviousMessageIn] = Field(
        default_factory=list, alias="previousMessages", max_length=100
    )
