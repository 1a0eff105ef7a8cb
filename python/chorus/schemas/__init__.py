"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from chorus.schemas.chat import (
    ChatRequest,
    MessageMetadata,
    PreviousMessageIn,
    UserMessageIn,
)

__all__ = [
    "ChatRequest",
    "MessageMetadata",
    "PreviousMessageIn",
    "UserMessageIn",
]
