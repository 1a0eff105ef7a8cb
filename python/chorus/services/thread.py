"""Thread resolution over a chat's message tree.

Messages form a tree through parent_message_id. The thread shown to a model
is the path from the root to one target message, found by walking parent
links through an id → message arena. A dangling link or a cycle is a data
integrity failure and raises instead of returning a shortened thread.
"""

from collections.abc import Iterable, Sequence
from typing import Protocol, TypeVar
from uuid import UUID

from chorus.errors import ApiErrorCode, NotFoundError
from chorus.logging import get_logger

logger = get_logger(__name__)


class ThreadNode(Protocol):
    id: UUID
    parent_message_id: UUID | None


N = TypeVar("N", bound=ThreadNode)


def resolve_thread(nodes: Iterable[N], target_id: UUID) -> list[N]:
    """Return the root-to-target path in chronological order.

    Raises:
        NotFoundError(E_MESSAGE_NOT_FOUND): If the target or any ancestor is
            missing, or the parent links form a cycle.
    """
    arena = {node.id: node for node in nodes}
    path: list[N] = []
    visited: set[UUID] = set()
    current_id: UUID | None = target_id

    while current_id is not None:
        if current_id in visited:
            logger.error("thread_cycle_detected", message_id=str(current_id))
            raise NotFoundError(
                ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message thread is corrupted"
            )
        node = arena.get(current_id)
        if node is None:
            logger.warning(
                "thread_broken_link",
                message_id=str(current_id),
                target_id=str(target_id),
            )
            raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
        visited.add(current_id)
        path.append(node)
        current_id = node.parent_message_id

    path.reverse()
    return path


def window_thread(thread: Sequence[N], size: int) -> list[N]:
    """Keep the most recent `size` messages of a thread."""
    if size < 1:
        raise ValueError("thread window must be at least 1")
    return list(thread[-size:])
