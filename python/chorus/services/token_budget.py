"""Token estimation and context-window truncation for chat turns.

Token counts here are estimates used for admission and truncation only;
billing uses the usage reported by the provider.

Per message cost:
    role tokens + content tokens + MESSAGE_OVERHEAD_TOKENS

Content tokens:
- text: counter.count(text)
- file / image: FILE_PART_TOKENS
- tool call: tokens of the JSON-serialized input
- tool result: tokens of the output text
"""

import json
from collections.abc import Sequence
from typing import Protocol

from chorus.services.llm.types import (
    ContentPart,
    TextContent,
    ToolCallContent,
    ToolResultContent,
    Turn,
)
from chorus.services.text_splitter import RecursiveCharacterTextSplitter

MESSAGE_OVERHEAD_TOKENS = 5
FILE_PART_TOKENS = 765
MIN_CHUNK_SIZE = 140
# Rough characters per token when converting an overflow into a cut point
CHARS_PER_TOKEN_ESTIMATE = 3


class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...


class CharHeuristicCounter:
    """Deterministic estimate of about four characters per token, rounded up."""

    chars_per_token = 4

    def count(self, text: str) -> int:
        if not text:
            return 0
        return -(-len(text) // self.chars_per_token)


DEFAULT_COUNTER: TokenCounter = CharHeuristicCounter()


def _part_tokens(part: ContentPart, counter: TokenCounter) -> int:
    if isinstance(part, TextContent):
        return counter.count(part.text)
    if isinstance(part, ToolCallContent):
        return counter.count(json.dumps(part.input, sort_keys=True))
    if isinstance(part, ToolResultContent):
        return counter.count(part.output)
    # Files and images
    return FILE_PART_TOKENS


def _overhead(turn: Turn, counter: TokenCounter) -> int:
    return counter.count(turn.role) + MESSAGE_OVERHEAD_TOKENS


def estimate_tokens(messages: Sequence[Turn], counter: TokenCounter = DEFAULT_COUNTER) -> int:
    """Estimated prompt tokens of a message list."""
    total = 0
    for turn in messages:
        total += _overhead(turn, counter)
        if isinstance(turn.content, str):
            total += counter.count(turn.content)
        else:
            total += sum(_part_tokens(p, counter) for p in turn.content)
    return total


def trim_prompt(
    prompt: str, context_size: int, counter: TokenCounter = DEFAULT_COUNTER
) -> str:
    """Cut prompt to at most context_size tokens at a natural boundary.

    Keeps the first chunk of a recursive split sized from the overflow.
    Never returns fewer than MIN_CHUNK_SIZE characters of a longer prompt;
    falls back to a hard cut when splitting does not shorten the text.
    """
    while prompt:
        length = counter.count(prompt)
        if length <= context_size:
            return prompt

        overflow = length - context_size
        chunk_size = len(prompt) - overflow * CHARS_PER_TOKEN_ESTIMATE
        if chunk_size < MIN_CHUNK_SIZE:
            return prompt[:MIN_CHUNK_SIZE]

        splitter = RecursiveCharacterTextSplitter(chunk_size=chunk_size, chunk_overlap=0)
        chunks = splitter.split_text(prompt)
        trimmed = chunks[0] if chunks else ""

        if len(trimmed) >= len(prompt):
            prompt = prompt[:chunk_size]
        else:
            prompt = trimmed
    return ""


def _trim_structured(
    turn: Turn, budget: int, counter: TokenCounter
) -> Turn:
    """Trim text and tool-result parts from the end until the turn fits budget."""
    content = list(turn.content)
    to_remove = estimate_tokens([turn], counter) - budget

    for i in range(len(content) - 1, -1, -1):
        if to_remove <= 0:
            break
        part = content[i]
        if isinstance(part, ToolResultContent):
            text = part.output
        elif isinstance(part, TextContent):
            text = part.text
        else:
            continue

        part_tokens = counter.count(text)
        target = max(0, part_tokens - to_remove)
        if target == 0:
            del content[i]
            to_remove -= part_tokens
            continue

        trimmed = trim_prompt(text, target, counter)
        if isinstance(part, ToolResultContent):
            content[i] = ToolResultContent(
                tool_call_id=part.tool_call_id,
                tool_name=part.tool_name,
                output=trimmed,
                is_error=part.is_error,
            )
        else:
            content[i] = TextContent(text=trimmed)
        to_remove -= part_tokens - counter.count(trimmed)

    return Turn(role=turn.role, content=tuple(content))


def _trim_turn(turn: Turn, budget: int, counter: TokenCounter) -> Turn:
    if isinstance(turn.content, str):
        content_budget = max(0, budget - _overhead(turn, counter))
        return Turn(role=turn.role, content=trim_prompt(turn.content, content_budget, counter))
    return _trim_structured(turn, budget, counter)


def truncate_to_fit(
    messages: Sequence[Turn],
    max_tokens: int,
    preserve_system: bool = True,
    counter: TokenCounter = DEFAULT_COUNTER,
) -> list[Turn]:
    """Fit messages into max_tokens.

    Order of operations:
    1. keep the first system message, charging it first
    2. if nothing is left for the rest, return the system message trimmed to fit
    3. evict the oldest other messages, never the most recent one
    4. trim the most recent message's content

    A list that already fits is returned unchanged.
    """
    messages = list(messages)
    if not messages or estimate_tokens(messages, counter) <= max_tokens:
        return messages

    system_index = None
    if preserve_system:
        system_index = next(
            (i for i, m in enumerate(messages) if m.role == "system"), None
        )
    system = messages[system_index] if system_index is not None else None
    others = [m for i, m in enumerate(messages) if i != system_index]

    system_tokens = estimate_tokens([system], counter) if system is not None else 0
    available = max_tokens - system_tokens

    if available <= 0:
        if system is None:
            return []
        return [_trim_turn(system, max_tokens, counter)]

    while len(others) > 1 and estimate_tokens(others, counter) > available:
        others.pop(0)

    if others and estimate_tokens(others, counter) > available:
        preceding = estimate_tokens(others[:-1], counter)
        others[-1] = _trim_turn(others[-1], available - preceding, counter)

    return [system, *others] if system is not None else others
