"""Tests for token estimation and context truncation."""

import pytest

from chorus.services.llm.types import (
    FileContent,
    TextContent,
    ToolCallContent,
    ToolResultContent,
    Turn,
)
from chorus.services.token_budget import (
    FILE_PART_TOKENS,
    MESSAGE_OVERHEAD_TOKENS,
    MIN_CHUNK_SIZE,
    CharHeuristicCounter,
    estimate_tokens,
    trim_prompt,
    truncate_to_fit,
)

counter = CharHeuristicCounter()


# =============================================================================
# Estimation
# =============================================================================


class TestEstimateTokens:
    def test_counter_rounds_up(self):
        assert counter.count("") == 0
        assert counter.count("abcd") == 1
        assert counter.count("abcde") == 2

    def test_text_turn(self):
        # role "user" is 1 token
        assert estimate_tokens([Turn(role="user", content="abcd")]) == (
            1 + MESSAGE_OVERHEAD_TOKENS + 1
        )

    def test_file_part_has_fixed_cost(self):
        turn = Turn(
            role="user",
            content=(
                TextContent(text="look"),
                FileContent(url="https://example.com/a.png", media_type="image/png"),
            ),
        )

        assert estimate_tokens([turn]) == 1 + MESSAGE_OVERHEAD_TOKENS + 1 + FILE_PART_TOKENS

    def test_tool_call_counts_serialized_input(self):
        turn = Turn(
            role="assistant",
            content=(ToolCallContent(tool_call_id="c1", tool_name="webSearch", input={"q": "x"}),),
        )

        # '{"q": "x"}' is 10 characters
        assert estimate_tokens([turn]) == 3 + MESSAGE_OVERHEAD_TOKENS + 3

    def test_sums_messages(self):
        turns = [Turn(role="user", content="abcd"), Turn(role="user", content="abcd")]

        assert estimate_tokens(turns) == 2 * estimate_tokens(turns[:1])


# =============================================================================
# trim_prompt
# =============================================================================


class TestTrimPrompt:
    def test_fitting_prompt_unchanged(self):
        assert trim_prompt("short prompt", 100) == "short prompt"

    def test_cuts_at_word_boundaries(self):
        prompt = "word " * 1000

        trimmed = trim_prompt(prompt, 100)

        assert counter.count(trimmed) <= 100
        assert len(trimmed) >= MIN_CHUNK_SIZE
        assert set(trimmed.split()) == {"word"}

    def test_never_below_floor(self):
        trimmed = trim_prompt("x" * 1000, 10)

        assert trimmed == "x" * MIN_CHUNK_SIZE

    def test_empty_prompt(self):
        assert trim_prompt("", 10) == ""


# =============================================================================
# truncate_to_fit
# =============================================================================


def _user(chars: int) -> Turn:
    return Turn(role="user", content="a" * chars)


def _assistant(chars: int) -> Turn:
    return Turn(role="assistant", content="b" * chars)


class TestTruncateToFit:
    def test_fitting_messages_unchanged(self):
        messages = [Turn(role="system", content="sys"), _user(40)]

        assert truncate_to_fit(messages, 1000) == messages

    def test_empty_list(self):
        assert truncate_to_fit([], 10) == []

    def test_evicts_oldest_keeping_system(self):
        system = Turn(role="system", content="sys")
        u1, a1, u2 = _user(400), _assistant(400), _user(400)

        result = truncate_to_fit([system, u1, a1, u2], 230)

        assert result == [system, a1, u2]

    def test_trims_most_recent_message_instead_of_dropping_it(self):
        system = Turn(role="system", content="sys")

        result = truncate_to_fit([system, _user(4000)], 200)

        assert [t.role for t in result] == ["system", "user"]
        assert estimate_tokens(result) <= 200
        assert result[1].text.startswith("a")

    def test_oversized_system_prompt_alone_is_trimmed(self):
        system = Turn(role="system", content="s" * 2000)

        result = truncate_to_fit([system, _user(400)], 100)

        assert len(result) == 1
        assert result[0].role == "system"
        assert estimate_tokens(result) <= 100

    def test_system_can_be_evicted_when_not_preserved(self):
        system = Turn(role="system", content="s" * 400)
        last = _user(40)

        result = truncate_to_fit([system, last], 50, preserve_system=False)

        assert result == [last]

    def test_structured_turn_trimmed_from_the_end(self):
        turn = Turn(
            role="user",
            content=(TextContent(text="keep"), TextContent(text="z" * 4000)),
        )

        result = truncate_to_fit([turn], 300)

        assert estimate_tokens(result) <= 300
        assert result[0].content[0] == TextContent(text="keep")

    def test_tool_result_output_trimmed(self):
        system = Turn(role="system", content="sys")
        result_turn = Turn(
            role="tool",
            content=(
                ToolResultContent(
                    tool_call_id="c1", tool_name="webSearch", output="word " * 1000
                ),
            ),
        )

        result = truncate_to_fit([system, _user(40), result_turn], 400)

        assert [t.role for t in result] == ["system", "tool"]
        assert estimate_tokens(result) <= 400
        trimmed = result[1].content[0]
        assert trimmed.tool_call_id == "c1"
        assert trimmed.tool_name == "webSearch"
        assert 0 < len(trimmed.output) < 5000
        assert trimmed.output.startswith("word")

    def test_fully_consumed_result_entry_removed(self):
        turn = Turn(
            role="tool",
            content=(
                ToolResultContent(tool_call_id="c1", tool_name="readDocument", output="x" * 4000),
                ToolResultContent(tool_call_id="c2", tool_name="webSearch", output="y" * 400),
            ),
        )
        # 300 tokens over budget: the last entry (100 tokens) goes entirely
        budget = estimate_tokens([turn]) - 300

        result = truncate_to_fit([turn], budget)

        assert [p.tool_call_id for p in result[0].content] == ["c1"]
        assert 0 < len(result[0].content[0].output) < 4000
        assert estimate_tokens(result) <= budget


# =============================================================================
# Fit and idempotence over mixed threads
# =============================================================================

LOREM = "Lorem ipsum dolor sit amet, consectetur adipiscing elit.\n"


def _mixed_thread() -> list[Turn]:
    return [
        Turn(role="system", content="Be concise."),
        Turn(role="user", content=LOREM * 40),
        Turn(
            role="assistant",
            content=(
                TextContent(text="Let me look that up."),
                ToolCallContent(
                    tool_call_id="c1", tool_name="webSearch", input={"q": "lorem ipsum"}
                ),
            ),
        ),
        Turn(
            role="tool",
            content=(
                ToolResultContent(tool_call_id="c1", tool_name="webSearch", output=LOREM * 60),
            ),
        ),
        Turn(role="user", content=LOREM * 25),
    ]


def _tool_last_thread() -> list[Turn]:
    return [
        Turn(role="system", content="Be concise."),
        Turn(
            role="user",
            content=(
                TextContent(text=LOREM * 8),
                FileContent(url="https://files.example/a.png", media_type="image/png"),
            ),
        ),
        Turn(role="assistant", content=LOREM * 50),
        Turn(
            role="tool",
            content=(
                ToolResultContent(tool_call_id="c2", tool_name="readDocument", output="ok"),
                ToolResultContent(
                    tool_call_id="c3", tool_name="webSearch", output=LOREM * 100
                ),
            ),
        ),
    ]


def _single_long_message() -> list[Turn]:
    return [Turn(role="user", content=LOREM * 180)]


class TestFitAndIdempotence:
    @pytest.mark.parametrize(
        "thread_factory",
        [_mixed_thread, _tool_last_thread, _single_long_message],
        ids=["mixed", "tool-last", "single"],
    )
    @pytest.mark.parametrize("budget", [300, 650, 1200, 3000])
    def test_result_fits_and_is_stable(self, thread_factory, budget):
        thread = thread_factory()

        once = truncate_to_fit(thread, budget)
        twice = truncate_to_fit(once, budget)

        assert estimate_tokens(once) <= budget
        assert twice == once
