"""Per-turn LLM usage and dollar cost accounting.

Every model call made on behalf of a turn (the main generation, document
sub-streams, research planning and reports, follow-ups) records its usage
here under an event label. The summary is reported in the final message
metadata and in the turn_end log.
"""

from dataclasses import dataclass

from chorus.services.llm.types import LLMUsage
from chorus.services.models import ModelDefinition


@dataclass(frozen=True)
class CostEntry:
    event: str
    model_id: str
    input_tokens: int
    output_tokens: int
    cost_usd: float


class CostAccumulator:
    def __init__(self) -> None:
        self.entries: list[CostEntry] = []

    def add_usage(self, event: str, model: ModelDefinition, usage: LLMUsage | None) -> None:
        if usage is None:
            return
        input_tokens = usage.prompt_tokens or 0
        output_tokens = usage.completion_tokens or 0
        self.entries.append(
            CostEntry(
                event=event,
                model_id=model.id,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=model.pricing.cost_usd(input_tokens, output_tokens),
            )
        )

    @property
    def input_tokens(self) -> int:
        return sum(e.input_tokens for e in self.entries)

    @property
    def output_tokens(self) -> int:
        return sum(e.output_tokens for e in self.entries)

    @property
    def total_cost_usd(self) -> float:
        return sum(e.cost_usd for e in self.entries)

    def summary(self) -> dict:
        """JSON-able usage report for message metadata."""
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.input_tokens + self.output_tokens,
            "costUsd": round(self.total_cost_usd, 6),
            "events": [
                {
                    "event": e.event,
                    "modelId": e.model_id,
                    "inputTokens": e.input_tokens,
                    "outputTokens": e.output_tokens,
                }
                for e in self.entries
            ],
        }
