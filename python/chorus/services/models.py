"""Model catalog.

Static registry of the chat models the service offers. A model id is
"{provider}/{provider_model_name}". Each entry carries what the turn
pipeline needs: the base credit cost of a turn, the context window used
for truncation, the output limit, input modalities (models without any
get no tools), the reasoning flag, and token pricing for cost reporting.
"""

from dataclasses import dataclass

from chorus.errors import ApiError, ApiErrorCode


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input_per_mtok: float
    output_per_mtok: float

    def cost_usd(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_per_mtok + output_tokens * self.output_per_mtok
        ) / 1_000_000


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    provider: str
    model_name: str
    display_name: str
    credit_cost: int
    context_window: int
    max_output_tokens: int
    input_modalities: tuple[str, ...]
    reasoning: bool
    pricing: ModelPricing
    anonymous: bool = False

    @property
    def supports_tools(self) -> bool:
        return bool(self.input_modalities)


MODELS: dict[str, ModelDefinition] = {
    m.id: m
    for m in (
        ModelDefinition(
            id="openai/gpt-4o-mini",
            provider="openai",
            model_name="gpt-4o-mini",
            display_name="GPT-4o mini",
            credit_cost=1,
            context_window=128_000,
            max_output_tokens=16_384,
            input_modalities=("text", "image"),
            reasoning=False,
            pricing=ModelPricing(0.15, 0.60),
            anonymous=True,
        ),
        ModelDefinition(
            id="openai/gpt-4o",
            provider="openai",
            model_name="gpt-4o",
            display_name="GPT-4o",
            credit_cost=3,
            context_window=128_000,
            max_output_tokens=16_384,
            input_modalities=("text", "image"),
            reasoning=False,
            pricing=ModelPricing(2.50, 10.00),
        ),
        ModelDefinition(
            id="openai/o4-mini",
            provider="openai",
            model_name="o4-mini",
            display_name="o4-mini",
            credit_cost=3,
            context_window=200_000,
            max_output_tokens=100_000,
            input_modalities=("text", "image"),
            reasoning=True,
            pricing=ModelPricing(1.10, 4.40),
        ),
        ModelDefinition(
            id="anthropic/claude-3-5-haiku-latest",
            provider="anthropic",
            model_name="claude-3-5-haiku-latest",
            display_name="Claude 3.5 Haiku",
            credit_cost=1,
            context_window=200_000,
            max_output_tokens=8_192,
            input_modalities=("text", "image"),
            reasoning=False,
            pricing=ModelPricing(0.80, 4.00),
            anonymous=True,
        ),
        ModelDefinition(
            id="anthropic/claude-sonnet-4-0",
            provider="anthropic",
            model_name="claude-sonnet-4-0",
            display_name="Claude Sonnet 4",
            credit_cost=3,
            context_window=200_000,
            max_output_tokens=64_000,
            input_modalities=("text", "image", "pdf"),
            reasoning=False,
            pricing=ModelPricing(3.00, 15.00),
        ),
    )
}

# Small, cheap model used for titles and follow-up suggestions
UTILITY_MODEL_ID = "openai/gpt-4o-mini"

# Default output budget of a chat turn; capped by the model's own limit
DEFAULT_MAX_OUTPUT_TOKENS = 4096


def get_model(model_id: str) -> ModelDefinition:
    """Look up a model by id.

    Raises:
        ApiError(E_MODEL_NOT_AVAILABLE): Unknown model id.
    """
    model = MODELS.get(model_id)
    if model is None:
        raise ApiError(ApiErrorCode.E_MODEL_NOT_AVAILABLE, f"Unknown model: {model_id}")
    return model


def anonymous_model_ids() -> frozenset[str]:
    return frozenset(m.id for m in MODELS.values() if m.anonymous)


def output_tokens_for(model: ModelDefinition) -> int:
    return min(DEFAULT_MAX_OUTPUT_TOKENS, model.max_output_tokens)
