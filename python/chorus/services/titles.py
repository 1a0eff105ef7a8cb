"""Chat titles for new chats."""

from chorus.logging import get_logger
from chorus.services.llm.errors import LLMError
from chorus.services.llm.prompt import TITLE_PROMPT, single_prompt
from chorus.services.llm.router import LLMRouter
from chorus.services.llm.types import LLMCallContext, LLMOperation, LLMRequest
from chorus.services.models import UTILITY_MODEL_ID, get_model

logger = get_logger(__name__)

MAX_TITLE_CHARS = 80
TITLE_MAX_TOKENS = 40
TITLE_TIMEOUT_S = 10
DEFAULT_TITLE = "New chat"


def fallback_title(user_text: str) -> str:
    """First non-empty line of the user's text, cut to the title limit."""
    for line in user_text.splitlines():
        line = line.strip()
        if line:
            return line[:MAX_TITLE_CHARS]
    return DEFAULT_TITLE


def _clean(title: str) -> str:
    return title.strip().strip('"').strip("'").replace(":", "").strip()[:MAX_TITLE_CHARS]


async def generate_title(
    llm_router: LLMRouter | None, user_text: str, chat_id: str | None = None
) -> str:
    """Short title from the first user message; never raises."""
    fallback = fallback_title(user_text)
    if llm_router is None or not user_text.strip():
        return fallback

    model = get_model(UTILITY_MODEL_ID)
    if not llm_router.is_provider_available(model.provider):
        return fallback

    try:
        response = await llm_router.generate(
            model.provider,
            LLMRequest(
                model_name=model.model_name,
                messages=single_prompt(TITLE_PROMPT, user_text),
                max_tokens=TITLE_MAX_TOKENS,
                temperature=0.3,
            ),
            timeout_s=TITLE_TIMEOUT_S,
            call_context=LLMCallContext(operation=LLMOperation.TITLE, chat_id=chat_id),
        )
    except LLMError as e:
        logger.warning("title_generation_failed", error_class=e.error_class.value)
        return fallback

    return _clean(response.text) or fallback
