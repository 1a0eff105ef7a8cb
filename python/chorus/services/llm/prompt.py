"""Provider-agnostic prompt text for chat turns and artifact generation.

prompt.py produces strings and Turn lists only; each adapter handles
conversion to its provider format.
"""

from chorus.services.llm.types import Turn

DEFAULT_SYSTEM_PROMPT = """You are a friendly, careful assistant.
Keep answers concise and accurate. If information is missing or uncertain, say so.
When a tool would help, call it; do not describe tool calls in prose.
Documents you create with createDocument are shown to the user beside the chat.
Do not repeat a document's content in your reply after creating or updating it."""

TEXT_DOCUMENT_PROMPT = (
    "Write about the given topic. Markdown is supported. Use headings wherever appropriate."
)

CODE_DOCUMENT_PROMPT = """You are a code generator that writes self-contained, runnable snippets.
Output only the code, without surrounding markdown fences or explanations.
Prefer the standard library, keep snippets short, and include comments where helpful."""

SHEET_DOCUMENT_PROMPT = """You are a spreadsheet generator.
Output only CSV: a header row followed by data rows, with no markdown fences or commentary."""

DOCUMENT_PROMPTS = {
    "text": TEXT_DOCUMENT_PROMPT,
    "code": CODE_DOCUMENT_PROMPT,
    "sheet": SHEET_DOCUMENT_PROMPT,
}


def build_system_prompt(project_instructions: str | None = None) -> str:
    """Base system prompt, with project instructions appended when present."""
    if project_instructions:
        return f"{DEFAULT_SYSTEM_PROMPT}\n\nProject instructions:\n{project_instructions}"
    return DEFAULT_SYSTEM_PROMPT


def update_document_prompt(current_content: str | None, kind: str) -> str:
    """System prompt for rewriting an existing document of the given kind."""
    noun = {"text": "document", "code": "code snippet", "sheet": "spreadsheet"}.get(
        kind, "document"
    )
    return (
        f"Improve the following {noun} based on the given prompt. "
        f"Return the complete updated {noun}.\n\n{current_content or ''}"
    )


def single_prompt(system: str, user: str) -> list[Turn]:
    """Two-turn prompt used by one-shot helper generations."""
    return [Turn(role="system", content=system), Turn(role="user", content=user)]


RESEARCH_PLAN_PROMPT = """You plan web research.
Given a research request, reply with up to {max_queries} distinct web search queries that
together cover it, one query per line, with no numbering or commentary."""

TITLE_PROMPT = """Generate a short title for a chat that starts with the user's message.
At most 80 characters. No quotes or colons. Reply with the title only."""

FOLLOWUP_PROMPT = """Suggest up to {max_suggestions} short follow-up questions the user
might ask next, based on the conversation. One per line, each under 80 characters, no numbering."""


def research_report_prompt(brief: str, findings: str, date: str) -> str:
    """User prompt for the final report of a research run."""
    return (
        f"Today is {date}. Write a thorough, well-structured research report in markdown "
        f"answering the research request below, using only the findings provided. "
        f"Cite sources inline as [Source Title](URL).\n\n"
        f"Research request:\n{brief}\n\nFindings:\n{findings}"
    )


def parse_lines(text: str, limit: int) -> list[str]:
    """Non-empty lines of a list-style model reply, bullets and numbering stripped."""
    lines = []
    for raw in text.splitlines():
        line = raw.strip().lstrip("-*•").strip()
        head, sep, rest = line.partition(". ")
        if sep and head.isdigit():
            line = rest.strip()
        line = line.strip('"')
        if line:
            lines.append(line)
        if len(lines) >= limit:
            break
    return lines
