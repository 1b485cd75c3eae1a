"""
Prompt assembly for grounded question answering.

Retrieved chunks become numbered context blocks, followed by the tail of
the conversation and the user's question. Model-agnostic: the result is a
plain prompt string for the daemon's generate endpoint.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..core.types import RetrievalResult

# Version identifier for prompt tracking
PROMPT_VERSION = "v1"

# Most recent conversation messages included in a prompt (three exchanges)
HISTORY_MESSAGES = 6


SYSTEM_PROMPT = """You are a helpful assistant answering questions from a local knowledge base. Give accurate, specific answers based on the provided context.

RULES:
- Prefer the provided context over general knowledge
- Mention the source title when you rely on a context block
- If the context does not contain the answer, say so and give general guidance"""


NO_CONTEXT_NOTE = "No relevant passages were found in the knowledge base."


@dataclass
class ConversationMessage:
    """One prior turn of the conversation."""
    role: str
    content: str


def format_context(results: Sequence[RetrievalResult]) -> str:
    """
    Render retrieval results as numbered context blocks.

    Format per block:
        Context N:
        Source: <document title>
        <chunk text>
    """
    blocks = []
    for i, result in enumerate(results, start=1):
        source = result.document_title or result.document_id
        blocks.append(f"Context {i}:\nSource: {source}\n{result.chunk_text.strip()}")
    return "\n\n".join(blocks)


def build_prompt(
    query: str,
    results: Sequence[RetrievalResult],
    history: Optional[Sequence[ConversationMessage]] = None,
) -> str:
    """
    Build the generation prompt for a question.

    Args:
        query: The user's question
        results: Ranked context chunks (may be empty)
        history: Earlier conversation; only the last HISTORY_MESSAGES are used

    Returns:
        Prompt text
    """
    parts: List[str] = []

    if results:
        parts.append("Here is relevant information from the knowledge base:")
        parts.append(format_context(results))
    else:
        parts.append(NO_CONTEXT_NOTE)

    if history:
        recent = list(history)[-HISTORY_MESSAGES:]
        lines = [f"{message.role}: {message.content}" for message in recent]
        parts.append("Previous conversation:\n" + "\n".join(lines))

    parts.append(f"User question: {query.strip()}")
    return "\n\n".join(parts)
