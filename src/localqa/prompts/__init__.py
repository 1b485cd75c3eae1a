"""
Prompt templates for grounded question answering.
"""

from .answer import (
    HISTORY_MESSAGES,
    PROMPT_VERSION,
    SYSTEM_PROMPT,
    ConversationMessage,
    build_prompt,
    format_context,
)

__all__ = [
    "HISTORY_MESSAGES",
    "PROMPT_VERSION",
    "SYSTEM_PROMPT",
    "ConversationMessage",
    "build_prompt",
    "format_context",
]
