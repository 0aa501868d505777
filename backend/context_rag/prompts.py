"""Prompt assembly from a retrieved context.

Pure string building: no I/O, and the same inputs always yield the same
prompt.
"""

import json
from typing import List, Optional

from context_rag.retrieval.base import RAGContext

SYSTEM_PREAMBLE = (
    "You are a helpful AI assistant with access to the user's knowledge base "
    "and conversation history."
)

INSTRUCTIONS = """Instructions:
- Answer based on the provided context when relevant
- Cite sources using [1], [2], etc. when referencing context
- If the context does not contain the answer, say so clearly
- Be concise and direct
- Respect the user's preferences and conversation style
- Reference previous conversations when relevant"""

NO_CONTEXT_MESSAGE = "No relevant context found in the knowledge base."

UNAVAILABLE_MESSAGE = "Knowledge base context is unavailable for this request."

HISTORY_LINES = 3


def format_documents(context: RAGContext) -> str:
    """Number each document for citation: ``[1] ...``, ``[2] ...``."""
    if not context.relevant_docs:
        return NO_CONTEXT_MESSAGE
    return "\n\n".join(
        f"[{i}] {doc.content.strip()}" for i, doc in enumerate(context.relevant_docs, 1)
    )


def format_user_context(context: RAGContext) -> List[str]:
    lines = []
    user_context = context.user_context
    if user_context.preferences:
        lines.append(f"User Preferences: {json.dumps(user_context.preferences, sort_keys=True, default=str)}")
    if user_context.recent_topics:
        lines.append(f"Recent Topics: {', '.join(user_context.recent_topics)}")
    return lines


def build_enhanced_prompt(query: str, context: Optional[RAGContext]) -> str:
    """Build the LLM prompt for ``query`` around a retrieved context.

    Args:
        query: The user's message
        context: Result of ``get_context``; None when retrieval failed

    Returns:
        Prompt text with numbered context items, optional user-context and
        history blocks, the query and closing instructions
    """
    sections = [SYSTEM_PREAMBLE]

    if context is None:
        sections.append(f"CONTEXT FROM KNOWLEDGE BASE:\n{UNAVAILABLE_MESSAGE}")
    else:
        sections.append(f"CONTEXT FROM KNOWLEDGE BASE:\n{format_documents(context)}")

        user_lines = format_user_context(context)
        if user_lines:
            sections.append("USER CONTEXT:\n" + "\n".join(user_lines))

        history = context.user_context.conversation_history[:HISTORY_LINES]
        if history:
            sections.append("RECENT CONVERSATION HISTORY:\n" + "\n".join(f"- {line}" for line in history))

    sections.append(f"USER QUERY: {query}")
    sections.append(INSTRUCTIONS)
    return "\n\n".join(sections)
