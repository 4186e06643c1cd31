"""
Chat Context Summarizer agent.

Compresses long chat histories into a concise summary so
the turn stays within the model's context budget.

Trigger logic:
    When the estimated token count of the history exceeds
    ``settings.context_token_limit``, ``compact_history``
    runs the summarizer *before* the main loop and replaces
    the history with ``[summary] + last 4 messages``.
"""

import logging
from typing import Dict, Any, List, Optional, Tuple

from console_agent.config import settings
from console_agent.services.agents.base import BaseAgent, GenerationError

logger = logging.getLogger(__name__)


PROMPT = """\
You are a conversation summariser.  Given a chat history
between a user and an AI assistant working in a database
console, produce a concise summary that preserves:

1. Which databases, tables and columns were discussed.
2. Queries generated, optimised or visualized, and the
   decisions made about them.
3. Any outstanding requests or open questions.
4. Context the assistant needs to continue naturally.

Return a JSON object:
{
  "summary": "<concise summary, max 800 words>"
}

Be thorough but brief.  Do NOT include raw SQL or full
JSON panels; describe them in natural language.
"""

# Rough estimate: 1 token ≈ 4 characters.
_CHARS_PER_TOKEN = 4

# Messages kept verbatim after compaction.
_KEEP_RECENT = 4


def estimate_tokens(messages: List[Dict[str, Any]]) -> int:
    """
    Rough token estimate for a list of chat messages.

    Parameters:
        messages (list[dict]): Messages with 'content' keys.

    Returns:
        int: Estimated token count.
    """
    total_chars = sum(
        len(m.get("content") or "") for m in messages
    )
    return total_chars // _CHARS_PER_TOKEN


class SummarizerAgent(BaseAgent):
    """Compress long chat histories into a concise summary."""

    name = "summarizer"
    system_prompt = PROMPT
    temperature = 0.3

    def run(
        self,
        chat_history: List[Dict[str, Any]],
    ) -> str:
        """
        Summarise the chat history.

        Parameters:
            chat_history (list[dict]): Messages to compress.

        Returns:
            str: The new summary.
        """
        messages = [
            {"role": "system", "content": self.system_prompt},
        ]

        conv_parts = []
        for m in chat_history:
            role = (m.get("role") or "user").upper()
            content = m.get("content") or ""
            if content:
                conv_parts.append(f"{role}: {content}")

        conversation_text = "\n".join(conv_parts)
        messages.append({
            "role": "user",
            "content": (
                "Summarise this conversation:\n\n"
                f"{conversation_text}"
            ),
        })

        result = self._call_llm(messages)
        return str(result.get("summary") or "")


def compact_history(
    summarizer: SummarizerAgent,
    history: List[Dict[str, Any]],
    token_limit: Optional[int] = None,
) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Summarise *history* when it exceeds the token budget.

    The recent tail is cut at a user message so tool results
    are never separated from the call that produced them.

    Returns:
        tuple[list[dict], bool]: (effective_history,
        did_summarize).  On summarizer failure the original
        history is returned unchanged.
    """
    limit = token_limit or settings.context_token_limit
    tokens = estimate_tokens(history)
    if tokens <= limit:
        return history, False

    logger.info(
        "[summarizer] context too long (%d tokens > %d), "
        "running summarizer",
        tokens,
        limit,
    )

    cut = max(len(history) - _KEEP_RECENT, 0)
    while cut > 0 and history[cut].get("role") != "user":
        cut -= 1
    if cut == 0:
        return history, False

    older, recent = history[:cut], history[cut:]
    try:
        summary = summarizer.run(older)
    except GenerationError as exc:
        logger.warning("[summarizer] skipped: %s", exc)
        return history, False

    compressed = [
        {
            "role": "system",
            "content": f"[Conversation summary]\n{summary}",
        },
        *recent,
    ]
    return compressed, True
