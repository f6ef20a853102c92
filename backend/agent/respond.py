from __future__ import annotations

import logging
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from agent.filter_graph import CITY_NAME, message_text

logger = logging.getLogger(__name__)

NO_RESULTS_SENTENCE = "I couldn't find any events matching your criteria. Try adjusting your search."


def fallback_sentence(count: int, has_results: bool = True) -> str:
    if not has_results:
        return NO_RESULTS_SENTENCE
    return f"I found {count} event{'' if count == 1 else 's'} for you."


def build_response_prompt(query: str, summaries: list[str], count: int) -> list:
    numbered = "\n".join(f"{i}. {s}" for i, s in enumerate(summaries, start=1)) or "(none)"
    return [
        SystemMessage(
            content=(
                f"You are a friendly guide to events in {CITY_NAME}. "
                "Reply with ONE short sentence (max 30 words) telling the user what was found. "
                "Do not list every event, do not use markdown, and do not invent events."
            )
        ),
        HumanMessage(
            content=(
                f'User searched: "{query}"\n'
                f"Matching events ({count} total, top results below):\n{numbered}"
            )
        ),
    ]


def generate_response_sentence(
    query: str,
    summaries: list[str],
    count: int,
    llm: Optional[BaseChatModel],
) -> str:
    """
    One-sentence description of a result set.
    Never raises: any model problem yields the templated sentence.
    """
    if llm is None:
        return fallback_sentence(count, bool(summaries))
    try:
        out = llm.invoke(build_response_prompt(query, summaries, count))
    except Exception as e:
        logger.warning("Response sentence generation failed: %s", e)
        return fallback_sentence(count, bool(summaries))
    text = message_text(out).strip() if hasattr(out, "content") else ""
    return text or fallback_sentence(count, bool(summaries))
