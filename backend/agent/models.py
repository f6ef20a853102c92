from __future__ import annotations

import os
from typing import Any, Optional, Protocol, Sequence, Union

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, AnyMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_groq import ChatGroq

"""
Language-model capability used by the search endpoints.

`ChatFilterModel` wraps a hosted LangChain chat model and binds the filter
tool per call. `StubFilterModel` returns a canned reply (or raises a canned
error) so the fallback paths can run without network access.
"""

LLM_TIMEOUT_SECONDS = 20.0


class LLMNotConfigured(RuntimeError):
    pass


def get_llm(*, temperature: float = 0.0) -> BaseChatModel:
    """
    Return an LLM client.

    Priority:
    1) Groq (if GROQ_API_KEY is set)
    2) Google AI Studio / Gemini (if GOOGLE_API_KEY is set)

    Calls are not retried; callers fall back to deterministic output instead.
    """
    groq_key = os.getenv("GROQ_API_KEY")
    if groq_key:
        model = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
        return ChatGroq(model=model, temperature=temperature, timeout=LLM_TIMEOUT_SECONDS, max_retries=0)

    google_key = os.getenv("GOOGLE_API_KEY")
    if google_key:
        model = os.getenv("GOOGLE_MODEL", "gemini-1.5-flash")
        return ChatGoogleGenerativeAI(model=model, temperature=temperature, timeout=LLM_TIMEOUT_SECONDS, max_retries=0)

    raise LLMNotConfigured("Missing GROQ_API_KEY and GOOGLE_API_KEY on backend.")


def get_llm_or_none(*, temperature: float = 0.0) -> Optional[BaseChatModel]:
    try:
        return get_llm(temperature=temperature)
    except LLMNotConfigured:
        return None


class FilterModel(Protocol):
    def invoke(self, messages: Sequence[AnyMessage], *, tools: list[dict[str, Any]]) -> AIMessage: ...


class ChatFilterModel:
    def __init__(self, llm: BaseChatModel) -> None:
        self._llm = llm

    def invoke(self, messages: Sequence[AnyMessage], *, tools: list[dict[str, Any]]) -> AIMessage:
        out = self._llm.bind_tools(tools).invoke(list(messages))
        if not isinstance(out, AIMessage):
            raise TypeError(f"Expected AIMessage from chat model, got {type(out).__name__}")
        return out


class StubFilterModel:
    def __init__(self, reply: Union[AIMessage, BaseException, None] = None) -> None:
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    def invoke(self, messages: Sequence[AnyMessage], *, tools: list[dict[str, Any]]) -> AIMessage:
        self.calls.append({"messages": list(messages), "tools": tools})
        if isinstance(self.reply, BaseException):
            raise self.reply
        return self.reply if self.reply is not None else AIMessage(content="")


def get_filter_model() -> Optional[FilterModel]:
    llm = get_llm_or_none(temperature=0.3)
    return ChatFilterModel(llm) if llm is not None else None
