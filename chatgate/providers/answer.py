from __future__ import annotations

from typing import Protocol

from chatgate.services.sanitize import ChatMessage


NO_CONTEXT_REPLY = (
    "I don't have information about that yet. Try rephrasing your question or add it to the knowledge base."
)


class AnswerProvider(Protocol):
    async def answer(self, messages: list[ChatMessage], context: list[dict]) -> str:
        ...


class ExtractiveAnswerProvider:
    """Compose a reply from the best retrieved passages without a model call."""

    def __init__(self, max_passages: int = 3, max_passage_chars: int = 600) -> None:
        self._max_passages = max_passages
        self._max_passage_chars = max_passage_chars

    async def answer(self, messages: list[ChatMessage], context: list[dict]) -> str:
        _ = messages
        passages = [item.get("text", "").strip() for item in context if item.get("text")]
        passages = [p for p in passages if p][: self._max_passages]
        if not passages:
            return NO_CONTEXT_REPLY
        trimmed = [
            p if len(p) <= self._max_passage_chars else p[: self._max_passage_chars].rstrip() + "..."
            for p in passages
        ]
        return "Here is what I found:\n\n" + "\n\n".join(trimmed)


_provider: AnswerProvider | None = None


def get_answer_provider() -> AnswerProvider:
    global _provider
    if _provider is None:
        _provider = ExtractiveAnswerProvider()
    return _provider


def set_answer_provider(provider: AnswerProvider | None) -> None:
    # Swap providers in tests or when a hosted model is configured.
    global _provider
    _provider = provider
