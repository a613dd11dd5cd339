from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Literal

from pydantic import BaseModel


MAX_INPUT_CHARS = 4000
MAX_MESSAGES = 50

_ANGLE_RE = re.compile(r"[<>]")
_SCHEME_RE = re.compile(r"(?:javascript|data|vbscript):", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class MessageValidation:
    valid: bool
    messages: list[ChatMessage] = field(default_factory=list)
    error: str | None = None


def sanitize(raw: Any, *, max_chars: int = MAX_INPUT_CHARS) -> str:
    """Bound and clean a piece of user text.

    Defense in depth only: output encoding at render time is still required.
    Truncation happens before stripping so the cap applies to what the caller sent.
    """
    if not isinstance(raw, str) or not raw:
        return ""
    cleaned = raw.strip()[:max_chars]
    cleaned = _ANGLE_RE.sub("", cleaned)
    cleaned = _SCHEME_RE.sub("", cleaned)
    cleaned = _EVENT_HANDLER_RE.sub("", cleaned)
    return cleaned


def _normalize_role(value: Any) -> Literal["user", "assistant"]:
    # Anything that is not explicitly the assistant is treated as user input.
    return "assistant" if value == "assistant" else "user"


def validate_messages(
    messages: Any,
    *,
    max_messages: int = MAX_MESSAGES,
    max_chars: int = MAX_INPUT_CHARS,
) -> MessageValidation:
    if not isinstance(messages, list) or not messages:
        return MessageValidation(valid=False, error="Messages must be a non-empty array")
    if len(messages) > max_messages:
        return MessageValidation(valid=False, error="Too many messages in conversation history")

    sanitized: list[ChatMessage] = []
    for entry in messages:
        if isinstance(entry, BaseModel):
            entry = entry.model_dump()
        if not isinstance(entry, dict):
            return MessageValidation(valid=False, error="Invalid message format")
        content = sanitize(entry.get("content"), max_chars=max_chars)
        if not content:
            return MessageValidation(valid=False, error="Message content cannot be empty")
        sanitized.append(ChatMessage(role=_normalize_role(entry.get("role")), content=content))
    return MessageValidation(valid=True, messages=sanitized)
