from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.deps import chat_context, get_db, reject_workspace_id_in_body
from chatgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatgate.apps.api.response import SuccessEnvelope, success_response
from chatgate.core.config import get_settings
from chatgate.core.errors import ValidationError
from chatgate.persistence.db import SessionLocal
from chatgate.providers.answer import get_answer_provider
from chatgate.services import knowledge
from chatgate.services.access import require_access
from chatgate.services.bot_access import require_access_to
from chatgate.services.quota import LimitCheck, get_quota_service
from chatgate.services.sanitize import validate_messages
from chatgate.services.telemetry import increment_counter
from chatgate.services.tenancy import TenantContext


logger = logging.getLogger(__name__)
router = APIRouter(
    tags=["chat"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_workspace_id_in_body)],
)


class ChatRequest(BaseModel):
    bot_id: str = Field(min_length=1, max_length=128)
    # Raw on purpose: shape errors are reported by the message validator.
    messages: Any = None

    # Reject unknown fields so a workspace id cannot ride along in the payload.
    model_config = {"extra": "forbid"}


class ChatSource(BaseModel):
    document_id: str
    score: float


class ChatUsage(BaseModel):
    current: int
    limit: int


class ChatResponse(BaseModel):
    reply: str
    sources: list[ChatSource]
    is_demo: bool
    usage: ChatUsage | None = None


async def _record_conversation(workspace_id: str) -> int:
    # Own session: the caller's session may be torn down if the request is cancelled.
    async with SessionLocal() as session:
        return await get_quota_service().increment_usage(session, workspace_id)


@router.post("/chat", response_model=SuccessEnvelope[ChatResponse])
async def chat(
    request: Request,
    body: ChatRequest,
    context: TenantContext = Depends(chat_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Answer one chat turn.

    Stages run in a fixed order and each one short-circuits: resource check,
    access decision, message quota, input validation, retrieval, answer, and
    finally the usage increment. Demo requests skip billing and accounting.
    """
    settings = get_settings()
    quota = get_quota_service()

    validation = await require_access_to(db, context, body.bot_id)
    limit_check: LimitCheck | None = None
    if not validation.is_demo:
        require_access(context.access)
        limit_check = await quota.enforce_limit(db, context.workspace_id, context.tier)

    result = validate_messages(
        body.messages,
        max_messages=settings.chat_max_messages,
        max_chars=settings.chat_max_input_chars,
    )
    if not result.valid:
        raise ValidationError(result.error)

    question = next(
        (m.content for m in reversed(result.messages) if m.role == "user"),
        result.messages[-1].content,
    )
    passages = await knowledge.search(
        db, validation.workspace_id, question, settings.chat_context_top_k
    )
    reply = await get_answer_provider().answer(result.messages, passages)

    usage: ChatUsage | None = None
    if not validation.is_demo:
        # The write must land even if the client disconnects mid-await.
        current = await asyncio.shield(_record_conversation(context.workspace_id))
        usage = ChatUsage(current=current, limit=limit_check.limit if limit_check else -1)
    increment_counter("chat_turns_total")

    payload = ChatResponse(
        reply=reply,
        sources=[
            ChatSource(document_id=item["document_id"], score=item["score"]) for item in passages
        ],
        is_demo=validation.is_demo,
        usage=usage,
    )
    return success_response(request=request, data=payload)
