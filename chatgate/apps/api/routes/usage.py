from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.deps import get_db, get_tenant_context
from chatgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatgate.apps.api.response import SuccessEnvelope, success_response
from chatgate.persistence.repos import documents as documents_repo
from chatgate.services.quota import get_quota_service, message_limit_for_tier
from chatgate.services.tenancy import TenantContext


router = APIRouter(tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class UsageResponse(BaseModel):
    month: str
    tier: str
    # -1 means unlimited for every limit below.
    monthly_conversations: int
    message_limit: int
    monthly_uploads: int
    upload_limit: int
    total_stored_words: int
    stored_word_limit: int
    per_upload_word_limit: int
    knowledge_items: int
    knowledge_item_limit: int


@router.get("/usage", response_model=SuccessEnvelope[UsageResponse])
async def usage(
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Limits follow the effective tier, so a lapsed account sees basic limits.
    snapshot = await get_quota_service().get_usage(db, context.workspace_id)
    features = context.access.features
    items = await documents_repo.count_documents(db, context.workspace_id)
    payload = UsageResponse(
        month=snapshot.month,
        tier=context.tier.value,
        monthly_conversations=snapshot.monthly_conversations,
        message_limit=message_limit_for_tier(context.tier),
        monthly_uploads=snapshot.monthly_uploads,
        upload_limit=features.monthly_upload_limit,
        total_stored_words=snapshot.total_stored_words,
        stored_word_limit=features.total_word_cap,
        per_upload_word_limit=features.per_upload_word_limit,
        knowledge_items=items,
        knowledge_item_limit=features.max_knowledge_items,
    )
    return success_response(request=request, data=payload)
