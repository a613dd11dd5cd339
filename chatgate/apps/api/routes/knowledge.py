from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.deps import (
    get_db,
    get_tenant_context,
    mutation_context,
    reject_workspace_id_in_body,
)
from chatgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatgate.apps.api.response import SuccessEnvelope, success_response
from chatgate.domain.models import Document
from chatgate.domain.state import as_utc
from chatgate.services import knowledge
from chatgate.services.access import require_access
from chatgate.services.tenancy import TenantContext


router = APIRouter(
    prefix="/knowledge",
    tags=["knowledge"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_workspace_id_in_body)],
)


class KnowledgeItemResponse(BaseModel):
    id: str
    filename: str
    status: str
    word_count: int
    failure_reason: str | None
    created_at: datetime | None
    updated_at: datetime | None
    indexed_at: datetime | None


class KnowledgeCreateRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class KnowledgeUpdateRequest(BaseModel):
    filename: str | None = Field(default=None, min_length=1, max_length=255)
    content: str | None = Field(default=None, min_length=1)

    model_config = {"extra": "forbid"}


class KnowledgeDeleteResponse(BaseModel):
    id: str
    deleted: bool


class SearchHit(BaseModel):
    chunk_id: str
    document_id: str
    text: str
    score: float


def _to_response(doc: Document) -> KnowledgeItemResponse:
    return KnowledgeItemResponse(
        id=doc.id,
        filename=doc.filename,
        status=doc.status,
        word_count=int(doc.word_count or 0),
        failure_reason=doc.failure_reason,
        created_at=as_utc(doc.created_at),
        updated_at=as_utc(doc.updated_at),
        indexed_at=as_utc(doc.indexed_at),
    )


@router.get("", response_model=SuccessEnvelope[list[KnowledgeItemResponse]])
async def list_knowledge(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await knowledge.list_items(db, context.workspace_id, limit=limit)
    return success_response(request=request, data=[_to_response(doc) for doc in items])


@router.get("/search", response_model=SuccessEnvelope[list[SearchHit]])
async def search_knowledge(
    request: Request,
    q: str = Query(min_length=1, max_length=4000),
    top_k: int = Query(default=5, ge=1, le=50),
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    hits = await knowledge.search(db, context.workspace_id, q, top_k)
    return success_response(
        request=request,
        data=[
            SearchHit(
                chunk_id=hit["chunk_id"],
                document_id=hit["document_id"],
                text=hit["text"],
                score=hit["score"],
            )
            for hit in hits
        ],
    )


@router.post(
    "",
    response_model=SuccessEnvelope[KnowledgeItemResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_knowledge(
    request: Request,
    body: KnowledgeCreateRequest,
    context: TenantContext = Depends(mutation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    require_access(context.access)
    doc = await knowledge.create_item(
        db,
        workspace_id=context.workspace_id,
        owner_id=context.user_id,
        tier=context.tier,
        filename=body.filename,
        content=body.content,
    )
    return success_response(request=request, data=_to_response(doc))


@router.put("/{item_id}", response_model=SuccessEnvelope[KnowledgeItemResponse])
async def update_knowledge(
    request: Request,
    item_id: str,
    body: KnowledgeUpdateRequest,
    context: TenantContext = Depends(mutation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    require_access(context.access)
    doc = await knowledge.update_item(
        db,
        workspace_id=context.workspace_id,
        owner_id=context.user_id,
        tier=context.tier,
        document_id=item_id,
        filename=body.filename,
        content=body.content,
    )
    return success_response(request=request, data=_to_response(doc))


@router.delete("/{item_id}", response_model=SuccessEnvelope[KnowledgeDeleteResponse])
async def delete_knowledge(
    request: Request,
    item_id: str,
    context: TenantContext = Depends(mutation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Deleting stays available without a subscription so lapsed accounts can clean up.
    await knowledge.delete_item(
        db,
        workspace_id=context.workspace_id,
        owner_id=context.user_id,
        document_id=item_id,
    )
    return success_response(request=request, data=KnowledgeDeleteResponse(id=item_id, deleted=True))
