"""Secure knowledge store gateway.

Every function takes the workspace and owner ids of an already-resolved
tenant context. Client-supplied ids never reach these functions, and every
query carries the workspace equality filter from ``persistence.guards``.
Mutations re-fetch the row and compare ownership before writing, and repeat
the ownership filter in the mutating statement itself.
"""
from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.config import get_settings
from chatgate.core.errors import AccessDenied, DatabaseError, QuotaExceeded, ValidationError
from chatgate.domain.models import Document
from chatgate.domain.state import DocumentStatus, SubscriptionTier
from chatgate.persistence.repos import chunks as chunks_repo
from chatgate.persistence.repos import documents as documents_repo
from chatgate.providers.embedding import EmbeddingProvider, get_embedding_provider
from chatgate.providers.retrieval import WorkspaceChunkRetriever
from chatgate.services.access import UNLIMITED, features_for_tier
from chatgate.services.indexing import schedule_indexing
from chatgate.services.quota import QuotaService, count_words, get_quota_service


logger = logging.getLogger(__name__)

ITEM_ACCESS_DENIED_MESSAGE = "Knowledge item not found or access denied"
MAX_FILENAME_CHARS = 255


def _clean_filename(filename: str | None) -> str:
    name = (filename or "").strip()
    if not name:
        raise ValidationError("Knowledge item name is required")
    return name[:MAX_FILENAME_CHARS]


def _clean_content(content: str | None) -> str:
    text = (content or "").strip()
    if not text:
        raise ValidationError("Knowledge item content cannot be empty")
    return text


async def _owned_or_denied(
    session: AsyncSession, workspace_id: str, owner_id: str, document_id: str
) -> Document:
    # Missing and foreign items get the same answer.
    doc = await documents_repo.get_document(session, workspace_id, document_id)
    if doc is None or doc.owner_id != owner_id:
        raise AccessDenied(ITEM_ACCESS_DENIED_MESSAGE)
    return doc


async def list_items(session: AsyncSession, workspace_id: str, *, limit: int = 50) -> list[Document]:
    try:
        return await documents_repo.list_documents(session, workspace_id, limit=limit)
    except SQLAlchemyError as exc:
        logger.error("knowledge_list_failed workspace_id=%s", workspace_id, exc_info=exc)
        raise DatabaseError() from exc


async def create_item(
    session: AsyncSession,
    *,
    workspace_id: str,
    owner_id: str,
    tier: SubscriptionTier,
    filename: str,
    content: str,
    quota: QuotaService | None = None,
) -> Document:
    quota = quota or get_quota_service()
    name = _clean_filename(filename)
    text = _clean_content(content)
    words = count_words(text)
    features = features_for_tier(tier)

    try:
        if features.max_knowledge_items != UNLIMITED:
            current = await documents_repo.count_documents(session, workspace_id)
            if current >= features.max_knowledge_items:
                raise QuotaExceeded(
                    f"Your {tier.value} plan allows up to {features.max_knowledge_items} knowledge items",
                    tier=tier.value,
                    limit=features.max_knowledge_items,
                    current=current,
                    metric="knowledge_items",
                )
        await quota.check_upload_allowed(session, workspace_id, tier, new_words=words)

        doc = await documents_repo.create_document(
            session,
            document_id=uuid4().hex,
            workspace_id=workspace_id,
            owner_id=owner_id,
            filename=name,
            content=text,
            word_count=words,
            status=DocumentStatus.PENDING.value,
        )
        await session.flush()
        await quota.adjust_storage(session, workspace_id, word_delta=words, upload_delta=1)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("knowledge_create_failed workspace_id=%s", workspace_id, exc_info=exc)
        raise DatabaseError() from exc

    logger.info("knowledge_item_created workspace_id=%s document_id=%s words=%s", workspace_id, doc.id, words)
    await schedule_indexing(workspace_id, doc.id)
    return await _reload(session, workspace_id, doc.id)


async def update_item(
    session: AsyncSession,
    *,
    workspace_id: str,
    owner_id: str,
    tier: SubscriptionTier,
    document_id: str,
    filename: str | None = None,
    content: str | None = None,
    quota: QuotaService | None = None,
) -> Document:
    """Rename and/or replace an item's content.

    Content edits reset the item to PENDING, drop its chunks and charge only
    the word-count delta against the stored-word counter.
    """
    quota = quota or get_quota_service()
    if filename is None and content is None:
        raise ValidationError("Nothing to update")

    try:
        existing = await _owned_or_denied(session, workspace_id, owner_id, document_id)
        old_words = int(existing.word_count or 0)
        values: dict = {}
        new_words = old_words
        if filename is not None:
            values["filename"] = _clean_filename(filename)
        reindex = False
        if content is not None:
            text = _clean_content(content)
            new_words = count_words(text)
            await quota.check_upload_allowed(
                session,
                workspace_id,
                tier,
                new_words=new_words,
                replaced_words=old_words,
                is_new_upload=False,
            )
            values.update(
                content=text,
                word_count=new_words,
                status=DocumentStatus.PENDING.value,
                failure_reason=None,
                indexed_at=None,
            )
            reindex = True

        updated = await documents_repo.update_owned_document(
            session,
            workspace_id=workspace_id,
            owner_id=owner_id,
            document_id=document_id,
            values=values,
        )
        if updated == 0:
            # Row vanished or changed owner between the re-fetch and the write.
            await session.rollback()
            raise AccessDenied(ITEM_ACCESS_DENIED_MESSAGE)
        if reindex:
            await chunks_repo.delete_chunks(session, workspace_id, document_id)
        if new_words != old_words:
            await quota.adjust_storage(session, workspace_id, word_delta=new_words - old_words)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("knowledge_update_failed document_id=%s", document_id, exc_info=exc)
        raise DatabaseError() from exc

    if reindex:
        await schedule_indexing(workspace_id, document_id)
    return await _reload(session, workspace_id, document_id)


async def delete_item(
    session: AsyncSession,
    *,
    workspace_id: str,
    owner_id: str,
    document_id: str,
    quota: QuotaService | None = None,
) -> None:
    quota = quota or get_quota_service()
    try:
        existing = await _owned_or_denied(session, workspace_id, owner_id, document_id)
        words = int(existing.word_count or 0)
        deleted = await documents_repo.delete_owned_document(
            session, workspace_id=workspace_id, owner_id=owner_id, document_id=document_id
        )
        if deleted == 0:
            await session.rollback()
            raise AccessDenied(ITEM_ACCESS_DENIED_MESSAGE)
        # Uploads are consumed for the month; only stored words are released.
        await quota.adjust_storage(session, workspace_id, word_delta=-words)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("knowledge_delete_failed document_id=%s", document_id, exc_info=exc)
        raise DatabaseError() from exc
    logger.info("knowledge_item_deleted workspace_id=%s document_id=%s", workspace_id, document_id)


async def search(
    session: AsyncSession,
    workspace_id: str,
    query: str,
    top_k: int = 5,
    *,
    embedder: EmbeddingProvider | None = None,
) -> list[dict]:
    text = (query or "").strip()
    if not text:
        return []
    top_k = max(1, min(int(top_k), get_settings().knowledge_search_max_k))
    embedder = embedder or get_embedding_provider()
    embedding = await embedder.embed(text)
    return await WorkspaceChunkRetriever(session).retrieve(workspace_id, embedding, top_k)


async def _reload(session: AsyncSession, workspace_id: str, document_id: str) -> Document:
    doc = await documents_repo.get_document(session, workspace_id, document_id)
    if doc is None:
        raise AccessDenied(ITEM_ACCESS_DENIED_MESSAGE)
    return doc
