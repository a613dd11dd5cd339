from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.config import get_settings
from chatgate.domain.models import Chunk, Document
from chatgate.domain.state import DocumentStatus
from chatgate.ingestion.chunking import chunk_text
from chatgate.persistence.db import SessionLocal
from chatgate.persistence.repos import chunks as chunks_repo
from chatgate.persistence.repos import documents as documents_repo
from chatgate.providers.embedding import EmbeddingProvider, get_embedding_provider
from chatgate.services.resilience import retry_async


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class IndexJobPayload(BaseModel):
    # Job schema for the API-to-worker handoff.
    workspace_id: str
    document_id: str
    request_id: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _failure_reason(exc: Exception) -> str:
    # Keep stored reasons short and free of internals.
    return f"Indexing failed ({type(exc).__name__}); edit or re-upload the item to retry"


async def _discard_stale(
    session: AsyncSession, workspace_id: str, document_id: str, chunk_ids: list[str]
) -> int:
    # An edit landed mid-job; that edit's own job owns the document now.
    await chunks_repo.delete_chunks_by_id(session, workspace_id, chunk_ids)
    await session.commit()
    logger.info("index_document_superseded document_id=%s discarded=%s", document_id, len(chunk_ids))
    return 0


async def index_document(
    session: AsyncSession,
    document_id: str,
    workspace_id: str,
    *,
    embedder: EmbeddingProvider | None = None,
) -> int:
    """Regenerate every chunk of one document; returns the number of chunks stored.

    Old chunks are removed first and new ones are embedded and inserted one at
    a time. Any single failure removes the partial chunks and marks the
    document FAILED, so a document is never INDEXED with missing chunks. If the
    document was edited while the job ran, the job drops what it inserted and
    leaves the status to the job that indexes the edit.
    """
    settings = get_settings()
    embedder = embedder or get_embedding_provider()
    doc = await documents_repo.get_document(session, workspace_id, document_id)
    if doc is None:
        logger.info("index_document_missing document_id=%s", document_id)
        return 0
    # Copy ownership once; chunks are never re-derived from the document later.
    owner_id = doc.owner_id
    filename = doc.filename
    content = doc.content
    unchanged = (Document.content == content, Document.filename == filename)

    await chunks_repo.delete_chunks(session, workspace_id, document_id)
    await session.commit()

    inserted: list[str] = []
    try:
        pieces = chunk_text(
            content,
            chunk_size=settings.index_chunk_size_chars,
            chunk_overlap=settings.index_chunk_overlap_chars,
        )
        for index, (text, start, end) in enumerate(pieces):
            embedding = await embedder.embed(text)
            values = {
                "id": uuid4().hex,
                "document_id": document_id,
                "workspace_id": workspace_id,
                "owner_id": owner_id,
                "chunk_index": index,
                "text": text,
                "embedding": embedding,
                "metadata_json": {"filename": filename, "offset_start": start, "offset_end": end},
            }

            async def _insert_chunk(values: dict = values) -> None:
                try:
                    await session.execute(insert(Chunk).values(**values))
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

            await retry_async(_insert_chunk, label="chunk_insert")
            inserted.append(values["id"])
    except Exception as exc:  # noqa: BLE001 - any chunk failure fails the whole document
        logger.warning(
            "index_document_failed document_id=%s stored=%s", document_id, len(inserted), exc_info=exc
        )
        await session.rollback()
        failed = await documents_repo.update_status(
            session,
            document_id,
            *unchanged,
            status=DocumentStatus.FAILED.value,
            failure_reason=_failure_reason(exc),
        )
        if not failed:
            await session.rollback()
            return await _discard_stale(session, workspace_id, document_id, inserted)
        await chunks_repo.delete_chunks(session, workspace_id, document_id)
        await session.commit()
        return 0

    indexed = await documents_repo.update_status(
        session,
        document_id,
        *unchanged,
        status=DocumentStatus.INDEXED.value,
        indexed_at=_utc_now(),
    )
    if not indexed:
        await session.rollback()
        return await _discard_stale(session, workspace_id, document_id, inserted)
    await session.commit()
    logger.info("index_document_completed document_id=%s chunks=%s", document_id, len(inserted))
    return len(inserted)


async def process_index_job(payload: IndexJobPayload) -> int:
    # Shared by the worker and inline mode; each job gets its own session.
    async with SessionLocal() as session:
        return await index_document(session, payload.document_id, payload.workspace_id)


async def get_redis_pool():
    # Cache the arq pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.index_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def schedule_indexing(workspace_id: str, document_id: str) -> str:
    """Index now (inline mode) or hand the document to the arq worker.

    The document row must already be committed.
    """
    settings = get_settings()
    payload = IndexJobPayload(
        workspace_id=workspace_id,
        document_id=document_id,
        request_id=uuid4().hex,
    )
    if settings.index_execution_mode.lower() == "inline":
        await process_index_job(payload)
        return payload.request_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "index_document",
        payload.model_dump(),
        _job_id=payload.request_id,
        _queue_name=settings.index_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else payload.request_id
