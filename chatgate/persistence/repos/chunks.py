from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.domain.models import Chunk, Document
from chatgate.persistence.guards import workspace_predicate


async def delete_chunks(session: AsyncSession, workspace_id: str, document_id: str) -> None:
    await session.execute(
        delete(Chunk).where(
            Chunk.document_id == document_id, workspace_predicate(Chunk, workspace_id)
        )
    )


async def list_indexed_chunks(session: AsyncSession, workspace_id: str) -> list[Chunk]:
    # Only chunks of fully indexed documents are searchable.
    result = await session.execute(
        select(Chunk)
        .join(Document, Document.id == Chunk.document_id)
        .where(
            workspace_predicate(Chunk, workspace_id),
            workspace_predicate(Document, workspace_id),
            Document.status == "INDEXED",
        )
    )
    return list(result.scalars().all())


async def delete_chunks_by_id(session: AsyncSession, workspace_id: str, chunk_ids: list[str]) -> None:
    if not chunk_ids:
        return
    await session.execute(
        delete(Chunk).where(Chunk.id.in_(chunk_ids), workspace_predicate(Chunk, workspace_id))
    )
