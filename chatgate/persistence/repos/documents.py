from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.domain.models import Chunk, Document
from chatgate.persistence.guards import owner_predicate, workspace_predicate


async def create_document(
    session: AsyncSession,
    *,
    document_id: str,
    workspace_id: str,
    owner_id: str,
    filename: str,
    content: str,
    word_count: int,
    status: str,
) -> Document:
    # Workspace and owner come from the resolved tenant context, never the payload.
    workspace_predicate(Document, workspace_id)
    doc = Document(
        id=document_id,
        workspace_id=workspace_id,
        owner_id=owner_id,
        filename=filename,
        content=content,
        word_count=word_count,
        status=status,
    )
    session.add(doc)
    return doc


async def list_documents(
    session: AsyncSession, workspace_id: str, *, limit: int = 50
) -> list[Document]:
    # Tenant scoping prevents cross-tenant leakage.
    stmt = (
        select(Document)
        .where(workspace_predicate(Document, workspace_id))
        .order_by(Document.created_at.desc(), Document.id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_documents(session: AsyncSession, workspace_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(Document).where(workspace_predicate(Document, workspace_id))
    )
    return int(result.scalar() or 0)


async def get_document(
    session: AsyncSession, workspace_id: str, document_id: str
) -> Document | None:
    # Return None for tenant mismatch to keep not-found and not-yours indistinguishable.
    result = await session.execute(
        select(Document)
        .where(Document.id == document_id, workspace_predicate(Document, workspace_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def update_owned_document(
    session: AsyncSession,
    *,
    workspace_id: str,
    owner_id: str,
    document_id: str,
    values: dict[str, Any],
) -> int:
    # Ownership is repeated in the mutating clause even after the caller's re-fetch.
    result = await session.execute(
        update(Document)
        .where(
            Document.id == document_id,
            workspace_predicate(Document, workspace_id),
            owner_predicate(Document, owner_id),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_owned_document(
    session: AsyncSession, *, workspace_id: str, owner_id: str, document_id: str
) -> int:
    # Chunks go first so backends without cascade support stay consistent.
    await session.execute(
        delete(Chunk).where(
            Chunk.document_id == document_id, workspace_predicate(Chunk, workspace_id)
        )
    )
    result = await session.execute(
        delete(Document)
        .where(
            Document.id == document_id,
            workspace_predicate(Document, workspace_id),
            owner_predicate(Document, owner_id),
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def update_status(
    session: AsyncSession,
    document_id: str,
    *conditions: Any,
    status: str,
    failure_reason: str | None = None,
    indexed_at: datetime | None = None,
) -> int:
    # Extra conditions let indexing refuse to touch a document edited since the job read it.
    values: dict[str, Any] = {"status": status, "failure_reason": failure_reason}
    if indexed_at is not None:
        values["indexed_at"] = indexed_at
    result = await session.execute(
        update(Document)
        .where(Document.id == document_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
