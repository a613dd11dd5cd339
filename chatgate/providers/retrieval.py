from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.config import EMBED_DIM
from chatgate.core.errors import DatabaseError
from chatgate.domain.models import Chunk, Document
from chatgate.ingestion.embeddings import cosine_similarity
from chatgate.persistence.db import dialect_name
from chatgate.persistence.guards import workspace_predicate
from chatgate.persistence.repos import chunks as chunks_repo


class WorkspaceChunkRetriever:
    """Rank one workspace's indexed chunks against a query embedding."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def retrieve(self, workspace_id: str, query_embedding: list[float], top_k: int) -> list[dict]:
        if len(query_embedding) != EMBED_DIM:
            # Fail fast if the embedding dimension doesn't match the schema.
            raise ValueError("query embedding dimension mismatch")
        top_k = max(1, int(top_k))
        try:
            if dialect_name(self._session) == "postgresql":
                return await self._retrieve_pgvector(workspace_id, query_embedding, top_k)
            return await self._retrieve_in_process(workspace_id, query_embedding, top_k)
        except SQLAlchemyError as exc:
            raise DatabaseError() from exc

    async def _retrieve_pgvector(
        self, workspace_id: str, query_embedding: list[float], top_k: int
    ) -> list[dict]:
        # Use cosine distance from pgvector; lower is more similar.
        distance_expr = Chunk.embedding.cosine_distance(query_embedding)
        stmt = (
            select(Chunk, distance_expr.label("distance"))
            .join(Document, Document.id == Chunk.document_id)
            .where(
                workspace_predicate(Chunk, workspace_id),
                workspace_predicate(Document, workspace_id),
                Document.status == "INDEXED",
                Chunk.embedding.is_not(None),
            )
            # Secondary ordering keeps tie-breaking deterministic.
            .order_by(distance_expr.asc(), Chunk.id.asc())
            .limit(top_k)
        )
        result = await self._session.execute(stmt)
        return [_to_item(chunk, 1.0 - float(distance)) for chunk, distance in result.all()]

    async def _retrieve_in_process(
        self, workspace_id: str, query_embedding: list[float], top_k: int
    ) -> list[dict]:
        chunks = await chunks_repo.list_indexed_chunks(self._session, workspace_id)
        scored = [
            (cosine_similarity(query_embedding, list(chunk.embedding)), chunk)
            for chunk in chunks
            if chunk.embedding is not None
        ]
        scored.sort(key=lambda pair: (-pair[0], pair[1].id))
        return [_to_item(chunk, score) for score, chunk in scored[:top_k]]


def _to_item(chunk: Chunk, score: float) -> dict:
    # Clamp similarity to a sane [0, 1] range for clients.
    return {
        "chunk_id": chunk.id,
        "document_id": chunk.document_id,
        "text": chunk.text,
        "score": max(0.0, min(1.0, score)),
        "metadata": chunk.metadata_json or {},
    }
