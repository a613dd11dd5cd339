from __future__ import annotations

import pytest
from sqlalchemy import select, update

from chatgate.core.errors import AccessDenied, QuotaExceeded, ValidationError
from chatgate.domain.models import Chunk, Document
from chatgate.domain.state import DocumentStatus, SubscriptionTier
from chatgate.persistence.db import SessionLocal
from chatgate.persistence.guards import WorkspacePredicateError
from chatgate.persistence.repos import documents as documents_repo
from chatgate.services import knowledge
from chatgate.services.indexing import index_document
from chatgate.services.quota import QuotaService
from chatgate.tests.utils.accounts import create_account


class _BrokenEmbedder:
    # Fails after a fixed number of successful calls.
    def __init__(self, succeed: int) -> None:
        self.calls = 0
        self._succeed = succeed

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.calls > self._succeed:
            raise ValueError("embedding backend rejected input")
        return [1.0] + [0.0] * 767


async def _create(workspace_id: str, owner_id: str, content: str, *, filename: str = "faq.md"):
    async with SessionLocal() as session:
        return await knowledge.create_item(
            session,
            workspace_id=workspace_id,
            owner_id=owner_id,
            tier=SubscriptionTier.ULTRA,
            filename=filename,
            content=content,
        )


@pytest.mark.asyncio
async def test_create_indexes_inline_and_counts_usage() -> None:
    user_id, workspace_id = await create_account(status="active", tier="ultra", days_left=30)
    doc = await _create(workspace_id, user_id, "Refunds are processed within five days.\n\nShipping is free.")
    assert doc.status == DocumentStatus.INDEXED.value
    assert doc.word_count == 9
    assert doc.indexed_at is not None

    async with SessionLocal() as session:
        chunks = (await session.execute(select(Chunk).where(Chunk.document_id == doc.id))).scalars().all()
        usage = await QuotaService().get_usage(session, workspace_id)
    assert len(chunks) == 2
    assert {chunk.workspace_id for chunk in chunks} == {workspace_id}
    assert {chunk.owner_id for chunk in chunks} == {user_id}
    assert usage.monthly_uploads == 1
    assert usage.total_stored_words == 9


@pytest.mark.asyncio
async def test_item_count_quota_for_basic() -> None:
    user_id, workspace_id = await create_account(status="active", tier="basic", days_left=30)
    async with SessionLocal() as session:
        for index in range(10):
            session.add(
                Document(
                    id=f"seed-{index}",
                    workspace_id=workspace_id,
                    owner_id=user_id,
                    filename=f"seed-{index}.txt",
                    content="seed",
                    word_count=1,
                    status="INDEXED",
                )
            )
        await session.commit()
        with pytest.raises(QuotaExceeded) as excinfo:
            await knowledge.create_item(
                session,
                workspace_id=workspace_id,
                owner_id=user_id,
                tier=SubscriptionTier.BASIC,
                filename="eleventh.txt",
                content="one more",
            )
    assert excinfo.value.limit == 10
    assert excinfo.value.tier == "basic"
    assert "basic" in excinfo.value.message and "10" in excinfo.value.message


@pytest.mark.asyncio
async def test_blank_input_is_rejected() -> None:
    user_id, workspace_id = await create_account(status="active", tier="ultra", days_left=30)
    with pytest.raises(ValidationError):
        await _create(workspace_id, user_id, "   ")
    with pytest.raises(ValidationError):
        await _create(workspace_id, user_id, "content", filename="  ")


@pytest.mark.asyncio
async def test_foreign_update_and_delete_are_denied() -> None:
    owner_id, workspace_id = await create_account(status="active", tier="ultra", days_left=30)
    other_id, other_workspace = await create_account(status="active", tier="ultra", days_left=30)
    doc = await _create(workspace_id, owner_id, "private pricing notes")

    async with SessionLocal() as session:
        with pytest.raises(AccessDenied) as foreign:
            await knowledge.update_item(
                session,
                workspace_id=other_workspace,
                owner_id=other_id,
                tier=SubscriptionTier.ULTRA,
                document_id=doc.id,
                content="overwritten",
            )
        with pytest.raises(AccessDenied) as missing:
            await knowledge.delete_item(
                session,
                workspace_id=other_workspace,
                owner_id=other_id,
                document_id="no-such-item",
            )
        with pytest.raises(AccessDenied):
            await knowledge.delete_item(
                session,
                workspace_id=other_workspace,
                owner_id=other_id,
                document_id=doc.id,
            )
        still_there = await documents_repo.get_document(session, workspace_id, doc.id)
    assert foreign.value.message == missing.value.message
    assert still_there is not None
    assert still_there.content == "private pricing notes"


@pytest.mark.asyncio
async def test_update_reindexes_and_delete_releases_words() -> None:
    user_id, workspace_id = await create_account(status="active", tier="ultra", days_left=30)
    doc = await _create(workspace_id, user_id, "alpha beta gamma")

    async with SessionLocal() as session:
        updated = await knowledge.update_item(
            session,
            workspace_id=workspace_id,
            owner_id=user_id,
            tier=SubscriptionTier.ULTRA,
            document_id=doc.id,
            filename="renamed.md",
            content="alpha beta",
        )
        assert updated.filename == "renamed.md"
        assert updated.word_count == 2
        assert updated.status == DocumentStatus.INDEXED.value

        await knowledge.delete_item(
            session, workspace_id=workspace_id, owner_id=user_id, document_id=doc.id
        )
        remaining = (await session.execute(select(Chunk).where(Chunk.document_id == doc.id))).scalars().all()
        usage = await QuotaService().get_usage(session, workspace_id)
    assert remaining == []
    assert usage.total_stored_words == 0
    # The upload stays consumed for the month.
    assert usage.monthly_uploads == 1


@pytest.mark.asyncio
async def test_failed_chunk_marks_document_failed_without_partial_chunks() -> None:
    user_id, workspace_id = await create_account(status="active", tier="ultra", days_left=30)
    doc = await _create(workspace_id, user_id, "first paragraph\n\nsecond paragraph\n\nthird paragraph")

    embedder = _BrokenEmbedder(succeed=1)
    async with SessionLocal() as session:
        stored = await index_document(session, doc.id, workspace_id, embedder=embedder)
        refreshed = await documents_repo.get_document(session, workspace_id, doc.id)
        chunks = (await session.execute(select(Chunk).where(Chunk.document_id == doc.id))).scalars().all()
    assert stored == 0
    assert embedder.calls == 2
    assert refreshed.status == DocumentStatus.FAILED.value
    assert "ValueError" in refreshed.failure_reason
    assert chunks == []


class _EditingEmbedder:
    # Simulates an edit committed by another request while the job is embedding.
    def __init__(self, document_id: str) -> None:
        self._document_id = document_id
        self.edited = False

    async def embed(self, text: str) -> list[float]:
        if not self.edited:
            self.edited = True
            async with SessionLocal() as other:
                await other.execute(
                    update(Document)
                    .where(Document.id == self._document_id)
                    .values(content="Completely new text.", status=DocumentStatus.PENDING.value)
                )
                await other.commit()
        return [1.0] + [0.0] * 767


@pytest.mark.asyncio
async def test_job_for_an_outdated_edit_leaves_no_chunks_behind() -> None:
    user_id, workspace_id = await create_account(status="active", tier="ultra", days_left=30)
    doc = await _create(workspace_id, user_id, "old paragraph one\n\nold paragraph two")

    embedder = _EditingEmbedder(doc.id)
    async with SessionLocal() as session:
        stored = await index_document(session, doc.id, workspace_id, embedder=embedder)
        refreshed = await documents_repo.get_document(session, workspace_id, doc.id)
        chunks = (await session.execute(select(Chunk).where(Chunk.document_id == doc.id))).scalars().all()
    assert embedder.edited is True
    assert stored == 0
    assert chunks == []
    # The newer edit's job decides the final status.
    assert refreshed.status == DocumentStatus.PENDING.value


@pytest.mark.asyncio
async def test_search_never_crosses_workspaces() -> None:
    owner_one, workspace_one = await create_account(status="active", tier="ultra", days_left=30)
    owner_two, workspace_two = await create_account(status="active", tier="ultra", days_left=30)
    await _create(workspace_one, owner_one, "Our refund window is thirty days.")
    await _create(workspace_two, owner_two, "Competitor refund policy is secret.")

    async with SessionLocal() as session:
        hits = await knowledge.search(session, workspace_one, "refund policy", top_k=10)
        empty = await knowledge.search(session, workspace_one, "   ")
        with pytest.raises(WorkspacePredicateError):
            await knowledge.list_items(session, "")
    assert hits
    assert all("Competitor" not in hit["text"] for hit in hits)
    assert all(0.0 <= hit["score"] <= 1.0 for hit in hits)
    assert empty == []


@pytest.mark.asyncio
async def test_list_is_scoped_and_newest_first() -> None:
    user_id, workspace_id = await create_account(status="active", tier="ultra", days_left=30)
    other_id, other_workspace = await create_account(status="active", tier="ultra", days_left=30)
    await _create(workspace_id, user_id, "mine")
    await _create(other_workspace, other_id, "theirs")
    async with SessionLocal() as session:
        items = await knowledge.list_items(session, workspace_id)
    assert [item.content for item in items] == ["mine"]
