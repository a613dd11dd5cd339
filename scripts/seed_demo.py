from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from sqlalchemy import select

from chatgate.core.config import EMBED_DIM, get_settings
from chatgate.domain.models import Chunk, Document, Workspace
from chatgate.domain.state import DocumentStatus
from chatgate.ingestion.embeddings import embed_text
from chatgate.persistence.db import SessionLocal
from chatgate.services.quota import count_words


DEMO_OWNER_ID = "demo-owner"


@dataclass(frozen=True)
class DemoItem:
    # Fixed ids keep the seed idempotent across runs.
    document_id: str
    filename: str
    paragraphs: tuple[str, ...]


def build_demo_items() -> tuple[DemoItem, ...]:
    return (
        DemoItem(
            document_id="demo-doc-1",
            filename="getting-started.md",
            paragraphs=(
                "The demo bot answers questions from a small sandbox knowledge base.",
                "Sign in and start the free trial to connect your own workspace.",
            ),
        ),
        DemoItem(
            document_id="demo-doc-2",
            filename="plans.md",
            paragraphs=(
                "Basic includes 1000 messages per month and up to 10 knowledge items.",
                "Pro removes the message limit and allows name and greeting customization.",
                "Ultra adds full branding: colors, logo, theme and custom CSS.",
            ),
        ),
    )


def build_demo_chunks(item: DemoItem) -> list[Chunk]:
    workspace_id = get_settings().demo_workspace_id
    chunks: list[Chunk] = []
    for index, text in enumerate(item.paragraphs):
        embedding = embed_text(text)
        if len(embedding) != EMBED_DIM:
            raise ValueError(f"Embedding dimension mismatch; expected {EMBED_DIM}.")
        chunks.append(
            Chunk(
                id=f"{item.document_id}-{index}",
                document_id=item.document_id,
                workspace_id=workspace_id,
                owner_id=DEMO_OWNER_ID,
                chunk_index=index,
                text=text,
                embedding=embedding,
                metadata_json={"filename": item.filename, "source_type": "demo"},
            )
        )
    return chunks


async def seed_demo() -> int:
    workspace_id = get_settings().demo_workspace_id
    async with SessionLocal() as session:
        workspace = await session.get(Workspace, workspace_id)
        if workspace is None:
            session.add(Workspace(id=workspace_id, name="Demo sandbox", slug=workspace_id))
            await session.flush()

        existing = await session.execute(
            select(Document.id).where(Document.workspace_id == workspace_id).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            await session.commit()
            print("Demo workspace already seeded; skipping.")
            return 0

        items = build_demo_items()
        for item in items:
            content = "\n\n".join(item.paragraphs)
            session.add(
                Document(
                    id=item.document_id,
                    workspace_id=workspace_id,
                    owner_id=DEMO_OWNER_ID,
                    filename=item.filename,
                    content=content,
                    word_count=count_words(content),
                    status=DocumentStatus.INDEXED.value,
                )
            )
        # Documents must exist before their chunks for the foreign key.
        await session.flush()
        for item in items:
            session.add_all(build_demo_chunks(item))
        await session.commit()
        print(f"Seeded demo workspace with {len(items)} knowledge items.")
        return 0


def main() -> int:
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
