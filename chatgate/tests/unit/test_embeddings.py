from __future__ import annotations

import math

import pytest

from chatgate.core.config import EMBED_DIM
from chatgate.ingestion.chunking import chunk_text
from chatgate.ingestion.embeddings import cosine_similarity, embed_text
from chatgate.providers.answer import NO_CONTEXT_REPLY, ExtractiveAnswerProvider
from chatgate.providers.embedding import HashedEmbeddingProvider
from chatgate.services.telemetry import external_error_rate


def test_embeddings_are_deterministic_and_normalized() -> None:
    first = embed_text("Refund policy for annual plans")
    second = embed_text("Refund policy for annual plans")
    assert first == second
    assert len(first) == EMBED_DIM
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-9)


def test_empty_text_embeds_to_zero_vector() -> None:
    assert embed_text("!!!") == [0.0] * EMBED_DIM
    assert cosine_similarity(embed_text(""), embed_text("anything")) == 0.0


def test_similar_text_scores_higher() -> None:
    query = embed_text("refund policy")
    related = embed_text("our refund policy lasts thirty days")
    unrelated = embed_text("the office dog is called biscuit")
    assert cosine_similarity(query, related) > cosine_similarity(query, unrelated)


def test_cosine_rejects_dimension_mismatch() -> None:
    with pytest.raises(ValueError):
        cosine_similarity([1.0, 0.0], [1.0])


def test_chunks_follow_paragraphs_with_offsets() -> None:
    text = "First paragraph.\n\n\n\nSecond paragraph here."
    pieces = list(chunk_text(text, chunk_size=100, chunk_overlap=10))
    assert [piece for piece, _, _ in pieces] == ["First paragraph.", "Second paragraph here."]
    for piece, start, end in pieces:
        assert text[start:end] == piece


def test_long_paragraphs_use_overlapping_windows() -> None:
    text = "x" * 250
    pieces = list(chunk_text(text, chunk_size=100, chunk_overlap=20))
    assert [(start, end) for _, start, end in pieces] == [(0, 100), (80, 180), (160, 250)]


def test_chunk_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        list(chunk_text("abc", chunk_size=0))


@pytest.mark.asyncio
async def test_hashed_provider_records_calls() -> None:
    provider = HashedEmbeddingProvider()
    vector = await provider.embed("hello world")
    assert vector == embed_text("hello world")
    assert external_error_rate(HashedEmbeddingProvider.integration) == 0.0


@pytest.mark.asyncio
async def test_extractive_answer_uses_top_passages() -> None:
    provider = ExtractiveAnswerProvider(max_passages=2, max_passage_chars=10)
    reply = await provider.answer(
        [],
        [{"text": "short"}, {"text": "a much longer passage"}, {"text": "third"}],
    )
    assert reply.startswith("Here is what I found:")
    assert "short" in reply
    assert "a much lon..." in reply
    assert "third" not in reply
    assert await provider.answer([], []) == NO_CONTEXT_REPLY
