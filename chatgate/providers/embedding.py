from __future__ import annotations

import time
from typing import Protocol

from chatgate.core.config import EMBED_DIM
from chatgate.ingestion.embeddings import embed_text
from chatgate.services.resilience import CircuitBreaker, get_resilience_redis
from chatgate.services.telemetry import record_external_call


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...


class HashedEmbeddingProvider:
    """Deterministic local embeddings guarded like a remote integration.

    The breaker and retry wrapping stay in place so a hosted embedding model
    can be swapped in without changing callers.
    """

    integration = "embedding.hashed"

    def __init__(self, breaker: CircuitBreaker | None = None) -> None:
        self._breaker = breaker

    async def _get_breaker(self) -> CircuitBreaker:
        # Share breaker state across API and worker processes when Redis is up.
        if self._breaker is None:
            self._breaker = CircuitBreaker(self.integration, redis=await get_resilience_redis())
        return self._breaker

    async def embed(self, text: str) -> list[float]:
        breaker = await self._get_breaker()

        async def _call() -> list[float]:
            return embed_text(text)

        start = time.monotonic()
        try:
            vector = await breaker.call(_call)
        except Exception:
            record_external_call(
                integration=self.integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise
        record_external_call(
            integration=self.integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        if len(vector) != EMBED_DIM:
            # Retrieval and storage expect a fixed-size vector.
            raise ValueError("embedding dimension mismatch")
        return vector


_provider: EmbeddingProvider | None = None


def get_embedding_provider() -> EmbeddingProvider:
    global _provider
    if _provider is None:
        _provider = HashedEmbeddingProvider()
    return _provider


def reset_embedding_provider() -> None:
    # Drop the cached provider (and its breaker) between tests.
    global _provider
    _provider = None
